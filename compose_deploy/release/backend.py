"""Release backends.

A release backend creates releases with one service image per service,
persists image and release updates, and reports the image locations of an
application's latest successful release.

SqlReleaseBackend keeps releases in the local database and assigns image
locations under a configured registry host.
"""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload, sessionmaker

from compose_deploy.db import get_session
from compose_deploy.release.models import Release, ServiceImage
from compose_deploy.release.schema import ReleaseRecord, ServiceImageRecord
from compose_deploy.types import ReleaseStatus, ServiceImageStatus

logger = logging.getLogger(__name__)


class ReleaseStoreError(Exception):
    """Raised when a release record cannot be found or stored."""

    def __init__(self, message: str, code: str = "release_store_error") -> None:
        super().__init__(message)
        self.code = code


class ReleaseBackend(Protocol):
    """Release operations consumed by the deploy pipeline."""

    def create_release(
        self,
        user_id: int | None,
        application_id: int,
        composition: dict[str, Any],
        source: str,
        commit: str,
    ) -> tuple[dict[str, Any], dict[str, dict[str, Any]]]: ...

    def update_image(self, image_id: int, record: ServiceImageRecord) -> None: ...

    def update_release(self, release_id: int, record: ReleaseRecord) -> None: ...

    def get_latest_release_image_locations(self, application_id: int) -> list[str]: ...


def _release_to_dict(release: Release) -> dict[str, Any]:
    return {
        "id": release.id,
        "commit": release.commit,
        "source": release.source,
        "composition": release.composition,
        "status": release.status,
        "start_timestamp": release.start_timestamp,
        "end_timestamp": release.end_timestamp,
        "created_at": release.created_at,
        "belongs_to__application": {"__id": release.application_id},
        "is_created_by__user": {"__id": release.user_id},
        "__metadata": {"uri": f"/release({release.id})"},
    }


def _image_to_dict(image: ServiceImage) -> dict[str, Any]:
    return {
        "id": image.id,
        "service_name": image.service_name,
        "is_stored_at__image_location": image.is_stored_at__image_location,
        "status": image.status,
        "created_at": image.created_at,
        "is_a_build_of__service": {"service_name": image.service_name},
        "__metadata": {"uri": f"/image({image.id})"},
    }


class SqlReleaseBackend:
    """Release backend over the local SQLAlchemy database."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        registry_host: str,
    ) -> None:
        """Initialize SqlReleaseBackend.

        Args:
            session_factory: Session factory bound to the release database.
            registry_host: Registry host used in assigned image locations.
        """
        self.session_factory = session_factory
        self.registry_host = registry_host
        self._lock = threading.Lock()

    def _image_location(self) -> str:
        return f"{self.registry_host}/v2/{uuid.uuid4().hex}"

    def create_release(
        self,
        user_id: int | None,
        application_id: int,
        composition: dict[str, Any],
        source: str,
        commit: str,
    ) -> tuple[dict[str, Any], dict[str, dict[str, Any]]]:
        """Create a release with one service image per composition service.

        Returns:
            Tuple of (release record, service image records by service name),
            including backend-internal fields.
        """
        services = composition.get("services") or {}
        with self._lock, get_session(self.session_factory) as session:
            release = Release(
                application_id=application_id,
                user_id=user_id,
                commit=commit,
                source=source,
                composition=composition,
                status=ReleaseStatus.RUNNING.value,
                start_timestamp=datetime.now(timezone.utc),
            )
            release.images = [
                ServiceImage(
                    service_name=service_name,
                    is_stored_at__image_location=self._image_location(),
                    status=ServiceImageStatus.RUNNING.value,
                )
                for service_name in services
            ]
            session.add(release)
            session.flush()
            session.refresh(release)
            for image in release.images:
                session.refresh(image)

            logger.debug("Created release %d (commit %s)", release.id, commit)
            return _release_to_dict(release), {
                image.service_name: _image_to_dict(image) for image in release.images
            }

    def update_image(self, image_id: int, record: ServiceImageRecord) -> None:
        with self._lock, get_session(self.session_factory) as session:
            image = session.get(ServiceImage, image_id)
            if image is None:
                raise ReleaseStoreError(
                    f"Service image not found: {image_id}", code="image_not_found"
                )
            image.status = record.status.value
            image.image_size = record.image_size
            image.content_hash = record.content_hash
            image.build_log = record.build_log
            image.dockerfile = record.dockerfile
            image.project_type = record.project_type
            image.start_timestamp = record.start_timestamp
            image.end_timestamp = record.end_timestamp
            image.push_timestamp = record.push_timestamp
            image.error_message = record.error_message

    def update_release(self, release_id: int, record: ReleaseRecord) -> None:
        with self._lock, get_session(self.session_factory) as session:
            release = session.get(Release, release_id)
            if release is None:
                raise ReleaseStoreError(
                    f"Release not found: {release_id}", code="release_not_found"
                )
            release.status = record.status.value
            release.end_timestamp = record.end_timestamp

    def get_latest_release_image_locations(self, application_id: int) -> list[str]:
        with get_session(self.session_factory) as session:
            stmt = (
                select(Release)
                .where(
                    Release.application_id == application_id,
                    Release.status == ReleaseStatus.SUCCESS.value,
                )
                .options(selectinload(Release.images))
                .order_by(Release.id.desc())
                .limit(1)
            )
            release = session.execute(stmt).scalar_one_or_none()
            if release is None:
                return []
            return [image.is_stored_at__image_location for image in release.images]

    def get_release(self, release_id: int) -> tuple[ReleaseRecord, list[ServiceImageRecord]]:
        """Load a release and its service images.

        Raises:
            ReleaseStoreError: If the release does not exist.
        """
        with get_session(self.session_factory) as session:
            stmt = (
                select(Release)
                .where(Release.id == release_id)
                .options(selectinload(Release.images))
            )
            release = session.execute(stmt).scalar_one_or_none()
            if release is None:
                raise ReleaseStoreError(
                    f"Release not found: {release_id}", code="release_not_found"
                )
            return ReleaseRecord.model_validate(release), [
                ServiceImageRecord.model_validate(image) for image in release.images
            ]


__all__ = [
    "ReleaseBackend",
    "ReleaseStoreError",
    "SqlReleaseBackend",
]
