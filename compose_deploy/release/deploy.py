"""Release creation and deployment of built images.

This module provides the high-level deploy API:
- create_release(): create a release with internal fields stripped
- deploy_project(): tag, authorize, push and finalize a release

A release, once created, is always finalized with `success` or `failed`.
"""

from __future__ import annotations

import contextlib
import logging
import secrets
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import httpx
from rich.console import Console
from rich.text import Text

from compose_deploy.config import get_settings
from compose_deploy.release.push import push_and_update_service_images
from compose_deploy.release.registry import (
    TaggedImage,
    authorize_push,
    get_previous_repos,
    tag_service_images,
    untag_images,
)
from compose_deploy.release.schema import (
    RELEASE_INTERNAL_FIELDS,
    SERVICE_IMAGE_INTERNAL_FIELDS,
    CreatedRelease,
    ReleaseRecord,
    ServiceImageRecord,
    strip_fields,
)
from compose_deploy.render.renderer import Spinner, run_spinner
from compose_deploy.render.tty import Tty
from compose_deploy.types import BuiltImage, ReleaseStatus, ServiceImageStatus

if TYPE_CHECKING:
    from compose_deploy.builds.daemon import Daemon
    from compose_deploy.config import Settings
    from compose_deploy.release.backend import ReleaseBackend

logger = logging.getLogger(__name__)

INFO_PREFIX = Text.assemble(("[Info]", "cyan"), "    ")


def create_release(
    backend: ReleaseBackend,
    user_id: int | None,
    application_id: int,
    composition: dict[str, Any],
) -> CreatedRelease:
    """Create a release for a composition.

    Args:
        backend: Release backend.
        user_id: User creating the release.
        application_id: Application ID.
        composition: Composition snapshot.

    Returns:
        CreatedRelease with backend-internal fields removed.
    """
    commit = secrets.token_hex(16).lower()
    release, service_images = backend.create_release(
        user_id=user_id,
        application_id=application_id,
        composition=composition,
        source="local",
        commit=commit,
    )
    return CreatedRelease(
        release=ReleaseRecord.model_validate(
            strip_fields(release, RELEASE_INTERNAL_FIELDS)
        ),
        service_images={
            name: ServiceImageRecord.model_validate(
                strip_fields(record, SERVICE_IMAGE_INTERNAL_FIELDS)
            )
            for name, record in service_images.items()
        },
    )


def _push_tagged_images(
    daemon: Daemon,
    backend: ReleaseBackend,
    tagged: list[TaggedImage],
    application_id: int,
    skip_log_upload: bool,
    settings: Settings,
    tty: Tty,
    client: httpx.Client,
    sleep: Callable[[float], Any],
) -> list[ServiceImageRecord]:
    logger.debug("Authorizing push...")
    previous_repos = get_previous_repos(backend, application_id)
    token = authorize_push(
        client,
        settings.token_endpoint,
        tagged[0].registry if tagged else settings.registry_host,
        [image.repo for image in tagged],
        previous_repos,
        timeout=settings.token_timeout,
    )

    def save_image(record: ServiceImageRecord, built: BuiltImage) -> None:
        logger.debug("Saving image %s", record.is_stored_at__image_location)
        if skip_log_upload:
            record.build_log = None
        if record.id is not None:
            backend.update_image(record.id, record)

    logger.info("Pushing images to registry...")
    return push_and_update_service_images(
        daemon,
        token,
        tagged,
        after_each=save_image,
        tty=tty,
        retries=settings.push_retries,
        retry_delay=settings.push_retry_delay,
        retry_backoff=settings.push_retry_backoff,
        max_workers=settings.max_concurrent_pushes,
        sleep=sleep,
    )


def deploy_project(
    daemon: Daemon,
    backend: ReleaseBackend,
    composition: dict[str, Any],
    images: list[BuiltImage],
    application_id: int,
    user_id: int | None = None,
    skip_log_upload: bool = False,
    settings: Settings | None = None,
    console: Console | None = None,
    http_client: httpx.Client | None = None,
    sleep: Callable[[float], Any] = time.sleep,
) -> ReleaseRecord:
    """Create a release for built images and push them.

    Steps: create the release, tag the images into their assigned
    locations, authorize the push (including the previous release's
    repositories), push each image, untag, and finalize the release.

    Args:
        daemon: Container daemon.
        backend: Release backend.
        composition: Composition snapshot.
        images: Built images.
        application_id: Application ID.
        user_id: User creating the release.
        skip_log_upload: Do not store build logs on the service images.
        settings: Optional settings instance.
        console: Console for progress output.
        http_client: HTTPX client for the token request.
        sleep: Sleep function used between push retries.

    Returns:
        The finalized release; `success` only if every push succeeded.

    Raises:
        ImageLocationError: If an assigned image location cannot be parsed.
        DaemonError: If tagging fails.
    """
    if settings is None:
        settings = get_settings()
    tty = Tty(console)
    spinner = Spinner()

    with run_spinner(tty, spinner, Text.assemble(INFO_PREFIX, "Creating release...")):
        created = create_release(backend, user_id, application_id, composition)
    release = created.release

    try:
        logger.debug("Tagging images...")
        tagged = tag_service_images(daemon, images, created.service_images)
        client_scope = (
            httpx.Client()
            if http_client is None
            else contextlib.nullcontext(http_client)
        )
        try:
            with client_scope as client:
                records = _push_tagged_images(
                    daemon,
                    backend,
                    tagged,
                    application_id,
                    skip_log_upload,
                    settings,
                    tty,
                    client,
                    sleep,
                )
        finally:
            logger.debug("Untagging images...")
            untag_images(daemon, tagged)

        failed = [r for r in records if r.status is not ServiceImageStatus.SUCCESS]
        for record in failed:
            logger.error(
                "Image %s failed: %s", record.service_name, record.error_message
            )
        release.status = ReleaseStatus.FAILED if failed else ReleaseStatus.SUCCESS
    except Exception:
        release.status = ReleaseStatus.FAILED
        raise
    finally:
        with run_spinner(tty, spinner, Text.assemble(INFO_PREFIX, "Saving release...")):
            release.end_timestamp = datetime.now(timezone.utc)
            if release.id is not None:
                backend.update_release(release.id, release)

    return release


__all__ = ["create_release", "deploy_project"]
