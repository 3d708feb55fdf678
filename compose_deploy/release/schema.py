"""Pydantic models for release records.

Records returned by a release backend carry backend-internal fields; these
are removed with strip_fields() before the records are validated.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from compose_deploy.types import ReleaseStatus, ServiceImageStatus

RELEASE_INTERNAL_FIELDS = (
    "created_at",
    "belongs_to__application",
    "is_created_by__user",
    "__metadata",
)
SERVICE_IMAGE_INTERNAL_FIELDS = (
    "created_at",
    "is_a_build_of__service",
    "__metadata",
)


def strip_fields(record: dict[str, Any], fields: tuple[str, ...]) -> dict[str, Any]:
    """Return a copy of a record without the given fields."""
    return {k: v for k, v in record.items() if k not in fields}


class ReleaseRecord(BaseModel):
    """A release as seen by the deploy pipeline."""

    model_config = ConfigDict(extra="ignore", from_attributes=True)

    id: int | None = Field(default=None, description="Release identity")
    commit: str = Field(description="Release commit identifier")
    source: str = Field(default="local", description="Release source")
    composition: dict[str, Any] | None = Field(default=None)
    status: ReleaseStatus = Field(default=ReleaseStatus.RUNNING)
    start_timestamp: datetime | None = Field(default=None)
    end_timestamp: datetime | None = Field(default=None)


class ServiceImageRecord(BaseModel):
    """A service image of a release, updated as the image is pushed."""

    model_config = ConfigDict(extra="ignore", from_attributes=True)

    id: int | None = Field(default=None, description="Service image identity")
    service_name: str | None = Field(default=None)
    is_stored_at__image_location: str = Field(description="Registry location")
    status: ServiceImageStatus = Field(default=ServiceImageStatus.RUNNING)
    image_size: int | None = None
    content_hash: str | None = None
    build_log: str | None = None
    dockerfile: str | None = None
    project_type: str | None = None
    start_timestamp: datetime | None = None
    end_timestamp: datetime | None = None
    push_timestamp: datetime | None = None
    error_message: str | None = None


class CreatedRelease(BaseModel):
    """A newly created release and its service images keyed by service name."""

    release: ReleaseRecord
    service_images: dict[str, ServiceImageRecord]


__all__ = [
    "CreatedRelease",
    "RELEASE_INTERNAL_FIELDS",
    "ReleaseRecord",
    "SERVICE_IMAGE_INTERNAL_FIELDS",
    "ServiceImageRecord",
    "strip_fields",
]
