"""Shared type definitions for compose_deploy.

This module contains enums and dataclasses shared across subpackages
to avoid circular imports.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class ReleaseStatus(str, Enum):
    """Status of a release."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class ServiceImageStatus(str, Enum):
    """Status of a single service image within a release."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class ServiceState(str, Enum):
    """Render state of a service during a build."""

    PREPARING = "Preparing"
    BUILDING = "Building"
    PULLING = "Pulling"
    DONE = "Done"


class IgnoreFileType(str, Enum):
    """Kind of ignore file found in a build context."""

    DOCKER_IGNORE = "dockerignore"
    GIT_IGNORE = "gitignore"


@dataclass
class BuiltImage:
    """Result of building (or pulling) one service image.

    Attributes:
        service_name: Name of the service in the composition.
        name: Local image name (tag or external reference).
        logs: Captured build log, truncated to the log size cap.
        dockerfile: Dockerfile contents or path used for the build.
        project_type: Detected project type.
        start_time: Build start time.
        end_time: Build end time.
        size: Image size in bytes, queried after the build.
        successful: Whether the build succeeded.
        error: Error message if the build failed.
    """

    service_name: str
    name: str
    logs: str = ""
    dockerfile: str | None = None
    project_type: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    size: int | None = None
    successful: bool = True
    error: str | None = None


__all__ = [
    "BuiltImage",
    "IgnoreFileType",
    "ReleaseStatus",
    "ServiceImageStatus",
    "ServiceState",
]
