"""Container daemon adapter and batched build execution.

This module handles:
- A narrow daemon interface (info, build, pull, inspect, tag, push, remove)
- Its implementation over the docker SDK low-level API
- Running build tasks concurrently and collecting one outcome per task
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, BinaryIO, Protocol

import docker
import requests
from docker.errors import DockerException

if TYPE_CHECKING:
    from compose_deploy.builds.tasks import BuildTask

logger = logging.getLogger(__name__)

# docker-py leaves transport failures as requests exceptions
TRANSPORT_ERRORS = (DockerException, requests.RequestException)


class DaemonError(Exception):
    """Raised when a daemon request fails."""

    def __init__(self, message: str, code: str = "daemon_error") -> None:
        super().__init__(message)
        self.code = code


class Daemon(Protocol):
    """Capabilities of the container daemon used by the pipeline."""

    def info(self) -> dict[str, Any]: ...

    def build(self, fileobj: BinaryIO, **options: Any) -> Iterator[dict[str, Any]]: ...

    def pull(self, image: str) -> Iterator[dict[str, Any]]: ...

    def image_size(self, name: str) -> int: ...

    def tag(self, image: str, repository: str, tag: str) -> None: ...

    def push(
        self, repository: str, tag: str, auth_config: dict[str, str] | None = None
    ) -> Iterator[dict[str, Any]]: ...

    def remove_image(self, name: str) -> None: ...


def _guard_iteration(
    action: str, entries: Iterable[dict[str, Any]]
) -> Iterator[dict[str, Any]]:
    try:
        yield from entries
    except TRANSPORT_ERRORS as e:
        raise DaemonError(f"Failed to {action}: {e}") from e


def _guarded(
    action: str, start: Callable[[], Iterable[dict[str, Any]]]
) -> Iterator[dict[str, Any]]:
    """Start a streaming daemon request, wrapping SDK and transport errors.

    Errors raised when the request starts and while its stream is read
    both surface as DaemonError.
    """
    try:
        entries = start()
    except TRANSPORT_ERRORS as e:
        raise DaemonError(f"Failed to {action}: {e}") from e
    return _guard_iteration(action, entries)


class DockerDaemon:
    """Daemon implementation backed by a docker SDK client."""

    def __init__(self, client: docker.DockerClient | None = None) -> None:
        """Initialize DockerDaemon.

        Args:
            client: Docker client; created from the environment if not provided.

        Raises:
            DaemonError: If the daemon cannot be reached.
        """
        if client is None:
            try:
                client = docker.from_env()
            except TRANSPORT_ERRORS as e:
                raise DaemonError(
                    f"Cannot connect to the container daemon: {e}",
                    code="daemon_unavailable",
                ) from e
        self.client = client

    @property
    def api(self) -> docker.APIClient:
        return self.client.api

    def info(self) -> dict[str, Any]:
        try:
            return self.api.info()
        except TRANSPORT_ERRORS as e:
            raise DaemonError(f"Failed to query daemon info: {e}") from e

    def build(self, fileobj: BinaryIO, **options: Any) -> Iterator[dict[str, Any]]:
        return _guarded(
            "build",
            lambda: self.api.build(
                fileobj=fileobj,
                custom_context=True,
                decode=True,
                rm=True,
                **options,
            ),
        )

    def pull(self, image: str) -> Iterator[dict[str, Any]]:
        return _guarded(
            f"pull {image}", lambda: self.api.pull(image, stream=True, decode=True)
        )

    def image_size(self, name: str) -> int:
        try:
            return int(self.api.inspect_image(name)["Size"])
        except TRANSPORT_ERRORS as e:
            raise DaemonError(f"Failed to inspect image {name}: {e}") from e

    def tag(self, image: str, repository: str, tag: str) -> None:
        try:
            self.api.tag(image, repository, tag=tag, force=True)
        except TRANSPORT_ERRORS as e:
            raise DaemonError(
                f"Failed to tag {image} as {repository}:{tag}: {e}"
            ) from e

    def push(
        self, repository: str, tag: str, auth_config: dict[str, str] | None = None
    ) -> Iterator[dict[str, Any]]:
        return _guarded(
            f"push {repository}:{tag}",
            lambda: self.api.push(
                repository,
                tag=tag,
                stream=True,
                decode=True,
                auth_config=auth_config,
            ),
        )

    def remove_image(self, name: str) -> None:
        try:
            self.api.remove_image(name)
        except TRANSPORT_ERRORS as e:
            raise DaemonError(f"Failed to remove image {name}: {e}") from e


@dataclass
class ImageBuildOutcome:
    """Result of running one build task.

    Attributes:
        service_name: Service name.
        successful: Whether the build or pull succeeded.
        error: Error message on failure.
        image_name: Resulting local image name.
        dockerfile: Resolved Dockerfile content.
        project_type: Detected project type.
        start_time: Task start time.
        end_time: Task end time.
        external: Whether the image was pulled rather than built.
    """

    service_name: str
    successful: bool
    error: str | None = None
    image_name: str | None = None
    dockerfile: str | None = None
    project_type: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    external: bool = False


def _build_output(
    entries: Iterable[dict[str, Any]], errors: list[str]
) -> Iterator[str]:
    """Yield the text of a decoded build stream, collecting errors."""
    for entry in entries:
        if "stream" in entry:
            yield entry["stream"]
        error = (entry.get("errorDetail") or {}).get("message") or entry.get("error")
        if error:
            errors.append(str(error))
            yield f"{error}\n"


def run_task(task: BuildTask, daemon: Daemon) -> ImageBuildOutcome:
    """Run a single build task against the daemon.

    Args:
        task: Build task with its hooks attached.
        daemon: Container daemon.

    Returns:
        ImageBuildOutcome; failures are reported, never raised.
    """
    image_name = task.image_name if task.external else task.tag
    start_time = datetime.now(timezone.utc)
    errors: list[str] = []

    try:
        if task.external:
            if image_name is None:
                raise DaemonError(f"No image for service {task.service_name}")
            logger.debug("Pulling %s for %s", image_name, task.service_name)
            for data in daemon.pull(image_name):
                if task.progress_hook is not None:
                    task.progress_hook(data)
                error = (data.get("errorDetail") or {}).get("message") or data.get(
                    "error"
                )
                if error:
                    errors.append(str(error))
        else:
            if task.build_stream is None:
                raise DaemonError(f"No build stream for service {task.service_name}")
            logger.debug("Building %s for %s", image_name, task.service_name)
            output = _build_output(
                daemon.build(task.build_stream, **task.docker_opts), errors
            )
            if task.stream_hook is not None:
                task.stream_hook(output)
            else:
                for _ in output:
                    pass
    except (*TRANSPORT_ERRORS, DaemonError) as e:
        errors.append(str(e))

    end_time = datetime.now(timezone.utc)
    if errors:
        logger.debug("Service %s failed: %s", task.service_name, errors[-1])

    return ImageBuildOutcome(
        service_name=task.service_name,
        successful=not errors,
        error=errors[-1] if errors else None,
        image_name=image_name,
        dockerfile=task.dockerfile,
        project_type=task.project_type,
        start_time=start_time,
        end_time=end_time,
        external=task.external,
    )


def perform_builds(
    tasks: list[BuildTask],
    daemon: Daemon,
    max_workers: int = 4,
) -> list[ImageBuildOutcome]:
    """Run build tasks concurrently.

    Args:
        tasks: Build tasks.
        daemon: Container daemon, shared by all workers.
        max_workers: Maximum concurrent tasks.

    Returns:
        One ImageBuildOutcome per task, in task order.
    """
    if not tasks:
        return []
    with ThreadPoolExecutor(
        max_workers=max_workers, thread_name_prefix="build"
    ) as executor:
        return list(executor.map(lambda task: run_task(task, daemon), tasks))


__all__ = [
    "Daemon",
    "DaemonError",
    "DockerDaemon",
    "ImageBuildOutcome",
    "TRANSPORT_ERRORS",
    "perform_builds",
    "run_task",
]
