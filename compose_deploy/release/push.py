"""Image push with retry and aggregated progress.

This module handles:
- Retrying an operation with exponential backoff
- Pushing one tagged image and extracting its content digest
- Rendering a single progress bar for all concurrent pushes
- Pushing every image of a release, recording each outcome
"""

from __future__ import annotations

import contextlib
import logging
import re
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, TypeVar

from rich.text import Text

from compose_deploy.builds.daemon import TRANSPORT_ERRORS, DaemonError
from compose_deploy.render.renderer import render_progress_bar
from compose_deploy.types import ServiceImageStatus

if TYPE_CHECKING:
    from compose_deploy.builds.daemon import Daemon
    from compose_deploy.release.registry import TaggedImage
    from compose_deploy.release.schema import ServiceImageRecord
    from compose_deploy.render.tty import Tty
    from compose_deploy.types import BuiltImage

logger = logging.getLogger(__name__)

T = TypeVar("T")

PUSH_BAR_WIDTH = 40
PUSH_PREFIX = Text.assemble(("[Push]", "blue"), "    ")

DIGEST_PATTERN = re.compile(r"digest: (sha256:[0-9a-f]+)")

ProgressReporter = Callable[[int], None]


class PushError(Exception):
    """Raised when an image push fails."""

    def __init__(self, message: str, code: str = "push_failed") -> None:
        super().__init__(message)
        self.code = code


def retry(
    fn: Callable[[], T],
    times: int = 3,
    label: str | None = None,
    delay: float = 2.0,
    backoff: float = 1.4,
    retry_on: tuple[type[Exception], ...] = (Exception,),
    sleep: Callable[[float], Any] = time.sleep,
) -> T:
    """Call a function until it succeeds or the attempts run out.

    Args:
        fn: Function to call.
        times: Total number of attempts.
        label: Name used in log messages.
        delay: Wait before the first retry, in seconds.
        backoff: Multiplier applied to the wait after each retry.
        retry_on: Exception types that trigger a retry.
        sleep: Sleep function.

    Returns:
        The function's return value.

    Raises:
        Exception: The last error, once all attempts have failed.
    """
    attempt = 1
    while True:
        try:
            return fn()
        except retry_on as e:
            if attempt >= times:
                raise
            logger.warning(
                "Retrying %s after %.1fs (%d of %d) due to: %s",
                label or "operation",
                delay,
                attempt,
                times - 1,
                e,
            )
            sleep(delay)
            delay *= backoff
            attempt += 1


class PushProgressRenderer:
    """One progress bar aggregating the pushes of several images."""

    def __init__(self, tty: Tty, count: int, width: int = PUSH_BAR_WIDTH) -> None:
        self.tty = tty
        self.width = width
        self._progress = [0] * count
        self._lock = threading.Lock()

    def reporter(self, index: int) -> ProgressReporter:
        """Return the progress callback of one image."""

        def report(percentage: int) -> None:
            with self._lock:
                self._progress[index] = max(0, min(100, int(percentage)))
                total = sum(self._progress) // max(1, len(self._progress))
                bar = render_progress_bar(total, self.width)
                self.tty.replace_line(Text.assemble(PUSH_PREFIX, bar))

        return report

    def end(self) -> None:
        with self._lock:
            self.tty.clear_line()


def push_image(
    daemon: Daemon,
    tagged: TaggedImage,
    auth_config: dict[str, str] | None = None,
    reporter: ProgressReporter | None = None,
) -> str:
    """Push one tagged image.

    Args:
        daemon: Container daemon.
        tagged: Image to push.
        auth_config: Registry credentials.
        reporter: Receives the overall push percentage.

    Returns:
        Content digest reported by the registry.

    Raises:
        PushError: If the push fails or reports no digest.
    """
    layers: dict[str, tuple[int, int]] = {}
    digest: str | None = None
    repository = f"{tagged.registry}/{tagged.repo}"

    try:
        for data in daemon.push(repository, tagged.tag, auth_config):
            error = (data.get("errorDetail") or {}).get("message") or data.get("error")
            if error:
                raise PushError(f"Failed to push {tagged.local_name}: {error}")

            aux = data.get("aux") or {}
            if aux.get("Digest"):
                digest = aux["Digest"]
            match = DIGEST_PATTERN.search(data.get("status") or "")
            if match and digest is None:
                digest = match.group(1)

            detail = data.get("progressDetail") or {}
            if data.get("id") and detail.get("total"):
                layers[data["id"]] = (detail.get("current", 0), detail["total"])
                if reporter is not None:
                    current = sum(c for c, _ in layers.values())
                    total = sum(t for _, t in layers.values())
                    reporter(current * 100 // total)
    except (*TRANSPORT_ERRORS, DaemonError) as e:
        raise PushError(f"Failed to push {tagged.local_name}: {e}") from e

    if digest is None:
        raise PushError(f"No digest reported for {tagged.local_name}")
    if reporter is not None:
        reporter(100)
    return digest


def record_push_success(
    record: ServiceImageRecord,
    built: BuiltImage,
    logs: str,
    size: int,
    digest: str,
) -> None:
    """Fill a service image record after a successful push."""
    record.image_size = size
    record.content_hash = digest
    record.build_log = logs
    record.dockerfile = built.dockerfile
    record.project_type = built.project_type
    if built.start_time:
        record.start_timestamp = built.start_time
    if built.end_time:
        record.end_timestamp = built.end_time
    record.push_timestamp = datetime.now(timezone.utc)
    record.status = ServiceImageStatus.SUCCESS


def push_and_update_service_images(
    daemon: Daemon,
    token: str,
    images: list[TaggedImage],
    after_each: Callable[[ServiceImageRecord, BuiltImage], Any] | None = None,
    tty: Tty | None = None,
    retries: int = 3,
    retry_delay: float = 2.0,
    retry_backoff: float = 1.4,
    max_workers: int = 4,
    sleep: Callable[[float], Any] = time.sleep,
) -> list[ServiceImageRecord]:
    """Push every tagged image and record the outcome on its service image.

    A failed push marks that image failed without affecting the others.
    `after_each` is called exactly once per image, after its push attempt.

    Args:
        daemon: Container daemon.
        token: Registry token (may be empty).
        images: Tagged images.
        after_each: Called with each final record and its built image.
        tty: Terminal for the progress bar.
        retries: Attempts per image.
        retry_delay: Wait before the first retry, in seconds.
        retry_backoff: Multiplier applied to the wait after each retry.
        max_workers: Maximum concurrent pushes.
        sleep: Sleep function used between retries.

    Returns:
        Service image records, in image order.
    """
    auth_config = {"registrytoken": token}
    renderer = PushProgressRenderer(tty, len(images)) if tty is not None else None

    def push_one(index: int, tagged: TaggedImage) -> ServiceImageRecord:
        record = tagged.service_image
        reporter = renderer.reporter(index) if renderer is not None else None
        try:
            size = daemon.image_size(tagged.local_name)
            digest = retry(
                lambda: push_image(daemon, tagged, auth_config, reporter),
                times=retries,
                label=tagged.local_name,
                delay=retry_delay,
                backoff=retry_backoff,
                retry_on=(PushError,),
                sleep=sleep,
            )
            record_push_success(record, tagged.built, tagged.logs, size, digest)
        except (PushError, DaemonError, *TRANSPORT_ERRORS) as e:
            logger.error("Failed to push %s: %s", tagged.service_name, e)
            record.error_message = str(e)
            record.status = ServiceImageStatus.FAILED
        finally:
            if after_each is not None:
                after_each(record, tagged.built)
        return record

    if not images:
        return []

    cursor = tty.cursor_hidden() if tty is not None else contextlib.nullcontext()
    with cursor:
        try:
            with ThreadPoolExecutor(
                max_workers=max_workers, thread_name_prefix="push"
            ) as executor:
                futures = [
                    executor.submit(push_one, index, tagged)
                    for index, tagged in enumerate(images)
                ]
                return [future.result() for future in futures]
        finally:
            if renderer is not None:
                renderer.end()


__all__ = [
    "PushError",
    "PushProgressRenderer",
    "push_and_update_service_images",
    "push_image",
    "record_push_success",
    "retry",
]
