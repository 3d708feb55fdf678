"""Build progress events and per-service log pipelines.

Raw daemon output is decoded once, at the pipeline boundary, into one of
four event types:
- ErrorEvent: the service failed
- ProgressEvent: status text with a known percentage
- StatusEvent: status text only
- RawEvent: an uninterpreted log line

Each service owns a pipeline that captures log lines into its buffer and
forwards events to the renderer channel for that service.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Protocol, Union

from compose_deploy.emulation.transpose import TransposeOptions, untranspose_line

logger = logging.getLogger(__name__)

LOG_LENGTH_MAX = 512 * 1024  # 512 KiB

STEP_PATTERN = re.compile(r"^\s*Step\s+(\d+)/(\d+)\s*: (.+)$")
SUCCESSFULLY_TAGGED_PATTERN = re.compile(r"^Successfully tagged ")
ANSI_PATTERN = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]|\x1b[@-Z\\-_]")


@dataclass(frozen=True)
class ErrorEvent:
    """The service reported an error."""

    error: str


@dataclass(frozen=True)
class ProgressEvent:
    """Status text with a known completion percentage."""

    status: str
    progress: int


@dataclass(frozen=True)
class StatusEvent:
    """Status text without progress."""

    status: str


@dataclass(frozen=True)
class RawEvent:
    """Uninterpreted output, logged verbatim."""

    payload: str


BuildEvent = Union[ErrorEvent, ProgressEvent, StatusEvent, RawEvent]


class EventSink(Protocol):
    """Destination for a service's events (a renderer channel)."""

    def send(self, event: BuildEvent) -> None: ...


def make_event(
    status: str | None = None,
    progress: int | None = None,
    error: str | None = None,
    raw: Any = None,
) -> BuildEvent:
    """Decode loosely-shaped progress data into a typed event.

    Args:
        status: Status text.
        progress: Completion percentage.
        error: Error message.
        raw: Original payload, used when nothing else is present.

    Returns:
        The matching event variant.
    """
    if error:
        return ErrorEvent(str(error))
    if progress and status:
        return ProgressEvent(status, int(progress))
    if status:
        return StatusEvent(status)
    return RawEvent("" if raw is None else str(raw))


def log_entry(event: BuildEvent) -> str:
    """Render an event as a log buffer entry."""
    if isinstance(event, ErrorEvent):
        return event.error
    if isinstance(event, ProgressEvent):
        return f"{event.progress}% {event.status}"
    if isinstance(event, StatusEvent):
        return event.status
    return event.payload


def strip_ansi(text: str) -> str:
    """Remove ANSI escape sequences from text."""
    return ANSI_PATTERN.sub("", text)


def truncate_log(text: str, max_length: int = LOG_LENGTH_MAX) -> str:
    """Truncate a log to at most max_length characters at a line boundary.

    Args:
        text: Log text.
        max_length: Maximum length.

    Returns:
        The text unchanged if shorter than max_length, otherwise everything
        up to the last newline within the first max_length characters.
    """
    if len(text) < max_length:
        return text
    text = text[:max_length]
    cut = text.rfind("\n")
    return text[:cut] if cut >= 0 else ""


class LineSplitter:
    """Split a chunked text stream into lines."""

    def __init__(self) -> None:
        self._pending = ""

    def feed(self, chunk: str) -> list[str]:
        """Add a chunk and return the lines it completes."""
        data = self._pending + chunk
        lines = data.split("\n")
        self._pending = lines.pop()
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        """Return the trailing incomplete line, if any."""
        pending, self._pending = self._pending, ""
        return [pending.rstrip("\r")] if pending else []


class BuildProgressAdapter:
    """Turn build log lines into status/progress events.

    Lines of the form `Step N/M : <text>` set the progress to
    floor(N * 100 / M); following lines keep the step prefix and progress
    until the next step. `Successfully tagged` clears the progress.
    In inline mode every line becomes a plain status event.
    """

    def __init__(self, inline: bool = False) -> None:
        self.inline = inline
        self._step: int | None = None
        self._num_steps: int | None = None
        self._progress: int | None = None

    def adapt(self, line: str) -> BuildEvent:
        """Convert one log line into an event."""
        if self.inline:
            return StatusEvent(line)

        status = line
        if SUCCESSFULLY_TAGGED_PATTERN.match(line):
            self._progress = None
        else:
            match = STEP_PATTERN.match(line)
            if match:
                self._step = int(match.group(1))
                if self._num_steps is None:
                    self._num_steps = int(match.group(2))
                status = match.group(3)
            if self._step is not None and self._num_steps:
                status = f"Step {self._step}/{self._num_steps}: {status}"
                self._progress = self._step * 100 // self._num_steps

        if self._progress is not None:
            return ProgressEvent(status, self._progress)
        return StatusEvent(status)


def adapt_pull_progress(data: dict[str, Any]) -> BuildEvent:
    """Convert a daemon pull-progress object into an event.

    Args:
        data: Decoded pull stream object (status, id, progressDetail, error).

    Returns:
        The matching event; completed layers carry no progress.
    """
    status = data.get("status")
    if status is not None:
        status = re.sub(r"^Status: ", "", status)
    layer_id = data.get("id")
    if layer_id is not None:
        status = f"{layer_id}: {status}"

    percentage = data.get("percentage")
    detail = data.get("progressDetail") or {}
    if percentage is None and detail.get("total"):
        percentage = detail.get("current", 0) * 100 // detail["total"]
    if percentage == 100:
        percentage = None

    error_detail = data.get("errorDetail") or {}
    error = error_detail.get("message") or data.get("error")
    return make_event(status=status, progress=percentage, error=error, raw=data)


class LogCapture:
    """Accumulate log buffer entries for a service."""

    def __init__(self, buffer: list[str]) -> None:
        self.buffer = buffer

    def capture(self, event: BuildEvent) -> BuildEvent:
        """Append the event's log entry and pass the event through."""
        self.buffer.append(log_entry(event))
        return event

    def text(self, max_length: int = LOG_LENGTH_MAX) -> str:
        """Return the captured log, truncated to max_length."""
        return truncate_log("\n".join(self.buffer), max_length)


class BuildLogPipeline:
    """Per-service pipeline for local build output.

    Stages: strip ANSI sequences, split into lines, drop blank lines,
    undo emulator transposition, capture, adapt, send.
    """

    def __init__(
        self,
        sink: EventSink,
        buffer: list[str],
        inline: bool = False,
        transpose_options: TransposeOptions | None = None,
    ) -> None:
        self.sink = sink
        self.capture = LogCapture(buffer)
        self.adapter = BuildProgressAdapter(inline)
        self.transpose_options = transpose_options
        self._splitter = LineSplitter()

    def _emit(self, lines: Iterable[str]) -> None:
        for line in lines:
            if not line.strip():
                continue
            if self.transpose_options is not None:
                line = untranspose_line(line, self.transpose_options)
            self.capture.capture(RawEvent(line))
            self.sink.send(self.adapter.adapt(line))

    def feed(self, chunk: str) -> None:
        """Process a chunk of raw daemon output."""
        self._emit(self._splitter.feed(strip_ansi(chunk)))

    def close(self) -> None:
        """Flush any trailing partial line."""
        self._emit(self._splitter.flush())

    def consume(self, chunks: Iterable[str]) -> None:
        """Process a whole output stream."""
        for chunk in chunks:
            self.feed(chunk)
        self.close()


class PullLogPipeline:
    """Per-service pipeline for pull progress of pre-built images."""

    def __init__(self, sink: EventSink, buffer: list[str]) -> None:
        self.sink = sink
        self.capture = LogCapture(buffer)

    def feed(self, data: dict[str, Any]) -> None:
        """Process one decoded pull-progress object."""
        self.sink.send(self.capture.capture(adapt_pull_progress(data)))


__all__ = [
    "BuildEvent",
    "BuildLogPipeline",
    "BuildProgressAdapter",
    "ErrorEvent",
    "EventSink",
    "LOG_LENGTH_MAX",
    "LineSplitter",
    "LogCapture",
    "ProgressEvent",
    "PullLogPipeline",
    "RawEvent",
    "StatusEvent",
    "adapt_pull_progress",
    "log_entry",
    "make_event",
    "strip_ansi",
    "truncate_log",
]
