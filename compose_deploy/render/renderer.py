"""Live build progress renderers.

Each service gets a ServiceChannel. All channels feed one bounded queue,
drained by a single consumer thread owned by the renderer, so events of a
service are handled in the order they were sent. Senders block while the
queue is full.

Two renderers are provided:
- BuildProgressUI: redraws one line per service at 10 Hz (terminals)
- BuildProgressInline: prints one line per event (logs, pipes)
"""

from __future__ import annotations

import itertools
import logging
import os
import queue
import signal
import threading
import time
from collections.abc import Callable
from typing import Any

from rich.console import Console
from rich.text import Text

from compose_deploy.builds.progress import (
    BuildEvent,
    ErrorEvent,
    ProgressEvent,
    RawEvent,
    StatusEvent,
)
from compose_deploy.compose.schema import ImageDescriptor
from compose_deploy.render.tty import Tty
from compose_deploy.types import ServiceState

logger = logging.getLogger(__name__)

REDRAW_INTERVAL = 0.1  # 10 Hz
CHANNEL_CAPACITY = 1000
SERVICE_BAR_WIDTH = 20

# Exit status after an interrupt (128 + SIGINT)
INTERRUPTED_EXIT_STATUS = 130

BUILD_PREFIX = Text("[Build]", style="blue")

_STOP = object()


def render_progress_bar(percentage: int, width: int) -> str:
    """Render a fixed-width progress bar.

    Args:
        percentage: Completion percentage, clamped to 0-100.
        width: Number of bar cells.

    Returns:
        Bar of the form `[====>     ]  40%`.
    """
    percentage = max(0, min(100, int(percentage)))
    bar_count = width * percentage // 100
    space_count = width - bar_count
    return f"[{'=' * bar_count}>{' ' * space_count}] {percentage:>3}%"


def format_duration(seconds: float) -> str:
    """Format an elapsed time as `[h:]mm:ss`, or plain seconds under a minute."""
    total = int(seconds)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    if minutes:
        return f"{minutes}:{secs:02d}"
    return f"{secs}s"


def services_built(count: int, elapsed: float | None) -> str:
    """Return the final `Built N services in <duration>` line."""
    services = "1 service" if count == 1 else f"{count} services"
    duration = "unknown time" if elapsed is None else format_duration(elapsed)
    return f"Built {services} in {duration}"


class Spinner:
    """Cycles through `|/-\\` on each call."""

    CHARS = "|/-\\"

    def __init__(self) -> None:
        self._chars = itertools.cycle(self.CHARS)

    def __call__(self) -> str:
        return next(self._chars)


class RunLoop:
    """Call a function at a fixed interval on a timer thread.

    The loop runs between start() and end(); end() is idempotent and calls
    `on_end` once after the timer thread has stopped.
    """

    def __init__(
        self,
        tick: Callable[[], Any],
        interval: float = REDRAW_INTERVAL,
        on_end: Callable[[], Any] | None = None,
    ) -> None:
        self.tick = tick
        self.interval = interval
        self.on_end = on_end
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._ended = False

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.tick()
            except Exception:
                logger.exception("Render tick failed")
                return

    def start(self) -> RunLoop:
        if self._thread is None:
            self._thread = threading.Thread(
                target=self._run, name="runloop", daemon=True
            )
            self._thread.start()
        return self

    def end(self) -> None:
        if self._ended:
            return
        self._ended = True
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join()
        if self.on_end is not None:
            self.on_end()

    def __enter__(self) -> RunLoop:
        return self.start()

    def __exit__(self, *exc_info: Any) -> None:
        self.end()


def run_spinner(tty: Tty, spinner: Spinner, message: str | Text) -> RunLoop:
    """Show a message with a spinner until the returned loop is ended.

    Args:
        tty: Terminal.
        spinner: Spinner supplying the animation characters.
        message: Message shown before the spinner.

    Returns:
        Started RunLoop; ending it leaves the bare message on screen.
    """

    def tick() -> None:
        if not tty.is_terminal:
            return
        tty.clear_line()
        tty.write_line(Text.assemble(message, " ", spinner()))
        tty.cursor_up()

    def on_end() -> None:
        tty.clear_line()
        tty.write_line(message)

    return RunLoop(tick, on_end=on_end).start()


class ServiceChannel:
    """Sending handle for one service's events.

    Events sent after the renderer has ended are dropped.
    """

    def __init__(
        self, service: str, events: queue.Queue[Any], closed: threading.Event
    ) -> None:
        self.service = service
        self._events = events
        self._closed = closed

    def send(self, event: BuildEvent) -> None:
        """Queue an event, blocking while the channel is full."""
        while not self._closed.is_set():
            try:
                self._events.put((self.service, event), timeout=REDRAW_INTERVAL)
                return
            except queue.Full:
                continue


class _ChannelRenderer:
    """Channel plumbing shared by the renderers."""

    def __init__(
        self,
        descriptors: list[ImageDescriptor],
        capacity: int = CHANNEL_CAPACITY,
    ) -> None:
        self.services = [d.service_name for d in descriptors]
        self.external = {d.service_name for d in descriptors if d.is_external}
        self._events: queue.Queue[Any] = queue.Queue(maxsize=capacity)
        self._closed = threading.Event()
        self.streams = {
            service: ServiceChannel(service, self._events, self._closed)
            for service in self.services
        }
        self._consumer: threading.Thread | None = None
        self._lock = threading.RLock()
        self._ended = False
        self._start_time: float | None = None

    def channel(self, service: str) -> ServiceChannel:
        """Return the channel of a service."""
        return self.streams[service]

    def _consume(self) -> None:
        while True:
            item = self._events.get()
            if item is _STOP:
                return
            service, event = item
            try:
                self._handle_event(service, event)
            except Exception:
                logger.exception("Failed to render event for %s", service)

    def _start_consumer(self) -> None:
        self._consumer = threading.Thread(
            target=self._consume, name="renderer", daemon=True
        )
        self._consumer.start()

    def _stop_consumer(self) -> None:
        """Stop the consumer after it has handled every queued event."""
        if self._consumer is None:
            return
        self._closed.set()
        self._events.put(_STOP)
        if self._consumer is not threading.current_thread():
            self._consumer.join()
        self._consumer = None

    def _elapsed(self) -> float | None:
        if self._start_time is None:
            return None
        return time.monotonic() - self._start_time

    def _handle_event(self, service: str, event: BuildEvent) -> None:
        raise NotImplementedError

    def start(self) -> None:
        raise NotImplementedError

    def end(self, summary: dict[str, str] | None = None) -> None:
        raise NotImplementedError

    def __enter__(self) -> _ChannelRenderer:
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.end()


class BuildProgressUI(_ChannelRenderer):
    """Interactive renderer redrawing a status line and one line per service."""

    def __init__(self, tty: Tty, descriptors: list[ImageDescriptor]) -> None:
        super().__init__(descriptors)
        self.tty = tty
        self.prefix = Text.assemble(BUILD_PREFIX, "   ")
        longest = max((len(s) for s in self.services), default=0)
        self._prefix_width = self.prefix.cell_len + longest + 2
        self._max_line_width: int | None = None
        self.states = {service: ServiceState.PREPARING for service in self.services}
        self._latest: dict[str, BuildEvent] = {}
        self._runloop: RunLoop | None = None
        self._spinner = Spinner()
        self._cancelled = False
        self._previous_sigint: Any = None
        self._sigint_installed = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def _handle_event(self, service: str, event: BuildEvent) -> None:
        with self._lock:
            if self.states[service] is ServiceState.DONE:
                return
            self._latest[service] = event
            if isinstance(event, ErrorEvent):
                self.states[service] = ServiceState.DONE
            elif service in self.external:
                self.states[service] = ServiceState.PULLING
            else:
                self.states[service] = ServiceState.BUILDING

    def _handle_interrupt(self, signum: int, frame: Any) -> None:
        self._cancelled = True
        self.end()
        self.tty.flush()
        # Build workers are blocked in daemon calls; exit without joining them
        os._exit(INTERRUPTED_EXIT_STATUS)

    def _install_sigint(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        self._previous_sigint = signal.signal(signal.SIGINT, self._handle_interrupt)
        self._sigint_installed = True

    def _remove_sigint(self) -> None:
        if not self._sigint_installed:
            return
        signal.signal(signal.SIGINT, self._previous_sigint or signal.default_int_handler)
        self._sigint_installed = False

    def start(self) -> None:
        self._install_sigint()
        self.tty.hide_cursor()
        with self._lock:
            for service in self.services:
                self._latest[service] = StatusEvent("Preparing...")
        self._start_consumer()
        self._start_time = time.monotonic()
        self._runloop = RunLoop(self._display).start()

    def end(self, summary: dict[str, str] | None = None) -> None:
        """Stop redrawing and render the final state.

        Subsequent calls are no-ops.

        Args:
            summary: Final text per service; defaults to the latest status.
        """
        with self._lock:
            if self._ended:
                return
            self._ended = True
        self._remove_sigint()
        if self._runloop is not None:
            self._runloop.end()
            self._runloop = None
        self._stop_consumer()

        with self._lock:
            if summary is not None:
                for service in self.services:
                    self.states[service] = ServiceState.DONE
            self._clear()
            self._render_status(end=True)
            self._render_summary(summary or self.service_summary())
            self.tty.show_cursor()

    def _display(self) -> None:
        with self._lock:
            if self._ended:
                return
            self._clear()
            self._render_status()
            self._render_summary(self.service_summary())
            self.tty.cursor_up(len(self.services) + 1)

    def _clear(self) -> None:
        self.tty.delete_to_end()
        self._max_line_width = self.tty.window_width()

    def service_summary(self) -> dict[str, str]:
        """Return the text shown for each service."""
        summary: dict[str, str] = {}
        for service in self.services:
            event = self._latest.get(service)
            if isinstance(event, ErrorEvent):
                text = event.error
            elif isinstance(event, ProgressEvent) and event.progress:
                bar = render_progress_bar(event.progress, SERVICE_BAR_WIDTH)
                text = f"{bar} {event.status}" if event.status else bar
            elif isinstance(event, (ProgressEvent, StatusEvent)) and event.status:
                text = event.status
            else:
                text = "Waiting..."
            summary[service] = text
        return summary

    def _render_status(self, end: bool = False) -> None:
        self.tty.clear_line()
        self.tty.write(self.prefix)
        if end and self._cancelled:
            self.tty.write_line("Build cancelled")
        elif end:
            self.tty.write_line(services_built(len(self.services), self._elapsed()))
        else:
            self.tty.write_line(f"Building services... {self._spinner()}")

    def _render_summary(self, summary: dict[str, str]) -> None:
        for service in self.services:
            line = Text.assemble(self.prefix, (service, "bold"))
            line.pad_right(max(0, self._prefix_width - line.cell_len))
            line.append(summary.get(service, ""))
            if self._max_line_width is not None:
                line.truncate(self._max_line_width, overflow="ellipsis")
            self.tty.clear_line()
            self.tty.write_line(line)


class BuildProgressInline(_ChannelRenderer):
    """Non-interactive renderer printing one line per service event."""

    def __init__(self, console: Console, descriptors: list[ImageDescriptor]) -> None:
        super().__init__(descriptors)
        self.console = console
        longest = max((len(s) for s in self.services), default=0)
        self._prefix_width = longest + 2

    def _write(self, service: str, text: str) -> None:
        line = Text(service, style="bold")
        line.pad_right(max(0, self._prefix_width - line.cell_len))
        line.append(text)
        self.console.print(line, markup=False, highlight=False, soft_wrap=True)

    def _handle_event(self, service: str, event: BuildEvent) -> None:
        if isinstance(event, ErrorEvent):
            text = event.error
        elif isinstance(event, (ProgressEvent, StatusEvent)) and event.status:
            text = event.status
        elif isinstance(event, RawEvent) and event.payload:
            text = event.payload
        else:
            text = "Waiting..."
        self._write(service, text)

    def start(self) -> None:
        self.console.print("Building services...", markup=False, highlight=False)
        for service in self.services:
            self._write(service, "Preparing...")
        self._start_consumer()
        self._start_time = time.monotonic()

    def end(self, summary: dict[str, str] | None = None) -> None:
        """Print the summary and the final line. Subsequent calls are no-ops.

        Args:
            summary: Final text per service, printed if given.
        """
        with self._lock:
            if self._ended:
                return
            self._ended = True
        self._stop_consumer()
        if summary is not None:
            for service in self.services:
                if service in summary:
                    self._write(service, summary[service])
        self.console.print(
            services_built(len(self.services), self._elapsed()),
            markup=False,
            highlight=False,
        )


BuildRenderer = BuildProgressUI | BuildProgressInline


__all__ = [
    "BuildProgressInline",
    "BuildProgressUI",
    "BuildRenderer",
    "INTERRUPTED_EXIT_STATUS",
    "RunLoop",
    "ServiceChannel",
    "Spinner",
    "format_duration",
    "render_progress_bar",
    "run_spinner",
    "services_built",
]
