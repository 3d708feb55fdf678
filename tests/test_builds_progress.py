"""Tests for build progress events and log pipelines."""

from compose_deploy.builds.progress import (
    BuildLogPipeline,
    BuildProgressAdapter,
    ErrorEvent,
    LineSplitter,
    ProgressEvent,
    PullLogPipeline,
    RawEvent,
    StatusEvent,
    adapt_pull_progress,
    log_entry,
    make_event,
    strip_ansi,
    truncate_log,
)
from compose_deploy.emulation.transpose import TransposeOptions


class RecordingSink:
    """Collects sent events."""

    def __init__(self):
        self.events = []

    def send(self, event):
        self.events.append(event)


class TestMakeEvent:
    """Tests for make_event function."""

    def test_error_wins(self):
        assert make_event(status="x", progress=5, error="boom") == ErrorEvent("boom")

    def test_progress_requires_status(self):
        assert make_event(status="Pulling", progress=40) == ProgressEvent("Pulling", 40)
        assert make_event(progress=40, raw="payload") == RawEvent("payload")

    def test_status_only(self):
        assert make_event(status="Pulling") == StatusEvent("Pulling")


class TestLogEntry:
    """Tests for log_entry function."""

    def test_progress_entry(self):
        assert log_entry(ProgressEvent("Downloading", 42)) == "42% Downloading"

    def test_other_entries(self):
        assert log_entry(ErrorEvent("boom")) == "boom"
        assert log_entry(StatusEvent("ok")) == "ok"
        assert log_entry(RawEvent("raw")) == "raw"


class TestTruncateLog:
    """Tests for truncate_log function."""

    def test_short_log_unchanged(self):
        assert truncate_log("abc\ndef", 100) == "abc\ndef"

    def test_cuts_at_last_newline(self):
        """A long log should be cut at the last newline within the limit."""
        assert truncate_log("line1\nline2\nline3", 14) == "line1\nline2"

    def test_no_newline(self):
        """A long log without a newline should become empty."""
        assert truncate_log("x" * 20, 10) == ""


class TestStripAnsi:
    """Tests for strip_ansi function."""

    def test_removes_color_codes(self):
        assert strip_ansi("\x1b[31mred\x1b[0m text") == "red text"


class TestLineSplitter:
    """Tests for LineSplitter class."""

    def test_joins_partial_chunks(self):
        """Lines split across chunks should be joined."""
        splitter = LineSplitter()

        assert splitter.feed("Step 1/2 : FR") == []
        assert splitter.feed("OM alpine\r\nStep 2") == ["Step 1/2 : FROM alpine"]
        assert splitter.flush() == ["Step 2"]
        assert splitter.flush() == []


class TestBuildProgressAdapter:
    """Tests for BuildProgressAdapter class."""

    def test_step_progress(self):
        """A step line should set the progress to step * 100 // steps."""
        adapter = BuildProgressAdapter()

        event = adapter.adapt("Step 3/10 : RUN foo")

        assert event == ProgressEvent("Step 3/10: RUN foo", 30)

    def test_following_lines_keep_step(self):
        """Output after a step should keep its prefix and progress."""
        adapter = BuildProgressAdapter()
        adapter.adapt("Step 1/4 : FROM alpine")

        event = adapter.adapt(" ---> abc123")

        assert event == ProgressEvent("Step 1/4:  ---> abc123", 25)

    def test_successfully_tagged_clears_progress(self):
        adapter = BuildProgressAdapter()
        adapter.adapt("Step 2/2 : CMD sh")

        event = adapter.adapt("Successfully tagged app_main:latest")

        assert event == StatusEvent("Successfully tagged app_main:latest")

    def test_lines_before_first_step(self):
        adapter = BuildProgressAdapter()

        assert adapter.adapt("Sending build context") == StatusEvent(
            "Sending build context"
        )

    def test_inline_mode(self):
        """Inline mode should pass every line through as a status."""
        adapter = BuildProgressAdapter(inline=True)

        assert adapter.adapt("Step 3/10 : RUN foo") == StatusEvent("Step 3/10 : RUN foo")


class TestAdaptPullProgress:
    """Tests for adapt_pull_progress function."""

    def test_layer_progress(self):
        event = adapt_pull_progress(
            {
                "status": "Downloading",
                "id": "abc",
                "progressDetail": {"current": 50, "total": 200},
            }
        )

        assert event == ProgressEvent("abc: Downloading", 25)

    def test_status_prefix_removed(self):
        event = adapt_pull_progress({"status": "Status: Image is up to date"})

        assert event == StatusEvent("Image is up to date")

    def test_complete_layer_has_no_progress(self):
        event = adapt_pull_progress(
            {"status": "Extracting", "id": "abc", "percentage": 100}
        )

        assert event == StatusEvent("abc: Extracting")

    def test_error(self):
        event = adapt_pull_progress(
            {"error": "not found", "errorDetail": {"message": "manifest unknown"}}
        )

        assert event == ErrorEvent("manifest unknown")


class TestBuildLogPipeline:
    """Tests for BuildLogPipeline class."""

    def test_captures_and_sends(self):
        """Non-blank lines should be captured and sent in order."""
        sink = RecordingSink()
        buffer = []
        pipeline = BuildLogPipeline(sink, buffer)

        pipeline.consume(
            ["Step 1/2 : FROM alpine\n", "\n \x1b[32m---> ab", "c\x1b[0m\n", "Step 2/2 : CMD sh"]
        )

        assert buffer == [
            "Step 1/2 : FROM alpine",
            " ---> abc",
            "Step 2/2 : CMD sh",
        ]
        assert [e.progress for e in sink.events] == [50, 50, 100]

    def test_untransposes_lines(self):
        """Transposed RUN lines should be logged as originally written."""
        sink = RecordingSink()
        buffer = []
        options = TransposeOptions(
            host_qemu_path=".balena/qemu-execve",
            container_qemu_path="/tmp/qemu-execve",
        )
        pipeline = BuildLogPipeline(sink, buffer, transpose_options=options)

        pipeline.consume(
            [
                'Step 2/3 : RUN ["/tmp/qemu-execve", "-execve", "/bin/sh", "-c", '
                '"make"]\n'
            ]
        )

        assert buffer == ["Step 2/3 : RUN make"]
        assert sink.events == [ProgressEvent("Step 2/3: RUN make", 66)]


class TestPullLogPipeline:
    """Tests for PullLogPipeline class."""

    def test_captures_log_entries(self):
        sink = RecordingSink()
        buffer = []
        pipeline = PullLogPipeline(sink, buffer)

        pipeline.feed({"status": "Downloading", "id": "l1", "progressDetail": {"current": 1, "total": 4}})
        pipeline.feed({"status": "Status: Downloaded newer image"})

        assert buffer == ["25% l1: Downloading", "Downloaded newer image"]
        assert len(sink.events) == 2
