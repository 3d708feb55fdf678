"""Tests for multi-service build orchestration.

The daemon is mocked; rendering goes to an in-memory console.
"""

import io
import tarfile
from unittest.mock import MagicMock, patch

import pytest
from rich.console import Console

from compose_deploy.builds.scheduler import (
    ServiceBuildError,
    build_project,
    merge_build_options,
    prepare_task,
)
from compose_deploy.builds.tasks import BuildTask
from compose_deploy.compose.project import parse_descriptors
from compose_deploy.config import Settings
from compose_deploy.emulation.qemu import EmulationError
from compose_deploy.render.renderer import BuildProgressInline


def _console() -> Console:
    return Console(file=io.StringIO(), width=120)


def _daemon(failing_tag: str | None = None) -> MagicMock:
    daemon = MagicMock()
    daemon.info.return_value = {"OperatingSystem": "Ubuntu 22.04"}
    archives = {}

    def build(fileobj, **options):
        with tarfile.open(fileobj=fileobj, mode="r") as tar:
            archives[options["tag"]] = sorted(tar.getnames())
        if options["tag"] == failing_tag:
            return iter(
                [
                    {"stream": "Step 1/2 : FROM alpine\n"},
                    {"errorDetail": {"message": "RUN exited 1"}, "error": "x"},
                ]
            )
        return iter(
            [
                {"stream": "Step 1/2 : FROM alpine\n"},
                {"stream": "Step 2/2 : RUN make\n"},
                {"stream": f"Successfully tagged {options['tag']}:latest\n"},
            ]
        )

    daemon.build.side_effect = build
    daemon.pull.side_effect = lambda image: iter(
        [{"status": "Pulling from library/redis", "id": "7"}]
    )
    daemon.image_size.return_value = 5_000_000
    daemon.archives = archives
    return daemon


def _project(tmp_path):
    (tmp_path / "web").mkdir()
    (tmp_path / "web" / "Dockerfile").write_text("FROM alpine\nRUN make\n")
    (tmp_path / "web" / "Makefile").write_text("all:\n")
    return {
        "services": {
            "web": {"build": {"context": "web", "args": {"MODE": "prod"}}},
            "cache": {"image": "redis:7"},
        }
    }


class TestMergeBuildOptions:
    """Tests for merge_build_options function."""

    def test_caller_overrides_and_nested_merge(self):
        """Caller options should win; nested mappings merge key-wise."""
        task_opts = {"buildargs": {"A": "task", "B": "task"}, "pull": False}
        caller_opts = {"buildargs": {"B": "caller"}, "pull": True, "nocache": True}

        options = merge_build_options(task_opts, caller_opts, "app_web", {"C": "svc"})

        assert options == {
            "buildargs": {"A": "task", "B": "caller", "C": "svc"},
            "pull": True,
            "nocache": True,
            "tag": "app_web",
        }

    def test_inputs_not_modified(self):
        task_opts = {"buildargs": {"A": "1"}}
        caller_opts = {"buildargs": {"B": "2"}}

        merge_build_options(task_opts, caller_opts, "t", {"C": "3"})

        assert task_opts == {"buildargs": {"A": "1"}}
        assert caller_opts == {"buildargs": {"B": "2"}}

    def test_tag_always_set(self):
        assert merge_build_options(None, {"tag": "ignored"}, "app_web") == {
            "tag": "app_web"
        }


class TestPrepareTask:
    """Tests for prepare_task function."""

    def test_assigns_default_tag_and_hooks(self):
        """A task without a tag gets the default and propagates it back."""
        descriptors = parse_descriptors({"services": {"Web": {"build": "."}}})
        renderer = BuildProgressInline(_console(), descriptors)
        task = BuildTask(service_name="Web", build_stream=io.BytesIO(b""))

        prepare_task(task, descriptors[0], renderer, "MyApp", None, needs_qemu=False)

        assert task.tag == "myapp_web"
        assert descriptors[0].image_name == "myapp_web"
        assert task.docker_opts["tag"] == "myapp_web"
        assert task.log_stream is renderer.channel("Web")
        assert task.stream_hook is not None
        assert task.progress_hook is None

    def test_emulation_requires_build_stream(self):
        descriptors = parse_descriptors({"services": {"web": {"build": "."}}})
        renderer = BuildProgressInline(_console(), descriptors)
        task = BuildTask(service_name="web", tag="app_web")

        with pytest.raises(EmulationError) as exc_info:
            prepare_task(task, descriptors[0], renderer, "app", None, needs_qemu=True)

        assert exc_info.value.code == "no_build_stream"
        assert "app_web" in str(exc_info.value)

    def test_resolved_dockerfile_passed_to_daemon(self):
        """The resolved Dockerfile path should reach the build options."""
        build = {"context": ".", "dockerfile": "Prod.Dockerfile"}
        descriptors = parse_descriptors({"services": {"web": {"build": build}}})
        renderer = BuildProgressInline(_console(), descriptors)
        task = BuildTask(
            service_name="web",
            dockerfile_path="Prod.Dockerfile",
            build_stream=io.BytesIO(b""),
        )

        prepare_task(task, descriptors[0], renderer, "app", None, needs_qemu=False)

        assert task.docker_opts["dockerfile"] == "Prod.Dockerfile"

    def test_caller_dockerfile_option_wins(self):
        descriptors = parse_descriptors({"services": {"web": {"build": "."}}})
        renderer = BuildProgressInline(_console(), descriptors)
        task = BuildTask(
            service_name="web",
            dockerfile_path="Dockerfile",
            build_stream=io.BytesIO(b""),
        )

        prepare_task(
            task,
            descriptors[0],
            renderer,
            "app",
            {"dockerfile": "Other.Dockerfile"},
            needs_qemu=False,
        )

        assert task.docker_opts["dockerfile"] == "Other.Dockerfile"

    def test_external_task_has_no_dockerfile_option(self):
        descriptors = parse_descriptors({"services": {"cache": {"image": "redis:7"}}})
        renderer = BuildProgressInline(_console(), descriptors)
        task = BuildTask(service_name="cache", external=True, image_name="redis:7")

        prepare_task(task, descriptors[0], renderer, "app", None, needs_qemu=False)

        assert "dockerfile" not in task.docker_opts


class TestBuildProject:
    """Tests for build_project function."""

    def test_builds_local_and_pulls_external(self, tmp_path):
        """Every service should yield a BuiltImage, in composition order."""
        composition = _project(tmp_path)
        daemon = _daemon()
        console = _console()

        images = build_project(
            daemon,
            tmp_path,
            "demo",
            composition,
            "amd64",
            "generic-amd64",
            inline_logs=True,
            settings=Settings(bin_dir=tmp_path / "bin"),
            console=console,
        )

        assert [i.service_name for i in images] == ["web", "cache"]
        web, cache = images
        assert web.name == "demo_web"
        assert web.size == 5_000_000
        assert web.dockerfile == "FROM alpine\nRUN make\n"
        assert "Step 2/2 : RUN make" in web.logs
        assert cache.name == "redis:7"
        assert "7: Pulling from library/redis" in cache.logs

        build_kwargs = daemon.build.call_args.kwargs
        assert build_kwargs["tag"] == "demo_web"
        assert build_kwargs["buildargs"] == {"MODE": "prod"}
        assert daemon.archives["demo_web"] == ["Dockerfile", "Makefile"]

        output = console.file.getvalue()
        assert "Building services..." in output
        assert "Image size: 5.0 MB" in output
        assert "Built 2 services in" in output

    def test_failed_service_raises(self, tmp_path):
        """A failed build should raise ServiceBuildError for that service."""
        composition = _project(tmp_path)

        with pytest.raises(ServiceBuildError) as exc_info:
            build_project(
                _daemon(failing_tag="demo_web"),
                tmp_path,
                "demo",
                composition,
                "amd64",
                "generic-amd64",
                inline_logs=True,
                settings=Settings(bin_dir=tmp_path / "bin"),
                console=_console(),
            )

        assert exc_info.value.service_name == "web"
        assert "RUN exited 1" in str(exc_info.value)

    def test_emulated_build_transposes_dockerfile(self, tmp_path):
        """An emulated build should copy the emulator and transpose RUN steps."""
        composition = {"services": {"main": {"build": "."}}}
        (tmp_path / "Dockerfile").write_text("FROM arm32v7/alpine\nRUN make\n")
        bin_dir = tmp_path / "cache"
        bin_dir.mkdir()
        (bin_dir / "qemu-execve-armv7hf-v4.0.0+balena2").write_bytes(b"qemu")
        daemon = _daemon()
        dockerfiles = []

        def build(fileobj, **options):
            with tarfile.open(fileobj=fileobj, mode="r") as tar:
                dockerfiles.append(tar.extractfile("Dockerfile").read().decode())
                assert ".balena/qemu-execve" in tar.getnames()
            return iter([{"stream": "Step 1/1 : FROM arm32v7/alpine\n"}])

        daemon.build.side_effect = build

        images = build_project(
            daemon,
            tmp_path,
            "demo",
            composition,
            "armv7hf",
            "raspberrypi3",
            emulated=True,
            inline_logs=True,
            settings=Settings(bin_dir=bin_dir),
            console=_console(),
        )

        assert images[0].name == "demo_main"
        assert "/tmp/qemu-execve" in dockerfiles[0]
        assert (tmp_path / ".balena" / "qemu-execve").read_bytes() == b"qemu"

    def test_arch_specific_dockerfile_used(self, tmp_path):
        """A Dockerfile.<arch> should be the file the daemon builds."""
        (tmp_path / "Dockerfile.armv7hf").write_text("FROM arm32v7/alpine\n")
        daemon = _daemon()

        build_project(
            daemon,
            tmp_path,
            "demo",
            {"services": {"main": {"build": "."}}},
            "armv7hf",
            "raspberrypi3",
            inline_logs=True,
            settings=Settings(bin_dir=tmp_path / "bin"),
            console=_console(),
        )

        build_kwargs = daemon.build.call_args.kwargs
        assert build_kwargs["dockerfile"] == "Dockerfile.armv7hf"
        assert daemon.archives["demo_main"] == ["Dockerfile.armv7hf"]

    def test_download_timeout_from_settings(self, tmp_path):
        """The configured download timeout should reach the emulator install."""
        (tmp_path / "Dockerfile").write_text("FROM alpine\n")
        settings = Settings(bin_dir=tmp_path / "bin", download_timeout=42)

        with patch(
            "compose_deploy.builds.scheduler.install_qemu_if_needed",
            return_value=False,
        ) as install:
            build_project(
                _daemon(),
                tmp_path,
                "demo",
                {"services": {"main": {"build": "."}}},
                "armv7hf",
                "raspberrypi3",
                emulated=True,
                inline_logs=True,
                settings=settings,
                console=_console(),
            )

        assert install.call_args.kwargs["timeout"] == 42
