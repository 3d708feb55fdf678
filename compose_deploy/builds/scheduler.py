"""Multi-service build orchestration.

This module provides the high-level build API:
- build_project(): package, prepare, build and collect every service image
- merge_build_options(): combine task, caller and per-service options
- Emulated builds through the transposed build archive
"""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx
from rich.console import Console
from rich.filesize import decimal

from compose_deploy.builds.daemon import perform_builds
from compose_deploy.builds.progress import (
    LOG_LENGTH_MAX,
    BuildLogPipeline,
    PullLogPipeline,
    truncate_log,
)
from compose_deploy.builds.tasks import BuildTask, make_build_tasks
from compose_deploy.compose.project import default_tag, parse_descriptors
from compose_deploy.compose.schema import BuildContext, ImageDescriptor
from compose_deploy.config import get_settings
from compose_deploy.context.tarball import TarDirectoryOptions, tar_directory
from compose_deploy.emulation.qemu import (
    CONTAINER_QEMU_PATH,
    EmulationError,
    copy_qemu,
    get_qemu_path,
    install_qemu_if_needed,
    qemu_path_in_context,
)
from compose_deploy.emulation.transpose import TransposeOptions, transpose_tar_stream
from compose_deploy.render.renderer import BuildProgressInline, BuildProgressUI
from compose_deploy.render.tty import Tty
from compose_deploy.types import BuiltImage

if TYPE_CHECKING:
    from compose_deploy.builds.daemon import Daemon, ImageBuildOutcome
    from compose_deploy.config import Settings
    from compose_deploy.render.renderer import BuildRenderer

logger = logging.getLogger(__name__)


class ServiceBuildError(Exception):
    """Raised when a service fails to build, aborting the whole build."""

    def __init__(
        self,
        service_name: str,
        message: str | None = None,
        code: str = "build_failed",
    ) -> None:
        super().__init__(message or f"Failed to build service {service_name}")
        self.service_name = service_name
        self.code = code


def _deep_merge(target: dict[str, Any], source: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge source into target (mappings merged, others replaced)."""
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)
    return target


def merge_build_options(
    task_opts: dict[str, Any] | None,
    caller_opts: dict[str, Any] | None,
    tag: str,
    context_args: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Combine daemon build options for a task.

    Caller options override the task's on conflicting keys, but nested
    mappings (such as `buildargs`) are merged key-wise. The service's build
    arguments are applied last.

    Args:
        task_opts: Options already present on the task.
        caller_opts: Options supplied by the caller.
        tag: Image tag for the build.
        context_args: Build arguments from the service's build context.

    Returns:
        New options mapping.
    """
    options = copy.deepcopy(task_opts or {})
    _deep_merge(options, caller_opts or {})
    options["tag"] = tag
    if context_args:
        buildargs = options.setdefault("buildargs", {})
        buildargs.update(context_args)
    return options


def _transpose_options(qemu_path: str, qemu_binary: Path | None = None) -> TransposeOptions:
    return TransposeOptions(
        host_qemu_path=qemu_path,
        container_qemu_path=CONTAINER_QEMU_PATH,
        qemu_file_mode=0o555,
        qemu_binary=qemu_binary,
    )


def prepare_task(
    task: BuildTask,
    descriptor: ImageDescriptor,
    renderer: BuildRenderer,
    project_name: str,
    build_opts: dict[str, Any] | None,
    needs_qemu: bool,
    inline_logs: bool = False,
    dockerfile_path: str | None = None,
    qemu_binary: Path | None = None,
) -> BuildTask:
    """Configure a task for building: tag, options, log sink, emulation, hooks.

    Args:
        task: Task created from the descriptor.
        descriptor: Descriptor of the same service.
        renderer: Renderer providing the service's channel.
        project_name: Project name, used for the default tag.
        build_opts: Caller-supplied daemon build options.
        needs_qemu: Whether emulation is active.
        inline_logs: Whether events are rendered inline (no progress).
        dockerfile_path: Dockerfile path override for transposition.
        qemu_binary: Cached emulator binary, injected if the archive lacks it.

    Returns:
        The same task, configured.

    Raises:
        EmulationError: If emulation is required but the task has no build stream.
    """
    if task.tag is None:
        task.tag = default_tag(project_name, task.service_name)
    if isinstance(descriptor.image, BuildContext):
        descriptor.image.tag = task.tag

    context_args = (
        descriptor.image.args if isinstance(descriptor.image, BuildContext) else None
    )
    task.docker_opts = merge_build_options(
        task.docker_opts, build_opts, task.tag, context_args
    )
    # Caller options win over the resolved Dockerfile
    if not task.external and task.dockerfile_path:
        task.docker_opts.setdefault("dockerfile", task.dockerfile_path)

    task.log_stream = renderer.channel(task.service_name)
    task.log_buffer = []

    transpose: TransposeOptions | None = None
    if needs_qemu and not task.external:
        if task.build_stream is None:
            raise EmulationError(
                f"No buildStream for task '{task.tag}'",
                code="no_build_stream",
            )
        transpose = _transpose_options(qemu_path_in_context(), qemu_binary)
        task.build_stream = transpose_tar_stream(
            task.build_stream,
            transpose,
            dockerfile_path or task.dockerfile_path,
        )

    if task.external:
        task.progress_hook = PullLogPipeline(task.log_stream, task.log_buffer).feed
    else:
        task.stream_hook = BuildLogPipeline(
            task.log_stream,
            task.log_buffer,
            inline=inline_logs,
            transpose_options=transpose,
        ).consume
    return task


def collect_built_image(
    outcome: ImageBuildOutcome,
    descriptor: ImageDescriptor,
    task: BuildTask,
    daemon: Daemon,
) -> BuiltImage:
    """Turn a successful build outcome into a BuiltImage.

    Raises:
        ServiceBuildError: If the outcome is unsuccessful.
        DaemonError: If the image size cannot be queried.
    """
    if not outcome.successful:
        raise ServiceBuildError(outcome.service_name, outcome.error)

    name = descriptor.image_name or outcome.image_name or ""
    return BuiltImage(
        service_name=descriptor.service_name,
        name=name,
        logs=truncate_log("\n".join(task.log_buffer), LOG_LENGTH_MAX),
        dockerfile=outcome.dockerfile,
        project_type=outcome.project_type,
        start_time=outcome.start_time,
        end_time=outcome.end_time,
        size=daemon.image_size(name),
    )


def build_project(
    daemon: Daemon,
    project_path: Path,
    project_name: str,
    composition: dict[str, Any],
    arch: str,
    device_type: str,
    emulated: bool = False,
    build_opts: dict[str, Any] | None = None,
    inline_logs: bool = False,
    convert_eol: bool = False,
    dockerfile_path: str | None = None,
    nogitignore: bool = False,
    settings: Settings | None = None,
    console: Console | None = None,
    http_client: httpx.Client | None = None,
) -> list[BuiltImage]:
    """Build every service of a composition.

    Args:
        daemon: Container daemon.
        project_path: Project directory.
        project_name: Project name, used for default tags.
        composition: Parsed composition.
        arch: Target architecture.
        device_type: Target device type.
        emulated: Whether to build through the emulator.
        build_opts: Extra daemon build options.
        inline_logs: Print one line per event instead of a live display.
        convert_eol: Convert CRLF line endings (Windows hosts only).
        dockerfile_path: Dockerfile path override.
        nogitignore: Ignore .gitignore files when packaging.
        settings: Optional settings instance.
        console: Console for progress output.
        http_client: HTTPX client for the emulator download.

    Returns:
        One BuiltImage per service, in composition order.

    Raises:
        ServiceBuildError: If any service fails to build.
        ContextPackagingError: If the project cannot be packaged.
        EmulationError: If emulation cannot be set up.
        BuildTaskError: If a build context or Dockerfile is missing.
    """
    if settings is None:
        settings = get_settings()
    if console is None:
        console = Console()

    logger.info("Building for %s/%s", arch, device_type)

    descriptors = parse_descriptors(composition)
    descriptors_by_name = {d.service_name: d for d in descriptors}

    renderer: BuildRenderer
    if inline_logs:
        renderer = BuildProgressInline(console, descriptors)
    else:
        renderer = BuildProgressUI(Tty(console), descriptors)

    with renderer:
        needs_qemu = install_qemu_if_needed(
            emulated,
            arch,
            daemon,
            settings.bin_dir,
            client=http_client,
            base_url=settings.qemu_download_base,
            timeout=settings.download_timeout,
        )
        qemu_binary: Path | None = None
        if needs_qemu:
            logger.info("Emulation is enabled")
            qemu_binary = get_qemu_path(arch, settings.bin_dir)
            for descriptor in descriptors:
                if isinstance(descriptor.image, BuildContext):
                    copy_qemu(
                        project_path / descriptor.image.context, arch, settings.bin_dir
                    )

        tar_stream = tar_directory(
            project_path,
            TarDirectoryOptions(nogitignore=nogitignore, convert_eol=convert_eol),
        )
        tasks = [
            prepare_task(
                task,
                descriptors_by_name[task.service_name],
                renderer,
                project_name,
                build_opts,
                needs_qemu,
                inline_logs=inline_logs,
                dockerfile_path=dockerfile_path,
                qemu_binary=qemu_binary,
            )
            for task in make_build_tasks(descriptors, tar_stream, arch, device_type)
        ]

        logger.debug("Prepared tasks; building...")
        outcomes = perform_builds(tasks, daemon, settings.max_concurrent_builds)

        tasks_by_name = {task.service_name: task for task in tasks}
        images = [
            collect_built_image(
                outcome,
                descriptors_by_name[outcome.service_name],
                tasks_by_name[outcome.service_name],
                daemon,
            )
            for outcome in outcomes
        ]

        renderer.end(
            {
                image.service_name: f"Image size: {decimal(image.size or 0)}"
                for image in images
            }
        )

    return images


__all__ = [
    "ServiceBuildError",
    "build_project",
    "collect_built_image",
    "merge_build_options",
    "prepare_task",
]
