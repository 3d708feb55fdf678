"""Build task creation.

This module handles:
- Splitting the project archive into one archive per build context
- Resolving the Dockerfile for each service (device type, arch, template)
- Rendering Dockerfile templates
- Creating one BuildTask per image descriptor
"""

from __future__ import annotations

import io
import logging
import posixpath
import tarfile
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, BinaryIO

from compose_deploy.compose.schema import BuildContext, ImageDescriptor

if TYPE_CHECKING:
    from compose_deploy.builds.progress import EventSink

logger = logging.getLogger(__name__)

PROJECT_TYPE_STANDARD = "Standard Dockerfile"
PROJECT_TYPE_ARCH_SPECIFIC = "Architecture-specific Dockerfile"
PROJECT_TYPE_TEMPLATE = "Dockerfile.template"

TEMPLATE_FILENAME = "Dockerfile.template"
RESOLVED_DOCKERFILE = "Dockerfile"


class BuildTaskError(Exception):
    """Raised when a build task cannot be created."""

    def __init__(
        self,
        message: str,
        service_name: str | None = None,
        code: str = "build_task_error",
    ) -> None:
        super().__init__(message)
        self.service_name = service_name
        self.code = code


@dataclass
class BuildTask:
    """Unit of work submitted to the daemon for one service.

    Attributes:
        service_name: Service name in the composition.
        external: Whether the image is pre-built (pulled, not built).
        image_name: Image reference for external tasks.
        context: Build context path relative to the project.
        dockerfile_path: Dockerfile path inside the build archive.
        dockerfile: Resolved Dockerfile content.
        project_type: Detected project type.
        tag: Image tag assigned to the build.
        args: Build arguments from the composition.
        build_stream: Tar archive of the build context.
        docker_opts: Options passed to the daemon build call.
        log_stream: Renderer channel receiving this service's events.
        log_buffer: Captured log entries.
        stream_hook: Consumes the text output of a local build.
        progress_hook: Receives each decoded pull-progress object.
    """

    service_name: str
    external: bool = False
    image_name: str | None = None
    context: str | None = None
    dockerfile_path: str | None = None
    dockerfile: str | None = None
    project_type: str | None = None
    tag: str | None = None
    args: dict[str, str] = field(default_factory=dict)
    build_stream: BinaryIO | None = None
    docker_opts: dict[str, Any] = field(default_factory=dict)
    log_stream: EventSink | None = None
    log_buffer: list[str] = field(default_factory=list)
    stream_hook: Callable[[Iterable[str]], None] | None = None
    progress_hook: Callable[[dict[str, Any]], None] | None = None


def render_template(content: str, arch: str, device_type: str) -> str:
    """Substitute machine name and architecture placeholders.

    Args:
        content: Dockerfile.template content.
        arch: Device architecture.
        device_type: Device type slug.

    Returns:
        Rendered Dockerfile content.
    """
    for prefix in ("BALENA", "RESIN"):
        content = content.replace(f"%%{prefix}_MACHINE_NAME%%", device_type)
        content = content.replace(f"%%{prefix}_ARCH%%", arch)
    return content


def _normalize_context(context: str) -> str:
    """Return a context path in normalized POSIX form ('' for the root)."""
    normalized = posixpath.normpath(context.replace("\\", "/"))
    if normalized == ".":
        return ""
    return normalized.removeprefix("./")


def _read_members(tar_stream: BinaryIO) -> list[tuple[tarfile.TarInfo, bytes | None]]:
    """Read every member of an archive into memory."""
    members: list[tuple[tarfile.TarInfo, bytes | None]] = []
    with tarfile.open(fileobj=tar_stream, mode="r:*") as tar:
        for member in tar:
            data = None
            if member.isfile():
                extracted = tar.extractfile(member)
                data = extracted.read() if extracted is not None else b""
            members.append((member, data))
    return members


def split_context(
    members: list[tuple[tarfile.TarInfo, bytes | None]],
    context: str,
) -> dict[str, tuple[tarfile.TarInfo, bytes | None]]:
    """Select the archive members under a build context.

    Args:
        members: Project archive members.
        context: Normalized context path ('' for the project root).

    Returns:
        Mapping of context-relative name to (member, data).
    """
    selected: dict[str, tuple[tarfile.TarInfo, bytes | None]] = {}
    prefix = f"{context}/" if context else ""
    for member, data in members:
        name = member.name.removeprefix("./")
        if prefix and not name.startswith(prefix):
            continue
        selected[name[len(prefix) :]] = (member, data)
    return selected


def resolve_dockerfile(
    files: dict[str, tuple[tarfile.TarInfo, bytes | None]],
    arch: str,
    device_type: str,
    explicit: str | None = None,
) -> tuple[str, str, str]:
    """Resolve the Dockerfile of a build context.

    Resolution order: an explicit path, `Dockerfile.<device_type>`,
    `Dockerfile.<arch>`, `Dockerfile`, then `Dockerfile.template`.

    Args:
        files: Context-relative archive members.
        arch: Device architecture.
        device_type: Device type slug.
        explicit: Dockerfile path set on the service, if any.

    Returns:
        Tuple of (dockerfile path, content, project type).

    Raises:
        BuildTaskError: If no Dockerfile can be found.
    """

    def content_of(name: str) -> str | None:
        entry = files.get(name)
        if entry is None or entry[1] is None:
            return None
        return entry[1].decode("utf-8")

    if explicit:
        name = _normalize_context(explicit)
        content = content_of(name)
        if content is None:
            raise BuildTaskError(
                f"Dockerfile not found: {explicit}",
                code="dockerfile_not_found",
            )
        project_type = PROJECT_TYPE_STANDARD
        if name.endswith(".template"):
            content = render_template(content, arch, device_type)
            project_type = PROJECT_TYPE_TEMPLATE
        return name, content, project_type

    for name in (f"Dockerfile.{device_type}", f"Dockerfile.{arch}"):
        content = content_of(name)
        if content is not None:
            return name, content, PROJECT_TYPE_ARCH_SPECIFIC

    content = content_of(RESOLVED_DOCKERFILE)
    if content is not None:
        return RESOLVED_DOCKERFILE, content, PROJECT_TYPE_STANDARD

    content = content_of(TEMPLATE_FILENAME)
    if content is not None:
        return (
            RESOLVED_DOCKERFILE,
            render_template(content, arch, device_type),
            PROJECT_TYPE_TEMPLATE,
        )

    raise BuildTaskError("No Dockerfile found", code="dockerfile_not_found")


def _write_context_archive(
    files: dict[str, tuple[tarfile.TarInfo, bytes | None]],
    dockerfile_path: str,
    dockerfile: str,
) -> BinaryIO:
    """Write a context archive with the resolved Dockerfile in place."""
    buffer = io.BytesIO()
    dockerfile_data = dockerfile.encode("utf-8")
    with tarfile.open(fileobj=buffer, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for name, (member, data) in files.items():
            if not name or name == dockerfile_path:
                continue
            info = tarfile.TarInfo(name=name)
            info.size = len(data) if data is not None else 0
            info.mode = member.mode
            info.mtime = member.mtime
            info.type = member.type
            info.linkname = member.linkname
            tar.addfile(info, io.BytesIO(data) if data is not None else None)

        info = tarfile.TarInfo(name=dockerfile_path)
        info.size = len(dockerfile_data)
        info.mode = 0o644
        entry = files.get(dockerfile_path)
        if entry is not None:
            info.mode = entry[0].mode
            info.mtime = entry[0].mtime
        tar.addfile(info, io.BytesIO(dockerfile_data))
    buffer.seek(0)
    return buffer


def make_build_tasks(
    descriptors: list[ImageDescriptor],
    tar_stream: BinaryIO,
    arch: str,
    device_type: str,
) -> list[BuildTask]:
    """Create one build task per image descriptor.

    Args:
        descriptors: Image descriptors of the composition.
        tar_stream: Archive of the whole project directory.
        arch: Device architecture.
        device_type: Device type slug.

    Returns:
        BuildTask list in descriptor order.

    Raises:
        BuildTaskError: If a build context is empty or has no Dockerfile.
    """
    members = _read_members(tar_stream)
    tasks: list[BuildTask] = []

    for descriptor in descriptors:
        image = descriptor.image
        if not isinstance(image, BuildContext):
            tasks.append(
                BuildTask(
                    service_name=descriptor.service_name,
                    external=True,
                    image_name=image,
                )
            )
            continue

        context = _normalize_context(image.context)
        if context.startswith(".."):
            raise BuildTaskError(
                f"Build context outside the project: {image.context}",
                service_name=descriptor.service_name,
                code="context_not_found",
            )

        files = split_context(members, context)
        if not files:
            raise BuildTaskError(
                f"Build context not found: {image.context}",
                service_name=descriptor.service_name,
                code="context_not_found",
            )

        try:
            dockerfile_path, dockerfile, project_type = resolve_dockerfile(
                files, arch, device_type, image.dockerfile
            )
        except BuildTaskError as e:
            e.service_name = descriptor.service_name
            raise

        logger.debug(
            "Service %s: %s (%s)", descriptor.service_name, dockerfile_path, project_type
        )
        tasks.append(
            BuildTask(
                service_name=descriptor.service_name,
                context=image.context,
                dockerfile_path=dockerfile_path,
                dockerfile=dockerfile,
                project_type=project_type,
                tag=image.tag,
                args=dict(image.args),
                build_stream=_write_context_archive(
                    files, dockerfile_path, dockerfile
                ),
            )
        )

    return tasks


__all__ = [
    "BuildTask",
    "BuildTaskError",
    "PROJECT_TYPE_ARCH_SPECIFIC",
    "PROJECT_TYPE_STANDARD",
    "PROJECT_TYPE_TEMPLATE",
    "make_build_tasks",
    "render_template",
    "resolve_dockerfile",
    "split_context",
]
