"""Dockerfile transposition for emulated builds.

An emulated build copies the static emulator into every build stage and
runs each RUN instruction through it, so that foreign-architecture images
can be built on the host's native architecture.

This module handles:
- Rewriting Dockerfile instructions to use the emulator
- Rewriting a build archive (patched Dockerfile, emulator entry)
- Mapping transposed RUN lines in build output back to the original
"""

from __future__ import annotations

import io
import json
import logging
import re
import tarfile
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

logger = logging.getLogger(__name__)

DEFAULT_DOCKERFILE = "Dockerfile"

_RUN_IN_OUTPUT = re.compile(r"^(?P<prefix>.*?\bRUN\s+)(?P<array>\[.*\])\s*$")


@dataclass
class TransposeOptions:
    """Options for transposing a build.

    Attributes:
        host_qemu_path: Emulator path relative to the build context (POSIX).
        container_qemu_path: Emulator path inside the image.
        qemu_file_mode: File mode of the emulator entry in the archive.
        qemu_binary: Local emulator binary, injected if the archive lacks it.
    """

    host_qemu_path: str
    container_qemu_path: str
    qemu_file_mode: int = 0o555
    qemu_binary: Path | None = None


def _logical_instructions(text: str) -> list[list[str]]:
    """Group Dockerfile lines into instructions, honouring continuations."""
    groups: list[list[str]] = []
    current: list[str] = []
    for line in text.splitlines():
        current.append(line)
        stripped = line.rstrip()
        if stripped.endswith("\\") and not stripped.lstrip().startswith("#"):
            continue
        groups.append(current)
        current = []
    if current:
        groups.append(current)
    return groups


def _transpose_run(body: str, options: TransposeOptions) -> str:
    """Rewrite the arguments of a RUN instruction to use the emulator."""
    body = body.strip()
    command: list[str] | None = None
    if body.startswith("["):
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list) and all(isinstance(a, str) for a in parsed):
            command = parsed
    if command is None:
        command = ["/bin/sh", "-c", body]
    return "RUN " + json.dumps([options.container_qemu_path, "-execve", *command])


def transpose_dockerfile(text: str, options: TransposeOptions) -> str:
    """Rewrite a Dockerfile so that RUN instructions execute via the emulator.

    Args:
        text: Dockerfile content.
        options: Transposition options.

    Returns:
        Transposed Dockerfile content.
    """
    copy_line = "COPY " + json.dumps(
        [options.host_qemu_path, options.container_qemu_path]
    )
    output: list[str] = []

    for lines in _logical_instructions(text):
        first = lines[0].strip()
        keyword = first.split(maxsplit=1)[0].upper() if first else ""

        if keyword == "FROM":
            output.extend(lines)
            output.append(copy_line)
        elif keyword == "RUN":
            joined = " ".join(
                line.rstrip().removesuffix("\\").strip() for line in lines
            )
            output.append(_transpose_run(joined.strip()[3:], options))
        else:
            output.extend(lines)

    return "\n".join(output) + "\n"


def transpose_tar_stream(
    stream: BinaryIO,
    options: TransposeOptions,
    dockerfile: str | None = None,
) -> BinaryIO:
    """Rewrite a build archive for an emulated build.

    Args:
        stream: Tar archive of the build context.
        options: Transposition options.
        dockerfile: Dockerfile path inside the archive (default 'Dockerfile').

    Returns:
        New archive with the Dockerfile transposed and the emulator present.
    """
    dockerfile = dockerfile or DEFAULT_DOCKERFILE
    output = io.BytesIO()
    found_qemu = False

    with (
        tarfile.open(fileobj=stream, mode="r:*") as src,
        tarfile.open(fileobj=output, mode="w", format=tarfile.PAX_FORMAT) as dst,
    ):
        for member in src:
            name = member.name.removeprefix("./")
            fileobj = src.extractfile(member) if member.isfile() else None

            if name == dockerfile and fileobj is not None:
                content = fileobj.read().decode("utf-8")
                data = transpose_dockerfile(content, options).encode("utf-8")
                member.size = len(data)
                dst.addfile(member, io.BytesIO(data))
                logger.debug("Transposed %s", dockerfile)
                continue

            if name == options.host_qemu_path:
                found_qemu = True
                member.mode = options.qemu_file_mode

            dst.addfile(member, fileobj)

        if not found_qemu and options.qemu_binary is not None:
            data = options.qemu_binary.read_bytes()
            info = tarfile.TarInfo(name=options.host_qemu_path)
            info.size = len(data)
            info.mode = options.qemu_file_mode
            dst.addfile(info, io.BytesIO(data))
            logger.debug("Injected emulator as %s", options.host_qemu_path)

    output.seek(0)
    return output


def untranspose_line(line: str, options: TransposeOptions) -> str:
    """Map a transposed RUN instruction in build output back to its original.

    Args:
        line: One line of build output.
        options: Transposition options used for the build.

    Returns:
        The line with the emulator invocation removed, or the line unchanged.
    """
    match = _RUN_IN_OUTPUT.match(line)
    if match is None:
        return line
    try:
        command = json.loads(match.group("array"))
    except json.JSONDecodeError:
        return line
    if (
        not isinstance(command, list)
        or command[:2] != [options.container_qemu_path, "-execve"]
    ):
        return line

    command = command[2:]
    if len(command) == 3 and command[:2] == ["/bin/sh", "-c"]:
        return match.group("prefix") + command[2]
    return match.group("prefix") + json.dumps(command)


__all__ = [
    "DEFAULT_DOCKERFILE",
    "TransposeOptions",
    "transpose_dockerfile",
    "transpose_tar_stream",
    "untranspose_line",
]
