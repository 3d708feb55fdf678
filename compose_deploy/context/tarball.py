"""Build context packaging.

This module handles:
- Walking a source directory and applying ignore-file filters
- Optional CRLF to LF conversion of text files (Windows hosts only)
- Writing a tar archive with POSIX-normalized entry names

The resulting archive is the build stream sent to the container daemon.
"""

from __future__ import annotations

import io
import logging
import os
import stat
import sys
import tarfile
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from compose_deploy.context.ignore import FileIgnorer
from compose_deploy.types import IgnoreFileType

logger = logging.getLogger(__name__)

# Number of leading bytes inspected when deciding if a file is binary
BINARY_SNIFF_BYTES = 8000

# Platforms on which line-ending conversion is applied
EOL_CONVERSION_PLATFORMS = ("win32",)


class ContextPackagingError(Exception):
    """Raised when a build context cannot be packaged."""

    def __init__(self, message: str, code: str = "context_packaging_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class TarDirectoryOptions:
    """Options for tar_directory().

    Attributes:
        nogitignore: Disregard .gitignore files, honour only the root .dockerignore.
        convert_eol: Convert CRLF line endings to LF in text files.
        pre_finalize: Called with the open archive before it is closed.
        on_ignore_files: Called once with the docker-ignore and git-ignore
            files found; defaults to logging a warning.
    """

    nogitignore: bool = False
    convert_eol: bool = False
    pre_finalize: Callable[[tarfile.TarFile], None] | None = None
    on_ignore_files: Callable[[list[Path], list[Path]], None] | None = None


def warn_gitignore(dockerignore: list[Path], gitignore: list[Path]) -> None:
    """Log a warning when .gitignore files affect the build context."""
    if not gitignore:
        return
    lines = "\n".join(f"  {p}" for p in gitignore)
    if dockerignore:
        logger.warning(
            "Using both .dockerignore and .gitignore files to filter the build "
            "context. Support for .gitignore will be removed; use --nogitignore "
            "to consider only %s.\nThe following .gitignore files were used:\n%s",
            dockerignore[0],
            lines,
        )
    else:
        logger.warning(
            "Using .gitignore files to filter the build context. Support for "
            ".gitignore will be removed; use --nogitignore and a .dockerignore "
            "file instead.\nThe following .gitignore files were used:\n%s",
            lines,
        )


def is_binary(data: bytes) -> bool:
    """Check whether file content looks binary (contains a NUL byte)."""
    return b"\0" in data[:BINARY_SNIFF_BYTES]


def read_file(path: Path, convert_eol: bool = False) -> bytes:
    """Read a file, optionally converting CRLF line endings to LF.

    Args:
        path: File to read.
        convert_eol: Whether to convert line endings of text files.

    Returns:
        File content.
    """
    data = path.read_bytes()
    if convert_eol and b"\r\n" in data and not is_binary(data):
        logger.debug("Converting line endings CRLF -> LF for %s", path)
        data = data.replace(b"\r\n", b"\n")
    return data


def list_files(directory: Path) -> list[Path]:
    """List all non-directory entries under a directory, sorted."""
    files: list[Path] = []
    for root, dirs, filenames in os.walk(directory):
        dirs.sort()
        root_path = Path(root)
        files.extend(root_path / name for name in sorted(filenames))
    return files


def tar_directory(
    directory: Path,
    options: TarDirectoryOptions | None = None,
) -> BinaryIO:
    """Create a tar archive of a source directory.

    Args:
        directory: Source directory.
        options: Packaging options.

    Returns:
        Binary file object positioned at the start of the archive.

    Raises:
        ContextPackagingError: If the directory is missing or any file
            cannot be stat'ed or read.
    """
    if options is None:
        options = TarDirectoryOptions()

    directory = directory.resolve()
    if not directory.is_dir():
        raise ContextPackagingError(
            f"Source directory not found: {directory}",
            code="source_not_found",
        )

    convert_eol = options.convert_eol and sys.platform in EOL_CONVERSION_PLATFORMS
    ignorer = FileIgnorer(directory, nogitignore=options.nogitignore)
    ignore_files: dict[IgnoreFileType, list[Path]] = {}

    try:
        files = list_files(directory)

        for path in files:
            file_type = ignorer.get_ignore_file_type(
                path.relative_to(directory).as_posix()
            )
            if file_type is not None:
                ignore_files.setdefault(file_type, []).append(path)
                ignorer.add_ignore_file(path, file_type)

        on_ignore_files = options.on_ignore_files
        if on_ignore_files is None and not options.nogitignore:
            on_ignore_files = warn_gitignore
        if on_ignore_files is not None:
            on_ignore_files(
                ignore_files.get(IgnoreFileType.DOCKER_IGNORE, []),
                ignore_files.get(IgnoreFileType.GIT_IGNORE, []),
            )

        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w", format=tarfile.PAX_FORMAT) as tar:
            for path in files:
                if not ignorer.filter(path):
                    continue

                st = path.stat()
                data = read_file(path, convert_eol)

                info = tarfile.TarInfo(name=path.relative_to(directory).as_posix())
                info.size = len(data)
                info.mode = stat.S_IMODE(st.st_mode)
                info.mtime = int(st.st_mtime)
                tar.addfile(info, io.BytesIO(data))

            if options.pre_finalize is not None:
                options.pre_finalize(tar)

    except OSError as e:
        raise ContextPackagingError(
            f"Failed to package {directory}: {e}",
            code="file_read_error",
        ) from e

    buffer.seek(0)
    logger.debug("Packaged %s (%d bytes)", directory, buffer.getbuffer().nbytes)
    return buffer


__all__ = [
    "ContextPackagingError",
    "TarDirectoryOptions",
    "is_binary",
    "list_files",
    "read_file",
    "tar_directory",
    "warn_gitignore",
]
