"""Emulator binary provisioning.

This module handles:
- Mapping device architectures to emulator variants
- Downloading and extracting the static emulator binary into a local cache
- Copying the binary into build contexts
- Detecting daemons with built-in cross-architecture support
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import tarfile
import tempfile
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING
from urllib.parse import quote

import httpx

if TYPE_CHECKING:
    from compose_deploy.builds.daemon import Daemon

logger = logging.getLogger(__name__)

QEMU_VERSION = "v4.0.0+balena2"
QEMU_BIN_NAME = "qemu-execve"

# Hidden directory inside each build context holding the emulator
QEMU_CONTEXT_DIR = ".balena"

# Where the emulator lives inside the image being built
CONTAINER_QEMU_PATH = f"/tmp/{QEMU_BIN_NAME}"

QEMU_DOWNLOAD_BASE = "https://github.com/balena-io/qemu/releases/download"

# Timeout for downloads (seconds)
DOWNLOAD_TIMEOUT = 600

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB

# Daemons that enable binfmt_misc emulation on their own
DESKTOP_DAEMON_PATTERN = re.compile(r"(?:Docker Desktop)|(?:Docker for Mac)", re.I)

_ARCH_TO_QEMU_ARCH = {
    "armv7hf": "arm",
    "rpi": "arm",
    "armhf": "arm",
    "aarch64": "aarch64",
}


class EmulationError(Exception):
    """Raised when emulation cannot be provisioned."""

    def __init__(self, message: str, code: str = "emulation_error") -> None:
        """Initialize EmulationError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.code = code


def arch_to_qemu_arch(arch: str) -> str:
    """Map a device architecture to an emulator variant.

    Args:
        arch: Device architecture (e.g., 'armv7hf', 'aarch64').

    Returns:
        Emulator variant ('arm' or 'aarch64').

    Raises:
        EmulationError: If the architecture has no emulator.
    """
    try:
        return _ARCH_TO_QEMU_ARCH[arch]
    except KeyError:
        raise EmulationError(
            f"Cannot install emulator for architecture {arch}",
            code="unsupported_arch",
        ) from None


def build_qemu_url(arch: str, base_url: str = QEMU_DOWNLOAD_BASE) -> str:
    """Build the release archive URL for an architecture's emulator.

    Args:
        arch: Device architecture.
        base_url: Base URL for emulator release downloads.

    Returns:
        URL of the gzip tar archive containing the static binary.
    """
    qemu_arch = arch_to_qemu_arch(arch)
    file_version = QEMU_VERSION.removeprefix("v").replace("+", ".")
    url_file = quote(f"qemu-{file_version}-{qemu_arch}.tar.gz", safe="")
    url_version = quote(QEMU_VERSION, safe="")
    return f"{base_url}/{url_version}/{url_file}"


def get_qemu_path(arch: str, bin_dir: Path) -> Path:
    """Return the cache path of the emulator binary for an architecture.

    Args:
        arch: Device architecture.
        bin_dir: Binary cache directory (created if missing).

    Returns:
        Path including architecture and version in the filename.
    """
    bin_dir.mkdir(parents=True, exist_ok=True)
    return bin_dir / f"{QEMU_BIN_NAME}-{arch}-{QEMU_VERSION}"


def install_qemu(
    client: httpx.Client,
    arch: str,
    bin_dir: Path,
    base_url: str = QEMU_DOWNLOAD_BASE,
    timeout: float = DOWNLOAD_TIMEOUT,
) -> Path:
    """Download and install the emulator binary for an architecture.

    The binary is written to a temporary file and renamed into place, so
    an interrupted download never leaves a partial binary in the cache.

    Args:
        client: HTTPX client instance.
        arch: Device architecture.
        bin_dir: Binary cache directory.
        base_url: Base URL for emulator release downloads.
        timeout: Download timeout in seconds.

    Returns:
        Path to the installed binary.

    Raises:
        EmulationError: If the download or extraction fails.
    """
    qemu_arch = arch_to_qemu_arch(arch)
    qemu_path = get_qemu_path(arch, bin_dir)
    url = build_qemu_url(arch, base_url)

    logger.info("Downloading emulator for %s from %s", arch, url)

    with tempfile.TemporaryDirectory(dir=bin_dir, prefix=".qemu-") as tmp:
        archive_path = Path(tmp) / "qemu.tar.gz"
        try:
            with client.stream(
                "GET", url, timeout=timeout, follow_redirects=True
            ) as response:
                response.raise_for_status()
                with archive_path.open("wb") as f:
                    for chunk in response.iter_bytes(DOWNLOAD_CHUNK_SIZE):
                        f.write(chunk)
        except httpx.HTTPStatusError as e:
            raise EmulationError(
                f"HTTP error downloading {url}: {e.response.status_code}",
                code="download_error",
            ) from e
        except httpx.RequestError as e:
            raise EmulationError(
                f"Network error downloading {url}: {e}",
                code="download_error",
            ) from e

        binary_path = Path(tmp) / QEMU_BIN_NAME
        try:
            with tarfile.open(archive_path, "r:gz") as tar:
                member = next(
                    (m for m in tar if f"qemu-{qemu_arch}-static" in m.name),
                    None,
                )
                extracted = tar.extractfile(member) if member is not None else None
                if extracted is None:
                    raise EmulationError(
                        f"Archive {url} does not contain qemu-{qemu_arch}-static",
                        code="extraction_error",
                    )
                with extracted, binary_path.open("wb") as f:
                    shutil.copyfileobj(extracted, f)
        except tarfile.TarError as e:
            raise EmulationError(
                f"Failed to extract {url}: {e}",
                code="extraction_error",
            ) from e

        binary_path.chmod(0o755)
        os.replace(binary_path, qemu_path)

    logger.info("Installed emulator at %s", qemu_path)
    return qemu_path


def platform_needs_qemu(daemon: Daemon) -> bool:
    """Check whether the daemon requires explicit emulation setup.

    Docker Desktop (Windows and Mac) and the older Docker for Mac enable
    binfmt_misc emulation themselves.

    Args:
        daemon: Container daemon.

    Returns:
        False for desktop-integrated daemons, True otherwise.
    """
    info = daemon.info()
    operating_system = info.get("OperatingSystem") or ""
    if DESKTOP_DAEMON_PATTERN.search(operating_system):
        logger.info(
            'Docker Desktop detected (daemon architecture: "%s"). Docker itself '
            "will determine and enable architecture emulation if required.",
            info.get("Architecture"),
        )
        return False
    return True


def install_qemu_if_needed(
    emulated: bool,
    arch: str,
    daemon: Daemon,
    bin_dir: Path,
    client: httpx.Client | None = None,
    base_url: str = QEMU_DOWNLOAD_BASE,
    timeout: float = DOWNLOAD_TIMEOUT,
) -> bool:
    """Ensure the emulator is installed when emulation is required.

    The daemon is queried regardless of `emulated`, since the detection
    logs useful information.

    Args:
        emulated: Whether an emulated build was requested.
        arch: Device architecture.
        daemon: Container daemon.
        bin_dir: Binary cache directory.
        client: HTTPX client (creates one if not provided).
        base_url: Base URL for emulator release downloads.
        timeout: Download timeout in seconds.

    Returns:
        True if emulation is active for this build.
    """
    needs_qemu = platform_needs_qemu(daemon)
    if not emulated or not needs_qemu:
        return False

    if not get_qemu_path(arch, bin_dir).exists():
        logger.info("Installing qemu for %s emulation...", arch)
        if client is None:
            with httpx.Client() as own_client:
                install_qemu(own_client, arch, bin_dir, base_url, timeout)
        else:
            install_qemu(client, arch, bin_dir, base_url, timeout)
    return True


def qemu_path_in_context() -> str:
    """Return the emulator path relative to a build context (POSIX form)."""
    return str(PurePosixPath(QEMU_CONTEXT_DIR, QEMU_BIN_NAME))


def copy_qemu(context: Path, arch: str, bin_dir: Path) -> str:
    """Copy the cached emulator binary into a build context.

    Args:
        context: Build context directory.
        arch: Device architecture.
        bin_dir: Binary cache directory.

    Returns:
        Path of the copied binary, relative to the context.

    Raises:
        EmulationError: If the binary cannot be copied.
    """
    dest_dir = context / QEMU_CONTEXT_DIR
    dest = dest_dir / QEMU_BIN_NAME
    try:
        dest_dir.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(get_qemu_path(arch, bin_dir), dest)
        dest.chmod(0o755)
    except OSError as e:
        raise EmulationError(
            f"Failed to copy emulator into {context}: {e}",
            code="copy_error",
        ) from e
    return qemu_path_in_context()


__all__ = [
    "CONTAINER_QEMU_PATH",
    "EmulationError",
    "QEMU_BIN_NAME",
    "QEMU_CONTEXT_DIR",
    "QEMU_DOWNLOAD_BASE",
    "QEMU_VERSION",
    "arch_to_qemu_arch",
    "build_qemu_url",
    "copy_qemu",
    "get_qemu_path",
    "install_qemu",
    "install_qemu_if_needed",
    "platform_needs_qemu",
    "qemu_path_in_context",
]
