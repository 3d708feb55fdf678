"""Cross-architecture build emulation.

This module handles:
- Provisioning the static emulator binary
- Transposing build archives to run through the emulator
"""

from compose_deploy.emulation.qemu import EmulationError, install_qemu_if_needed

__all__ = ["EmulationError", "install_qemu_if_needed"]
