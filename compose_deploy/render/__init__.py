"""Terminal rendering of build and deploy progress."""

from compose_deploy.render.renderer import (
    BuildProgressInline,
    BuildProgressUI,
    RunLoop,
    ServiceChannel,
    Spinner,
    run_spinner,
)
from compose_deploy.render.tty import Tty

__all__ = [
    "BuildProgressInline",
    "BuildProgressUI",
    "RunLoop",
    "ServiceChannel",
    "Spinner",
    "Tty",
    "run_spinner",
]
