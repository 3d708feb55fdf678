"""Service builds.

This module handles:
- Build task creation from image descriptors
- Batched builds against the container daemon
- Per-service progress events and log capture
- Build orchestration with live rendering
"""

from compose_deploy.builds.daemon import DockerDaemon, ImageBuildOutcome, perform_builds
from compose_deploy.builds.tasks import BuildTask, BuildTaskError, make_build_tasks

__all__ = [
    "BuildTask",
    "BuildTaskError",
    "DockerDaemon",
    "ImageBuildOutcome",
    "make_build_tasks",
    "perform_builds",
]

# The scheduler imports the renderers, which import builds.progress;
# access it via compose_deploy.builds.scheduler.
