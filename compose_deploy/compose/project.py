"""Composition loading and descriptor extraction.

This module handles:
- Reading a docker-compose file from a project directory
- Extracting one image descriptor per service
- Assigning default image tags to services that build

Full compose normalization (networks, volumes, variable interpolation)
is deliberately not performed here.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from compose_deploy.compose.schema import BuildContext, ImageDescriptor

logger = logging.getLogger(__name__)

COMPOSE_FILENAMES = ("docker-compose.yml", "docker-compose.yaml")

# Composition used when the project has no compose file
DEFAULT_COMPOSITION: dict[str, Any] = {
    "version": "2.1",
    "services": {"main": {"build": {"context": "."}}},
}


class CompositionError(Exception):
    """Raised when a composition cannot be interpreted."""

    def __init__(self, message: str, code: str = "invalid_composition") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class ComposeProject:
    """A loaded multi-service project.

    Attributes:
        path: Absolute path to the project directory.
        name: Project name (defaults to the directory name).
        composition: Parsed composition mapping.
        descriptors: One image descriptor per service.
    """

    path: Path
    name: str
    composition: dict[str, Any]
    descriptors: list[ImageDescriptor] = field(default_factory=list)


def default_tag(project_name: str, service_name: str) -> str:
    """Compute the default image tag for a service.

    Args:
        project_name: Project name.
        service_name: Service name.

    Returns:
        Lower-cased `<project>_<service>` tag.
    """
    return f"{project_name}_{service_name}".lower()


def _parse_args(raw: Any) -> dict[str, str]:
    """Normalize build args given as a mapping or a KEY=VALUE list."""
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return {str(k): "" if v is None else str(v) for k, v in raw.items()}
    if isinstance(raw, list):
        args: dict[str, str] = {}
        for item in raw:
            key, _, value = str(item).partition("=")
            args[key] = value
        return args
    raise CompositionError(f"Unsupported build args format: {raw!r}")


def parse_descriptors(composition: dict[str, Any]) -> list[ImageDescriptor]:
    """Extract image descriptors from a composition.

    Args:
        composition: Parsed composition mapping with a `services` key.

    Returns:
        List of ImageDescriptor, in service declaration order.

    Raises:
        CompositionError: If a service has neither `build` nor `image`.
    """
    services = composition.get("services") or {}
    if not isinstance(services, dict):
        raise CompositionError("'services' must be a mapping")

    descriptors: list[ImageDescriptor] = []
    for service_name, service in services.items():
        service = service or {}
        build = service.get("build")

        if build is None:
            image = service.get("image")
            if not image:
                raise CompositionError(
                    f"Service '{service_name}' has neither 'build' nor 'image'",
                    code="missing_build_or_image",
                )
            descriptors.append(
                ImageDescriptor(service_name=service_name, image=str(image))
            )
            continue

        if isinstance(build, str):
            build = {"context": build}

        context = BuildContext(
            context=build.get("context", "."),
            dockerfile=build.get("dockerfile"),
            args=_parse_args(build.get("args")),
            tag=service.get("image"),
        )
        descriptors.append(ImageDescriptor(service_name=service_name, image=context))

    return descriptors


def create_project(
    compose_path: Path,
    compose_str: str,
    project_name: str | None = None,
) -> ComposeProject:
    """Parse a composition and return a project structure.

    Args:
        compose_path: Absolute path to the directory containing the compose file.
        compose_str: Contents of the compose file.
        project_name: Optional project name; defaults to the directory name.

    Returns:
        ComposeProject with descriptors whose build tags are all assigned.

    Raises:
        CompositionError: If the compose file is not valid YAML or not a mapping.
    """
    try:
        composition = yaml.safe_load(compose_str)
    except yaml.YAMLError as e:
        raise CompositionError(f"Invalid compose file: {e}", code="invalid_yaml") from e
    if not isinstance(composition, dict):
        raise CompositionError("Composition must be a YAML mapping")

    if project_name is None:
        project_name = compose_path.name

    descriptors = parse_descriptors(composition)
    for descriptor in descriptors:
        if isinstance(descriptor.image, BuildContext) and descriptor.image.tag is None:
            descriptor.image.tag = default_tag(project_name, descriptor.service_name)

    return ComposeProject(
        path=compose_path,
        name=project_name,
        composition=composition,
        descriptors=descriptors,
    )


def load_project(
    project_path: Path,
    project_name: str | None = None,
    dockerfile: str | None = None,
) -> ComposeProject:
    """Load the project at a directory.

    Args:
        project_path: Project directory.
        project_name: Optional project name.
        dockerfile: Dockerfile for the default composition; ignored when
            the project has a compose file.

    Returns:
        ComposeProject for the directory. A single-service default
        composition is used when no compose file exists.
    """
    project_path = project_path.resolve()
    for filename in COMPOSE_FILENAMES:
        compose_file = project_path / filename
        if compose_file.is_file():
            logger.debug("Loading composition from %s", compose_file)
            return create_project(
                project_path,
                compose_file.read_text(encoding="utf-8"),
                project_name,
            )

    logger.info("No compose file found in %s, using default composition", project_path)
    composition = copy.deepcopy(DEFAULT_COMPOSITION)
    if dockerfile:
        composition["services"]["main"]["build"]["dockerfile"] = dockerfile
    return create_project(project_path, yaml.safe_dump(composition), project_name)


__all__ = [
    "COMPOSE_FILENAMES",
    "ComposeProject",
    "CompositionError",
    "DEFAULT_COMPOSITION",
    "create_project",
    "default_tag",
    "load_project",
    "parse_descriptors",
]
