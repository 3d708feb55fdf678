"""Registry naming, tagging and push authorization.

This module handles:
- Parsing registry image locations into registry, repository and tag
- Tagging built images into the registry namespace (and removing the tags)
- Collecting repositories of the previous release
- Requesting a scoped push token
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

from compose_deploy.builds.daemon import DaemonError
from compose_deploy.release.schema import ServiceImageRecord
from compose_deploy.types import BuiltImage

if TYPE_CHECKING:
    from compose_deploy.builds.daemon import Daemon
    from compose_deploy.release.backend import ReleaseBackend

logger = logging.getLogger(__name__)

IMAGE_LOCATION_PATTERN = re.compile(r"(.*?)/(.*?)(?::([^/]*))?$")
DEFAULT_TAG = "latest"
TOKEN_PATH = "/auth/v1/token"


class ImageLocationError(Exception):
    """Raised when an image location is missing or cannot be parsed."""

    def __init__(
        self,
        location: str,
        code: str = "invalid_image_location",
        message: str | None = None,
    ) -> None:
        super().__init__(message or f"Could not parse imageName: '{location}'")
        self.location = location
        self.code = code


@dataclass(frozen=True)
class ImageLocation:
    """A parsed `<registry>/<repo>[:<tag>]` location."""

    registry: str
    repo: str
    tag: str = DEFAULT_TAG

    @property
    def name(self) -> str:
        return f"{self.registry}/{self.repo}"


@dataclass
class TaggedImage:
    """A built image tagged into its registry location.

    Attributes:
        service_name: Service name.
        service_image: Release record of the image, updated by the push.
        local_name: Local tag reference created for the push.
        registry: Registry host.
        repo: Repository path within the registry.
        tag: Tag within the repository.
        logs: Captured build log.
        built: The built image.
    """

    service_name: str
    service_image: ServiceImageRecord
    local_name: str
    registry: str
    repo: str
    tag: str
    logs: str
    built: BuiltImage


def parse_image_location(location: str) -> ImageLocation:
    """Parse a registry image location.

    Args:
        location: Location such as `registry.example.com/v2/abc:tag`.

    Returns:
        ImageLocation; the tag defaults to 'latest'.

    Raises:
        ImageLocationError: If the location has no registry part.
    """
    match = IMAGE_LOCATION_PATTERN.match(location)
    if match is None:
        raise ImageLocationError(location)
    registry, repo, tag = match.groups()
    return ImageLocation(
        registry=registry,
        repo=repo,
        tag=DEFAULT_TAG if tag is None else tag,
    )


def untag_images(daemon: Daemon, tagged: list[TaggedImage]) -> None:
    """Remove the local tag references created for a push (best-effort)."""
    for image in tagged:
        try:
            daemon.remove_image(image.local_name)
        except DaemonError as e:
            logger.warning("Failed to remove tag %s: %s", image.local_name, e)


def tag_service_images(
    daemon: Daemon,
    images: list[BuiltImage],
    service_images: dict[str, ServiceImageRecord],
) -> list[TaggedImage]:
    """Tag built images into the locations assigned by the release.

    Args:
        daemon: Container daemon.
        images: Built images.
        service_images: Release service images keyed by service name.

    Returns:
        One TaggedImage per built image.

    Raises:
        ImageLocationError: If a service has no release image or its
            location cannot be parsed.
        DaemonError: If tagging fails.
    """
    tagged: list[TaggedImage] = []
    try:
        for image in images:
            service_image = service_images.get(image.service_name)
            if service_image is None:
                raise ImageLocationError(
                    image.service_name,
                    code="missing_service_image",
                    message=f"No release image for service {image.service_name}",
                )
            location = parse_image_location(service_image.is_stored_at__image_location)
            daemon.tag(image.name, location.name, location.tag)
            logger.debug("Tagged %s as %s:%s", image.name, location.name, location.tag)
            tagged.append(
                TaggedImage(
                    service_name=image.service_name,
                    service_image=service_image,
                    local_name=f"{location.name}:{location.tag}",
                    registry=location.registry,
                    repo=location.repo,
                    tag=location.tag,
                    logs=image.logs,
                    built=image,
                )
            )
    except (ImageLocationError, DaemonError):
        untag_images(daemon, tagged)
        raise
    return tagged


def get_previous_repos(backend: ReleaseBackend, application_id: int) -> list[str]:
    """Return the repositories of the application's latest successful release.

    Failures are logged and yield an empty list.

    Args:
        backend: Release backend.
        application_id: Application ID.

    Returns:
        Repository paths of the previously pushed images.
    """
    try:
        locations = backend.get_latest_release_image_locations(application_id)
    except Exception as e:
        logger.debug("Failed to access previously pushed image repo: %s", e)
        return []

    repos: list[str] = []
    for location in locations:
        try:
            repo = parse_image_location(location).repo
        except ImageLocationError as e:
            logger.debug("Failed to access previously pushed image repo: %s", e)
            continue
        logger.debug("Requesting access to previously pushed image repo (%s)", repo)
        repos.append(repo)
    return repos


def authorize_push(
    client: httpx.Client,
    token_endpoint: str | None,
    registry: str,
    repos: list[str],
    previous_repos: list[str] | None = None,
    timeout: float = 30,
) -> str:
    """Request a pull/push token for a set of repositories.

    Args:
        client: HTTPX client instance.
        token_endpoint: Base URL of the token service.
        registry: Registry the token is for.
        repos: Repositories being pushed.
        previous_repos: Repositories of the previous release.
        timeout: Request timeout in seconds.

    Returns:
        The token, or an empty string if authorization fails.
    """
    if not token_endpoint:
        logger.debug("No token endpoint configured; pushing without a token")
        return ""

    scopes = [*repos, *(previous_repos or [])]
    params = [("service", registry)] + [
        ("scope", f"repository:{repo}:pull,push") for repo in scopes
    ]
    url = token_endpoint.rstrip("/") + TOKEN_PATH

    try:
        response = client.get(url, params=params, timeout=timeout)
        response.raise_for_status()
        data = response.json()
    except httpx.HTTPError as e:
        logger.warning("Push authorization failed: %s", e)
        return ""
    except ValueError as e:
        logger.warning("Invalid push authorization response: %s", e)
        return ""

    token = data.get("token") if isinstance(data, dict) else None
    return token if isinstance(token, str) else ""


__all__ = [
    "ImageLocation",
    "ImageLocationError",
    "TaggedImage",
    "authorize_push",
    "get_previous_repos",
    "parse_image_location",
    "tag_service_images",
    "untag_images",
]
