"""Tests for the release store and deploy pipeline.

Uses an in-memory SQLite release store and a mocked daemon.
"""

import io
from unittest.mock import MagicMock

import httpx
import pytest
import respx
from rich.console import Console

from compose_deploy.builds.daemon import DaemonError
from compose_deploy.config import Settings
from compose_deploy.db import open_release_store
from compose_deploy.release.backend import ReleaseStoreError, SqlReleaseBackend
from compose_deploy.release.deploy import create_release, deploy_project
from compose_deploy.release.schema import ReleaseRecord
from compose_deploy.types import BuiltImage, ReleaseStatus, ServiceImageStatus

DIGEST = "sha256:" + "cd" * 32
COMPOSITION = {
    "services": {
        "web": {"build": "web"},
        "cache": {"image": "redis:7"},
    }
}


@pytest.fixture
def backend():
    """Create a release backend over an in-memory database."""
    return SqlReleaseBackend(open_release_store("sqlite://"), "registry.test")


def _images() -> list[BuiltImage]:
    return [
        BuiltImage(
            service_name="web",
            name="demo_web",
            logs="Step 1/1 : FROM alpine",
            dockerfile="FROM alpine\n",
            project_type="Standard Dockerfile",
        ),
        BuiltImage(service_name="cache", name="redis:7", logs="pulled"),
    ]


def _daemon(failing_image: str | None = None) -> MagicMock:
    """Daemon double whose pushes fail for images tagged from failing_image."""
    daemon = MagicMock()
    daemon.image_size.return_value = 2048
    sources = {}

    def tag(image, repository, tag):
        sources[repository] = image

    def push(repository, tag, auth_config):
        if sources.get(repository) == failing_image:
            return iter([{"error": "denied"}])
        return iter([{"aux": {"Digest": DIGEST}}])

    daemon.tag.side_effect = tag
    daemon.push.side_effect = push
    return daemon


def _settings(**overrides) -> Settings:
    return Settings(registry_host="registry.test", **overrides)


class TestSqlReleaseBackend:
    """Tests for SqlReleaseBackend class."""

    def test_create_release_assigns_locations(self, backend):
        release, images = backend.create_release(
            user_id=3,
            application_id=9,
            composition=COMPOSITION,
            source="local",
            commit="abc",
        )

        assert release["status"] == "running"
        assert release["belongs_to__application"] == {"__id": 9}
        assert set(images) == {"web", "cache"}
        location = images["web"]["is_stored_at__image_location"]
        assert location.startswith("registry.test/v2/")
        assert location != images["cache"]["is_stored_at__image_location"]

    def test_latest_release_locations(self, backend):
        """Only the latest successful release of the application counts."""
        first, first_images = backend.create_release(3, 9, COMPOSITION, "local", "a")
        backend.update_release(
            first["id"],
            ReleaseRecord(commit="a", status=ReleaseStatus.SUCCESS),
        )
        backend.create_release(3, 9, COMPOSITION, "local", "b")

        locations = backend.get_latest_release_image_locations(9)

        assert sorted(locations) == sorted(
            i["is_stored_at__image_location"] for i in first_images.values()
        )
        assert backend.get_latest_release_image_locations(10) == []

    def test_update_missing_release(self, backend):
        with pytest.raises(ReleaseStoreError) as exc_info:
            backend.update_release(999, ReleaseRecord(commit="x"))

        assert exc_info.value.code == "release_not_found"


class TestCreateRelease:
    """Tests for create_release function."""

    def test_strips_internal_fields(self, backend):
        created = create_release(backend, 3, 9, COMPOSITION)

        assert len(created.release.commit) == 32
        assert created.release.source == "local"
        assert created.release.status is ReleaseStatus.RUNNING
        assert set(created.service_images) == {"web", "cache"}
        assert created.service_images["web"].id is not None


class TestDeployProject:
    """Tests for deploy_project function."""

    def test_successful_deploy(self, backend):
        """All pushes succeeding should finalize the release as success."""
        daemon = _daemon()

        release = deploy_project(
            daemon,
            backend,
            COMPOSITION,
            _images(),
            application_id=9,
            user_id=3,
            settings=_settings(),
            console=Console(file=io.StringIO()),
            sleep=lambda _: None,
        )

        assert release.status is ReleaseStatus.SUCCESS
        assert release.end_timestamp is not None

        stored, images = backend.get_release(release.id)
        assert stored.status is ReleaseStatus.SUCCESS
        assert stored.end_timestamp is not None
        assert [i.status for i in images] == [ServiceImageStatus.SUCCESS] * 2
        web = next(i for i in images if i.service_name == "web")
        assert web.content_hash == DIGEST
        assert web.image_size == 2048
        assert web.build_log == "Step 1/1 : FROM alpine"
        assert web.dockerfile == "FROM alpine\n"

        # Tags created for the push are removed again
        assert daemon.tag.call_count == 2
        assert daemon.remove_image.call_count == 2

    def test_failed_push_fails_release(self, backend):
        """One failed push should mark the release failed, others still pushed."""
        release = deploy_project(
            _daemon(failing_image="redis:7"),
            backend,
            COMPOSITION,
            _images(),
            application_id=9,
            settings=_settings(push_retries=1),
            console=Console(file=io.StringIO()),
            sleep=lambda _: None,
        )

        assert release.status is ReleaseStatus.FAILED
        _, images = backend.get_release(release.id)
        statuses = {i.service_name: i.status for i in images}
        assert statuses == {
            "web": ServiceImageStatus.SUCCESS,
            "cache": ServiceImageStatus.FAILED,
        }

    def test_skip_log_upload(self, backend):
        release = deploy_project(
            _daemon(),
            backend,
            COMPOSITION,
            _images(),
            application_id=9,
            skip_log_upload=True,
            settings=_settings(),
            console=Console(file=io.StringIO()),
            sleep=lambda _: None,
        )

        _, images = backend.get_release(release.id)
        assert all(i.build_log is None for i in images)

    def test_tag_failure_finalizes_release(self, backend):
        """A stage error should finalize the release as failed and propagate."""
        daemon = _daemon()
        daemon.tag.side_effect = DaemonError("no such image")

        with pytest.raises(DaemonError):
            deploy_project(
                daemon,
                backend,
                COMPOSITION,
                _images(),
                application_id=9,
                settings=_settings(),
                console=Console(file=io.StringIO()),
                sleep=lambda _: None,
            )

        assert backend.get_latest_release_image_locations(9) == []
        stored, _ = backend.get_release(1)
        assert stored.status is ReleaseStatus.FAILED
        assert stored.end_timestamp is not None

    @respx.mock
    def test_token_includes_previous_release(self, backend):
        """The push token should also cover the previous release's repos."""
        route = respx.get("https://api.test/auth/v1/token").mock(
            return_value=httpx.Response(200, json={"token": "tok"})
        )
        daemon = _daemon()
        settings = _settings(token_endpoint="https://api.test")

        with httpx.Client() as client:
            first = deploy_project(
                daemon,
                backend,
                COMPOSITION,
                _images(),
                application_id=9,
                settings=settings,
                console=Console(file=io.StringIO()),
                http_client=client,
                sleep=lambda _: None,
            )
            deploy_project(
                daemon,
                backend,
                COMPOSITION,
                _images(),
                application_id=9,
                settings=settings,
                console=Console(file=io.StringIO()),
                http_client=client,
                sleep=lambda _: None,
            )

        _, first_images = backend.get_release(first.id)
        scopes = route.calls.last.request.url.params.get_list("scope")
        assert len(scopes) == 4
        for image in first_images:
            repo = image.is_stored_at__image_location.split("/", 1)[1]
            assert f"repository:{repo}:pull,push" in scopes
        assert daemon.push.call_args.args[2] == {"registrytoken": "tok"}
