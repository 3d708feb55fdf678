"""Tests for configuration module."""

import json
import os
from pathlib import Path
from unittest.mock import patch

from compose_deploy.config import Settings, get_settings, print_settings_json


class TestSettings:
    """Test Settings class."""

    def test_default_settings(self) -> None:
        """Settings should have sensible defaults."""
        settings = Settings()

        assert settings.bin_dir == Path.home() / ".cache" / "compose-deploy" / "bin"
        assert "sqlite" in settings.db_url
        assert settings.log_level == "INFO"
        assert settings.max_concurrent_builds >= 1
        assert settings.max_concurrent_pushes >= 1
        assert settings.push_retries == 3
        assert settings.push_retry_delay == 2.0
        assert settings.push_retry_backoff == 1.4
        assert settings.token_endpoint is None

    def test_settings_from_env(self) -> None:
        """Settings should be loadable from environment variables."""
        with patch.dict(
            os.environ,
            {
                "COMPOSE_DEPLOY_LOG_LEVEL": "DEBUG",
                "COMPOSE_DEPLOY_MAX_CONCURRENT_BUILDS": "2",
                "COMPOSE_DEPLOY_REGISTRY_HOST": "registry.example.com",
                "COMPOSE_DEPLOY_TOKEN_ENDPOINT": "https://api.example.com",
            },
        ):
            settings = Settings()
            assert settings.log_level == "DEBUG"
            assert settings.max_concurrent_builds == 2
            assert settings.registry_host == "registry.example.com"
            assert settings.token_endpoint == "https://api.example.com"

    def test_bin_dir_from_env(self) -> None:
        """Emulator cache dir should be configurable via env."""
        with patch.dict(os.environ, {"COMPOSE_DEPLOY_BIN_DIR": "/tmp/test-bin"}):
            settings = Settings()
            assert settings.bin_dir == Path("/tmp/test-bin")


class TestGetSettings:
    """Test get_settings function."""

    def test_get_settings_returns_settings(self) -> None:
        """get_settings should return a Settings instance."""
        settings = get_settings()
        assert isinstance(settings, Settings)


class TestPrintSettingsJson:
    """Test print_settings_json function."""

    def test_print_settings_json(self) -> None:
        """print_settings_json should return valid JSON."""
        settings = Settings()
        json_str = print_settings_json(settings)

        parsed = json.loads(json_str)

        assert "bin_dir" in parsed
        assert "db_url" in parsed
        assert "registry_host" in parsed
        assert "push_retries" in parsed
