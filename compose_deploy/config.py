"""Configuration settings for compose_deploy.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_bin_dir() -> Path:
    """Return the default emulator binary cache directory."""
    return Path.home() / ".cache" / "compose-deploy" / "bin"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "compose-deploy" / "releases.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the COMPOSE_DEPLOY_
    prefix. CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="COMPOSE_DEPLOY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    bin_dir: Path = Field(
        default_factory=_default_bin_dir,
        description="Directory caching emulator binaries",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL for the local release store",
    )

    # Operational modes
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Concurrency
    max_concurrent_builds: int = Field(
        default=4,
        ge=1,
        le=16,
        description="Maximum concurrent service builds",
    )
    max_concurrent_pushes: int = Field(
        default=4,
        ge=1,
        le=16,
        description="Maximum concurrent image pushes",
    )

    # Remote endpoints
    qemu_download_base: str = Field(
        default="https://github.com/balena-io/qemu/releases/download",
        description="Base URL for emulator binary release archives",
    )
    registry_host: str = Field(
        default="localhost:5000",
        description="Registry host used when assigning image locations",
    )
    token_endpoint: str | None = Field(
        default=None,
        description="Base URL of the registry token service",
    )

    # Push retry policy
    push_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per image push",
    )
    push_retry_delay: float = Field(
        default=2.0,
        ge=0,
        description="Delay before the first push retry (seconds)",
    )
    push_retry_backoff: float = Field(
        default=1.4,
        ge=1,
        description="Multiplier applied to the delay after each retry",
    )

    # Timeouts (in seconds)
    download_timeout: int = Field(
        default=600,
        ge=10,
        description="Timeout for emulator downloads",
    )
    token_timeout: int = Field(
        default=30,
        ge=1,
        description="Timeout for registry token requests",
    )


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
