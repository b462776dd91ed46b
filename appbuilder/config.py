"""Configuration settings for appbuilder.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

import logging
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from rich.console import Console
from rich.logging import RichHandler


def _default_data_dir() -> Path:
    """Return the default data directory."""
    return Path.home() / ".local" / "share" / "appbuilder"


def _default_staging_dir() -> Path:
    """Return the default directory for generated project trees."""
    return Path("/tmp") / "appbuilder-builds"


def _default_output_dir() -> Path:
    """Return the default directory for container build outputs."""
    return Path("/tmp") / "appbuilder-outputs"


def _default_artifacts_dir() -> Path:
    """Return the default artifact store root."""
    return _default_data_dir() / "artifacts"


def _default_apps_dir() -> Path:
    """Return the default directory of app definition files."""
    return _default_data_dir() / "apps"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = _default_data_dir() / "db.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the APPBUILD_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="APPBUILD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL",
    )
    staging_dir: Path = Field(
        default_factory=_default_staging_dir,
        description="Root directory for generated per-build project trees",
    )
    output_dir: Path = Field(
        default_factory=_default_output_dir,
        description="Root directory for per-build container output",
    )
    artifacts_dir: Path = Field(
        default_factory=_default_artifacts_dir,
        description="Root directory of the local artifact store",
    )
    apps_dir: Path = Field(
        default_factory=_default_apps_dir,
        description="Directory of app definition files (YAML/JSON)",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Concurrency
    max_concurrent_builds: int = Field(
        default=2,
        ge=1,
        le=32,
        description="Maximum builds executing at the same time",
    )

    # Builder images and resource caps
    container_image: str = Field(
        default="appbuilder/flutter-builder:latest",
        description="Container image for Android and source builds",
    )
    container_memory: str = Field(default="2g", description="Container memory cap")
    container_cpus: int = Field(default=2, ge=1, description="Container CPU cap")
    ios_image: str = Field(
        default="appbuilder/ios-builder:latest",
        description="Container image for local macOS iOS builds",
    )
    ios_cloud_image: str = Field(
        default="appbuilder/ios-cloud-builder:latest",
        description="Container image that drives cloud iOS builds",
    )
    ios_memory: str = Field(default="4g", description="iOS build memory cap")
    ios_cpus: int = Field(default=4, ge=1, description="iOS build CPU cap")
    ios_use_cloud: bool | None = Field(
        default=None,
        description="Force cloud iOS builds (None = cloud unless on macOS)",
    )
    github_token: str = Field(
        default="",
        description="Token passed to the cloud iOS builder",
    )
    ios_build_repo: str = Field(
        default="appbuilder/ios-builds",
        description="Repository running cloud iOS builds",
    )

    # Timeouts and intervals (in seconds)
    build_timeout: int = Field(
        default=15 * 60,
        ge=1,
        description="Wall-clock timeout for container builds",
    )
    ios_build_timeout: int = Field(
        default=25 * 60,
        ge=1,
        description="Wall-clock timeout for iOS builds",
    )
    poll_interval: float = Field(
        default=5.0,
        gt=0,
        description="Completion poll interval for container builds",
    )
    ios_poll_interval: float = Field(
        default=10.0,
        gt=0,
        description="Completion poll interval for iOS builds",
    )
    kill_grace_period: float = Field(
        default=5.0,
        ge=0,
        description="Seconds between SIGTERM and SIGKILL on cancellation",
    )

    # Artifacts and cache
    download_url_expiry: int = Field(
        default=7 * 24 * 3600,
        ge=60,
        description="Lifetime of signed download URLs",
    )
    url_signing_key: str = Field(
        default="change-me",
        description="Secret used to sign download URLs",
    )
    cache_freshness_days: int = Field(
        default=30,
        ge=1,
        description="Maximum age of a completed build eligible for reuse",
    )
    retention_days: int = Field(
        default=30,
        ge=1,
        description="Age after which completed builds become eligible for GC",
    )
    retention_keep: int = Field(
        default=5,
        ge=0,
        description="Completed builds kept per app past the retention window",
    )


def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    The URL signing key and GitHub token are masked.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(
        indent=2, exclude={"url_signing_key", "github_token"}
    )


def configure_logging(level: str | None = None) -> None:
    """Configure root logging with a rich handler on stderr.

    Args:
        level: Log level name. Uses settings default if not provided.
    """
    if level is None:
        level = get_settings().log_level
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[
            RichHandler(
                console=Console(stderr=True), rich_tracebacks=True, show_path=False
            )
        ],
        force=True,
    )


__all__ = ["Settings", "configure_logging", "get_settings", "print_settings_json"]
