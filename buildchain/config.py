"""Configuration settings for buildchain.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_cache_dir() -> Path:
    """Return the default cache directory."""
    return Path.home() / ".cache" / "buildchain"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "buildchain" / "db.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the BUILDCHAIN_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="BUILDCHAIN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Root directory for lock files and other local state",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL for build history",
    )
    tmp_dir: Path | None = Field(
        default=None,
        description=(
            "Directory for build workspaces "
            "(uses the output path's parent directory if not set)"
        ),
    )

    # Operational modes
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    record_builds: bool = Field(
        default=True,
        description="Record every build in the history database",
    )

    # External tools
    lxc_binary: str = Field(default="lxc", description="LXD client executable")
    git_binary: str = Field(default="git", description="Git executable")

    # Timeouts (in seconds)
    command_timeout: int = Field(
        default=3600,
        ge=1,
        description="Timeout for a single sandbox command",
    )
    download_timeout: int = Field(
        default=600,
        ge=1,
        description="Timeout for source downloads",
    )
    lock_timeout: float = Field(
        default=1800.0,
        ge=0,
        description="Timeout waiting for another build preparing the same environment",
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
