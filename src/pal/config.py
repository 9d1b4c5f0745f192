"""Configuration management for pal."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from pal import constants


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PAL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Local state
    home: Path = Field(
        default_factory=lambda: Path.home() / ".pal",
        description="Private state directory (install record, staging, backups)",
    )

    # Ledger
    ledger_gateway: str = Field(
        default=constants.DEFAULT_GATEWAY,
        validation_alias=AliasChoices("PAL_LEDGER_GATEWAY", "ARWEAVE_GATEWAY"),
        description="Ledger gateway serving GraphQL queries and content downloads",
    )
    app_name: str = Field(default=constants.APP_NAME, description="App-Name tag to query")
    metadata_timeout: float = Field(default=constants.METADATA_TIMEOUT, gt=0)
    download_timeout: float = Field(default=constants.DOWNLOAD_TIMEOUT, gt=0)
    max_attempts: int = Field(default=constants.MAX_ATTEMPTS, ge=1)
    backoff_base: float = Field(default=constants.BACKOFF_BASE, ge=0)

    # Update policy
    update_check_interval_days: int = Field(default=constants.UPDATE_CHECK_INTERVAL_DAYS, ge=0)
    startup_check_timeout: float = Field(default=constants.STARTUP_CHECK_TIMEOUT, gt=0)
    install_timeout: float = Field(default=constants.INSTALL_TIMEOUT, gt=0)
    version_check_timeout: float = Field(default=constants.VERSION_CHECK_TIMEOUT, gt=0)
    require_backup: bool = Field(
        default=False,
        description="Abort an update when the backup of the current version cannot be made",
    )

    # Skip controls
    no_update_check: bool = Field(default=False, description="Disable the startup update check")
    ci: str | None = Field(
        default=None,
        validation_alias=AliasChoices("CI"),
        description="Continuous-integration indicator",
    )

    # Installation
    package_manager: str | None = Field(
        default=None, description="Force the installation mechanism (pip or uv)"
    )
    executable: str = Field(default="pal", description="Command used to verify an install")
    manifest_path: Path | None = Field(
        default=None, description="Override for the embedded release manifest"
    )

    # Logging
    log_format: Literal["auto", "console", "json"] = Field(
        default="auto",
        description="Log rendering; auto uses console output on a terminal, JSON otherwise",
    )
    log_level: str = Field(default="WARNING", description="Logging level")

    @property
    def in_ci(self) -> bool:
        """Check whether a CI indicator is set to a truthy value."""
        return (self.ci or "").strip().lower() in {"1", "true", "yes"}

    @property
    def install_record_path(self) -> Path:
        return self.home / constants.INSTALL_RECORD_FILE

    @property
    def staging_dir(self) -> Path:
        return self.home.joinpath(*constants.STAGING_SUBDIR)

    @property
    def backup_dir(self) -> Path:
        return self.home / constants.BACKUP_SUBDIR

    @property
    def lock_path(self) -> Path:
        return self.home / constants.LOCK_FILE


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
