"""Configuration management for the CHRONICbot updater."""

import re
from functools import lru_cache
from pathlib import Path

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class Settings(BaseSettings):
    """Updater settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CHRONICBOT_UPDATER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Release registry
    github_repo: str = Field(default="kingmk3r/ChronicBot", description="owner/name on GitHub")
    github_token: SecretStr | None = Field(
        default=None, description="Optional token to raise the GitHub API rate limit"
    )
    registry_api_url: str | None = Field(
        default=None, description="Override for the latest-release endpoint"
    )
    request_timeout_seconds: float = Field(default=30.0, gt=0)

    # Release assets
    primary_asset_pattern: str = Field(
        default=r"^ironclaw-aarch64-unknown-linux-gnu\.tar\.gz$",
        description="Regex selecting the primary binary archive",
    )
    auxiliary_asset_pattern: str = Field(
        default=r"\.wasm$", description="Regex selecting auxiliary channel modules"
    )
    checksum_asset_name: str = Field(default="checksums.txt")
    max_asset_bytes: int = Field(default=512 * 1024 * 1024, gt=0)

    # Download policy
    download_attempts: int = Field(default=1, ge=1, description="1 means no retry")
    download_backoff_seconds: float = Field(default=2.0, ge=0)
    download_concurrency: int = Field(default=1, ge=1)

    # Installation layout
    install_dir: Path = Field(default=Path("/opt/chronicbot"))
    primary_directory: str = Field(default="bin")
    auxiliary_directory: str = Field(default="channels")
    backup_suffix: str = Field(default=".old")
    version_file_name: str = Field(default="version.txt")
    staging_dir_name: str = Field(default=".update")
    lock_file_name: str = Field(default=".update.lock")
    state_file_name: str = Field(default="updater-state.json")

    # Managed service
    service_name: str = Field(default="chronicbot", description="systemd unit name")
    service_command_timeout_seconds: float = Field(default=60.0, gt=0)

    # Health gate
    health_url: str = Field(default="http://localhost:8080/health")
    health_retries: int = Field(default=3, ge=1)
    health_interval_seconds: float = Field(default=5.0, ge=0)
    health_timeout_seconds: float = Field(default=5.0, gt=0)

    # Rollout behaviour
    pause_on_failure: bool = Field(
        default=True, description="Stop automatic rollouts after a rollback or abort"
    )

    # Application
    environment: str = Field(default="production", description="Environment name")
    log_level: str = Field(default="INFO", description="Logging level")
    log_to_file: bool = Field(default=False)
    log_directory: str = Field(default="/var/log/chronicbot")
    log_file_max_bytes: int = Field(default=5 * 1024 * 1024, gt=0)
    log_file_backup_count: int = Field(default=3, ge=0)

    @field_validator("primary_asset_pattern", "auxiliary_asset_pattern")
    @classmethod
    def _validate_pattern(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"invalid asset pattern {value!r}: {exc}") from exc
        return value

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        if value.upper() not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {sorted(_LOG_LEVELS)}")
        return value.upper()

    @field_validator("primary_directory", "auxiliary_directory")
    @classmethod
    def _validate_directory_name(cls, value: str) -> str:
        if not value or "/" in value or value in (".", ".."):
            raise ValueError(f"managed directory must be a plain name, got {value!r}")
        return value

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment.lower() == "development"

    @property
    def release_api_url(self) -> str:
        if self.registry_api_url:
            return self.registry_api_url
        return f"https://api.github.com/repos/{self.github_repo}/releases/latest"

    @property
    def managed_directories(self) -> tuple[str, ...]:
        """Directory names under ``install_dir`` that make up the active installation."""
        return (self.primary_directory, self.auxiliary_directory)

    @property
    def version_file(self) -> Path:
        return self.install_dir / self.version_file_name

    @property
    def staging_dir(self) -> Path:
        return self.install_dir / self.staging_dir_name

    @property
    def lock_file(self) -> Path:
        return self.install_dir / self.lock_file_name

    @property
    def state_file(self) -> Path:
        return self.install_dir / self.state_file_name

    @property
    def log_file_path(self) -> str:
        return str(Path(self.log_directory) / "chronicbot-updater.log")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
