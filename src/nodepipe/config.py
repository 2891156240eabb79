"""Configuration settings for nodepipe.

Settings are read from ``NODEPIPE_*`` environment variables and an optional
``.env`` file.
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="NODEPIPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage directory (default: .nodepipe in current directory)
    storage_dir: Path = Field(default=Path(".nodepipe"))

    # Overrides the SQLite file under storage_dir when set
    database_url: str | None = None

    # Processing
    read_batch_size: int = Field(default=50, ge=1)
    job_workers: int = Field(default=4, ge=1)
    # Seconds before a node with rate-limited entries is swept again
    rate_limit_requeue_seconds: float = Field(default=30.0, ge=0)
    log_verbosity: int = Field(default=0, ge=0, le=2)

    # Provider used when a node or variant does not name one
    default_provider: str = "openai"

    @property
    def db_path(self) -> Path:
        """Path to the SQLite database."""
        return self.storage_dir / "nodepipe.db"

    @property
    def db_url(self) -> str:
        """SQLAlchemy URL for the database."""
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.db_path}"

    @property
    def logs_dir(self) -> Path:
        """Directory for JSONL run logs."""
        return self.storage_dir / "logs"

    def ensure_storage_dir(self) -> None:
        """Create storage directory if it doesn't exist."""
        self.storage_dir.mkdir(parents=True, exist_ok=True)


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get cached settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reset settings cache (useful for testing)."""
    global _settings
    _settings = None
