"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """LyreVault application settings."""

    model_config = SettingsConfigDict(
        env_prefix="LYREVAULT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    debug: bool = False
    expose_docs: bool = False

    # Database (account index, document stores, file stores)
    database_url: str = "sqlite+aiosqlite:///data/db/lyrevault.db"

    # Backup target granted when access is requested without an explicit directory
    backup_dir: Path | None = None

    # Server
    host: str = "127.0.0.1"
    port: int = Field(default=8000, ge=1, le=65535)

    # Local account bootstrap
    local_username: str = Field(default="local", min_length=1, max_length=100)
    local_email: str = "local@localhost"

    # Reconciliation
    document_sync_timeout_seconds: float = Field(default=2.0, gt=0)
    activity_log_limit: int = Field(default=50, ge=1)
    discovery_delay_seconds: float = Field(default=1.0, ge=0)
    auto_sync_enabled: bool = True
    max_archive_upload_bytes: int = Field(default=200 * 1024 * 1024, ge=1)

    def validate_runtime_paths(self) -> None:
        """Validate configured filesystem locations."""
        violations: list[str] = []
        if self.backup_dir is not None and self.backup_dir.exists():
            if not self.backup_dir.is_dir():
                violations.append(f"BACKUP_DIR exists but is not a directory: {self.backup_dir}")

        if violations:
            joined = "; ".join(violations)
            raise ValueError(f"Invalid path configuration: {joined}")
