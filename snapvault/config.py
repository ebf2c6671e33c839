"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_worker_count() -> int:
    return max(1, min(os.cpu_count() or 1, 8))


class Settings(BaseSettings):
    """SnapVault engine settings."""

    model_config = SettingsConfigDict(
        env_prefix="SNAPVAULT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    debug: bool = False

    # Metadata store
    data_dir: Path = Path("./data")
    database_name: str = "snapvault.db"
    db_encryption: bool = False
    secret_key: str = ""

    # Scan engine
    worker_count: int = Field(default_factory=_default_worker_count, ge=1, le=64)
    db_batch_size: int = Field(default=5000, ge=1, le=50_000)
    use_default_excludes: bool = True
    exclude_globs: list[str] = Field(default_factory=list)

    # Journal ingest
    journal_queue_size: int = Field(default=200_000, ge=1)
    journal_batch_size: int = Field(default=800, ge=1)
    journal_flush_seconds: float = Field(default=0.25, gt=0)

    # Local agent API
    host: str = "127.0.0.1"
    port: int = Field(default=8470, ge=1, le=65535)

    @property
    def runtime_db_path(self) -> Path:
        """Plaintext SQLite file the engine works against."""
        return self.data_dir / self.database_name

    @property
    def encrypted_db_path(self) -> Path:
        """At-rest encrypted copy of the metadata store."""
        return self.data_dir / f"{self.database_name}.enc"

    @property
    def database_url(self) -> str:
        return f"sqlite:///{self.runtime_db_path}"

    def validate_runtime_security(self) -> None:
        """Reject settings that would leave the metadata store unprotected."""
        if not self.db_encryption:
            return

        violations: list[str] = []
        if not self.secret_key:
            violations.append("SNAPVAULT_SECRET_KEY is required when DB encryption is enabled")
        elif len(self.secret_key) < 12:
            violations.append("SNAPVAULT_SECRET_KEY must be at least 12 characters")

        if violations:
            joined = "; ".join(violations)
            raise ValueError(f"Insecure configuration: {joined}")
