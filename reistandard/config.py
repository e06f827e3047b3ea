"""Centralized configuration loaded from environment variables."""

from __future__ import annotations

from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application-wide settings sourced from .env / environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # ── General ──────────────────────────────────────────────────────
    reistandard_env: str = "development"
    reistandard_log_level: str = "INFO"

    # ── Secrets ──────────────────────────────────────────────────────
    # Master secret every per-user key is derived from. Clients receive it
    # through /get-master-key and derive the same key locally.
    encryption_key: str = Field(
        default="",
        validation_alias=AliasChoices("encryption_key", "reistandard_encryption_key"),
    )
    cron_secret: str = ""

    # ── Web Push (VAPID) ─────────────────────────────────────────────
    vapid_email: str = ""
    vapid_public_key: str = Field(
        default="",
        validation_alias=AliasChoices("vapid_public_key", "next_public_vapid_public_key"),
    )
    vapid_private_key: str = ""

    # ── API Server ───────────────────────────────────────────────────
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # ── Database ─────────────────────────────────────────────────────
    database_url: str = "sqlite+aiosqlite:///data/reistandard.db"

    # ── Delivery engine ──────────────────────────────────────────────
    dispatch_batch_size: int = 50
    dispatch_max_concurrent: int = 8
    chunk_delay_seconds: float = 1.5
    completion_timeout_seconds: float = 300.0
    max_retries: int = 3
    retry_step_minutes: int = 2
    cleanup_retention_days: int = 7
    # 0 disables the in-process trigger; an external cron calls /send-notifications instead.
    dispatch_interval_seconds: int = 0

    # ── Derived ──────────────────────────────────────────────────────
    @property
    def missing_vapid_keys(self) -> list[str]:
        """Names of the push credentials that are not configured."""
        missing = []
        if not self.vapid_email:
            missing.append("VAPID_EMAIL")
        if not self.vapid_public_key:
            missing.append("NEXT_PUBLIC_VAPID_PUBLIC_KEY")
        if not self.vapid_private_key:
            missing.append("VAPID_PRIVATE_KEY")
        return missing

    @property
    def is_production(self) -> bool:
        return self.reistandard_env == "production"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the singleton Settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
