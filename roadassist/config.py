"""
Centralised configuration loaded from environment / .env file.
Uses pydantic-settings for validation and type coercion.
"""

from __future__ import annotations

from pathlib import Path
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: str = Field(default="development", description="development | production")

    # ── Bland AI ────────────────────────────────────────────────
    bland_api_key: str = Field(default="", description="Bland AI API key")
    bland_base_url: str = Field(default="https://api.bland.ai")
    bland_voice: str = Field(default="Paige")
    bland_max_duration_minutes: int = Field(default=12, ge=1)
    call_timeout_seconds: float = Field(default=15.0, gt=0)

    # ── Webhook ─────────────────────────────────────────────────
    webhook_base_url: str = Field(default="http://localhost:3002")
    webhook_secret: str = Field(default="")
    stream_url: str = Field(default="", description="Optional real-time transcript stream target")

    # ── Phone numbers ───────────────────────────────────────────
    default_region: str = Field(default="NL")

    # ── Paths ───────────────────────────────────────────────────
    event_log_path: Path = Field(default=Path("data/webhooks.db"))
    log_dir: Path = Field(default=Path("data/logs"))

    # ── Server ──────────────────────────────────────────────────
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3002)
    cors_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:3002"]
    )

    # ── UI session ──────────────────────────────────────────────
    server_url: str = Field(default="http://localhost:3002")
    poll_interval_seconds: float = Field(default=10.0, gt=0)
    push_reconnect_seconds: float = Field(default=3.0, gt=0)
    push_send_timeout_seconds: float = Field(default=2.0, gt=0)

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    def ensure_dirs(self) -> None:
        """Create required directories if they don't exist."""
        for d in [self.log_dir, self.event_log_path.parent]:
            d.mkdir(parents=True, exist_ok=True)


def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
