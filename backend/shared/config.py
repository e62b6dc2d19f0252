"""
Central configuration for the match thread service.
Uses pydantic-settings for env-based config with validation.
"""
from __future__ import annotations

from enum import Enum
from functools import lru_cache
from urllib.parse import urlparse

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    DEV = "dev"
    STAGING = "staging"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """Root settings for every component."""

    model_config = SettingsConfigDict(
        env_prefix="MT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── General ──────────────────────────────────────────────
    environment: Environment = Environment.DEV
    debug: bool = False
    log_level: str = "INFO"
    instance_id: str = Field(default="", description="Process identifier bound to every log line")

    # ── Database ─────────────────────────────────────────────
    database_url: str = Field(default="sqlite+aiosqlite:///./data/matchthreads.db")
    db_pool_min: int = 2
    db_pool_max: int = 10
    db_command_timeout: int = 30

    @model_validator(mode="after")
    def normalize_database_url_driver(self) -> "Settings":
        """Force async drivers (aiosqlite / asyncpg) on plain URLs."""
        raw = self.database_url
        if raw.startswith("sqlite://"):
            self.database_url = raw.replace("sqlite://", "sqlite+aiosqlite://", 1)
        elif raw.startswith("postgres://"):
            self.database_url = "postgresql+asyncpg://" + raw[len("postgres://") :]
        elif raw.startswith("postgresql://"):
            self.database_url = raw.replace("postgresql://", "postgresql+asyncpg://", 1)
        return self

    # ── Match source (FACEIT) ────────────────────────────────
    faceit_api_key: str = ""
    faceit_base_url: str = "https://open.faceit.com/data/v4"
    faceit_team_id: str = ""
    faceit_competition_id: str = ""
    faceit_room_url: str = "https://www.faceit.com/en/cs2/room/{match_id}"
    source_request_timeout_s: float = 15.0
    source_max_retries: int = 3
    source_retry_base_delay_s: float = 1.0
    source_circuit_failure_threshold: int = 5
    source_circuit_recovery_s: float = 120.0
    finished_fetch_limit: int = 10

    # ── Thread platform (Discord) ────────────────────────────
    discord_bot_token: str = ""
    discord_channel_id: str = ""
    discord_guild_id: str = ""
    discord_base_url: str = "https://discord.com/api/v10"
    platform_request_timeout_s: float = 10.0
    platform_max_retries: int = 2
    thread_message_scan_limit: int = 20

    # ── Scheduler ────────────────────────────────────────────
    check_interval_s: float = 1800.0
    cleanup_interval_s: float = 21600.0
    reconcile_fetch_timeout_s: float = 20.0

    # ── Canonical lifecycle thresholds ───────────────────────
    overdue_threshold_s: int = Field(default=4 * 3600, description="Unconfirmed match past start: warn")
    stale_window_s: int = Field(default=7 * 86400, description="Finished matches older than this are stale")
    thread_lock_after_s: int = Field(default=72 * 3600, description="Lock finished threads after this age")
    purge_after_s: int = Field(default=30 * 86400, description="Purge finished match rows after this age")
    clock_skew_allowance_s: int = 300

    # ── Cache phases ─────────────────────────────────────────
    approaching_window_s: int = 3600
    active_window_s: int = 2 * 3600
    cooldown_end_s: int = 5 * 3600

    # ── Mutation locks ───────────────────────────────────────
    lock_timeout_s: float = 30.0
    lock_max_attempts: int = 3
    lock_backoff_base_s: float = 0.1
    lock_backoff_cap_s: float = 5.0

    # ── Observability ────────────────────────────────────────
    metrics_enabled: bool = True
    metrics_port: int = 9090

    @property
    def database_url_safe_log(self) -> str:
        """URL with password redacted, for logging only."""
        try:
            u = urlparse(self.database_url)
            if not u.password:
                return self.database_url
            netloc = f"{u.username or '?'}@***" + (f":{u.port}" if u.port else "")
            return f"{u.scheme}://{netloc}{u.path or '/'}"
        except ValueError:
            return "***"

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Singleton access to validated settings."""
    return Settings()
