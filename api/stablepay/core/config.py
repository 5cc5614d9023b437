"""Engine settings parsed from environment variables and defaults."""

import json
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_QUEUE_NAMES = ["execute-rule", "condition-check", "dlq"]


class Settings(BaseSettings):
    """Engine configuration loaded from environment variables."""

    app_name: str = "Stablepay Engine"
    environment: str = "development"
    api_prefix: str = "/api"

    database_url: str = "sqlite+aiosqlite:///./stablepay.db"
    test_database_url: Optional[str] = None
    log_level: str = "INFO"

    redis_url: str = "redis://redis:6379/0"
    worker_queue_names: list[str] | str = Field(default_factory=lambda: DEFAULT_QUEUE_NAMES.copy())
    queue_probe_interval_seconds: float = 15.0
    job_attempts: int = 3
    job_backoff_seconds: float = 2.0
    job_timeout_seconds: int = 120

    admin_api_token: Optional[str] = None

    scheduler_tick_seconds: float = 60.0
    scheduler_lookahead_seconds: int = 300
    scheduler_due_window_seconds: int = 60

    condition_check_interval_seconds: int = 300
    fx_refresh_interval_seconds: float = 120.0
    condition_debounce_seconds: int = 300
    fx_market_hours: list[tuple[int, int]] | str = Field(default_factory=lambda: [(8, 12), (14, 17)])

    dlq_ttl_days: int = 30
    dlq_max_attempts: int = 5
    dlq_stats_sample_size: int = 100
    dlq_cleanup_cron: str = "0 2 * * *"

    safety_max_amount_usd: float = 10_000.0
    safety_require_approval_over_usd: float = 1_000.0
    safety_max_concurrent_executions: int = 10
    safety_max_daily_executions: int = 100
    health_cache_seconds: float = 30.0

    balance_safety_buffer_usd: float = 5.0
    pause_insufficient_funds_hours: int = 24
    pause_rate_limited_hours: int = 1

    fx_oracle_url: Optional[str] = None
    gas_oracle_url: Optional[str] = None
    fx_cache_seconds: float = 60.0
    gas_cache_seconds: float = 30.0
    eth_price_usd: float = 2_000.0

    @field_validator("worker_queue_names", mode="before")
    @classmethod
    def _split_worker_queue_names(cls, value: str | list[str] | None) -> list[str]:
        """Normalize worker queue names from JSON, CSV, or list inputs."""
        if isinstance(value, list):
            cleaned = [item.strip() for item in value if isinstance(item, str) and item.strip()]
            if cleaned:
                return cleaned
        if isinstance(value, str):
            stripped = value.strip()
            try:
                parsed = json.loads(stripped) if stripped else None
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, list):
                cleaned = [str(item).strip() for item in parsed if str(item).strip()]
                if cleaned:
                    return cleaned
            names = [item.strip() for item in stripped.split(",") if item.strip()]
            if names:
                return names
        return DEFAULT_QUEUE_NAMES.copy()

    @field_validator("fx_market_hours", mode="before")
    @classmethod
    def _parse_market_hours(cls, value: str | list | None) -> list[tuple[int, int]]:
        """Accept "8-12,14-17" strings or lists of [start, end] pairs (UTC hours, inclusive)."""
        if value is None:
            return []
        if isinstance(value, str):
            ranges: list[tuple[int, int]] = []
            for chunk in value.split(","):
                chunk = chunk.strip()
                if not chunk:
                    continue
                start, _, end = chunk.partition("-")
                ranges.append((int(start), int(end or start)))
            return ranges
        return [(int(pair[0]), int(pair[1])) for pair in value]

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    """Return cached settings to avoid re-parsing environment variables."""
    return Settings()


settings = get_settings()
