"""Core configuration management using Pydantic settings."""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import model_validator, field_validator
from typing import Optional, List
import pytz


# Valid log levels
VALID_LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']

# Global provider priority: free and generous providers first
DEFAULT_PROVIDER_ORDER = "yahoo,twelvedata,alphavantage,fmp"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Database (host stock store)
    database_url: str = "sqlite+aiosqlite:///./data/watchlist.db"

    # Redis (usage counters, provider memory, quote cache)
    redis_url: str = "redis://localhost:6379/0"
    redis_max_connections: int = 20
    storage_namespace: str = "watchlist"

    # Logging
    log_level: str = "INFO"

    # Local timezone used for the provider day boundary
    timezone: str = "Europe/Amsterdam"

    # API Keys (a provider without a key is not registered; Yahoo needs none)
    twelvedata_api_key: Optional[str] = None
    alphavantage_api_key: Optional[str] = None
    fmp_api_key: Optional[str] = None

    # Comma-separated provider priority order
    provider_order: str = DEFAULT_PROVIDER_ORDER

    # Refresh engine pacing (seconds)
    delay_between_stocks: float = 1.5
    delay_after_failure: float = 3.0
    cycle_delay: float = 30.0
    paused_poll_interval: float = 1.0
    empty_queue_delay: float = 5.0

    # Per-stock provider memory
    cooldown_base_seconds: int = 300  # 5 minutes
    cooldown_max_seconds: int = 3600  # 1 hour
    block_failure_threshold: int = 3
    failure_penalty_minutes: float = 30.0

    # Scan priority sliders (0-100)
    weight_last_scan: int = 60
    weight_distance_to_limit: int = 50
    weight_volatility: int = 30
    weight_rainbow_blocks: int = 40

    # Range / buy-limit batch job
    range_batch_size: int = 100
    range_stale_after_hours: int = 168  # 7 days
    range_batch_interval_minutes: int = 60

    # Scanner sync safety: max fraction of a group a merge may remove
    sync_shrink_threshold: float = 0.2

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is a valid Python logging level."""
        upper_v = v.upper()
        if upper_v not in VALID_LOG_LEVELS:
            raise ValueError(f"log_level must be one of {VALID_LOG_LEVELS}")
        return upper_v

    @field_validator('timezone')
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Validate timezone is known to pytz."""
        if v not in pytz.all_timezones_set:
            raise ValueError(f"Unknown timezone: {v}")
        return v

    @field_validator(
        'weight_last_scan',
        'weight_distance_to_limit',
        'weight_volatility',
        'weight_rainbow_blocks'
    )
    @classmethod
    def validate_weight(cls, v: int) -> int:
        """Scan weights are 0-100 sliders."""
        if not 0 <= v <= 100:
            raise ValueError("scan weights must be between 0 and 100")
        return v

    @property
    def provider_order_list(self) -> List[str]:
        """Parse provider order from comma-separated string to list."""
        return [p.strip().lower() for p in self.provider_order.split(",") if p.strip()]

    @model_validator(mode='after')
    def validate_config(self) -> 'Settings':
        """Validate configuration after all fields are set."""
        if not 0 < self.sync_shrink_threshold < 1:
            raise ValueError("sync_shrink_threshold must be between 0 and 1")
        if self.cooldown_max_seconds < self.cooldown_base_seconds:
            raise ValueError("cooldown_max_seconds must be >= cooldown_base_seconds")
        if not self.provider_order_list:
            raise ValueError("provider_order must name at least one provider")
        return self


# Global settings instance
settings = Settings()
