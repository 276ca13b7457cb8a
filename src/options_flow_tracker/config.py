"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
Options Flow Tracker application, loading and validating environment
variables at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class DeribitSettings(BaseSettings):
    """Deribit venue endpoints."""

    model_config = SettingsConfigDict(env_prefix="DERIBIT_", extra="ignore")

    ws_url: str = Field(
        default="wss://www.deribit.com/ws/api/v2",
        alias="DERIBIT_WS_URL",
        description="JSON-RPC WebSocket endpoint (subscriptions and RPC calls)",
    )
    rest_url: str = Field(
        default="https://www.deribit.com/api/v2",
        alias="DERIBIT_REST_URL",
        description="HTTP API base used for history, tickers and book summaries",
    )
    currency: str = Field(
        default="BTC",
        alias="DERIBIT_CURRENCY",
        description="Underlying currency of the option chain",
    )
    reference_instrument: str = Field(
        default="BTC-PERPETUAL",
        alias="DERIBIT_REFERENCE_INSTRUMENT",
        description="Instrument whose ticker provides the underlying reference price",
    )
    max_requests_per_second: float = Field(
        default=20.0,
        alias="DERIBIT_MAX_REQUESTS_PER_SECOND",
        gt=0.0,
        le=1000.0,
        description="Client-side REST rate limit",
    )
    request_timeout_seconds: float = Field(
        default=15.0,
        alias="DERIBIT_REQUEST_TIMEOUT_SECONDS",
        gt=0.0,
        le=300.0,
        description="Total timeout for a single REST request",
    )

    @field_validator("ws_url")
    @classmethod
    def validate_ws_url(cls, v: str) -> str:
        """Validate WebSocket URL format."""
        if not v.startswith(("ws://", "wss://")):
            raise ValueError("WebSocket URL must start with ws:// or wss://")
        return v

    @field_validator("rest_url")
    @classmethod
    def validate_rest_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("DERIBIT_REST_URL must be an HTTP(S) endpoint")
        return v.rstrip("/")


class FlowSettings(BaseSettings):
    """Big-trade thresholds, display filters and live subscription selection."""

    model_config = SettingsConfigDict(env_prefix="FLOW_", extra="ignore")

    manual_big_unit: float = Field(
        default=0.0,
        alias="FLOW_MANUAL_BIG_UNIT",
        ge=0.0,
        description="Fixed big-trade size; 0 derives it from the rolling 98th percentile",
    )
    display_min_size: float = Field(
        default=0.0,
        alias="FLOW_DISPLAY_MIN_SIZE",
        ge=0.0,
        description="Hide signals whose residual |qty| is below max(this, 1)",
    )
    expiry_filter_ms: int = Field(
        default=0,
        alias="FLOW_EXPIRY_FILTER_MS",
        ge=0,
        description="Only show signals for this expiry (epoch ms); 0 shows all",
    )
    strikes_per_side: int = Field(
        default=8,
        alias="FLOW_STRIKES_PER_SIDE",
        ge=0,
        le=200,
        description="Calls and puts of the nearest expiry subscribed individually",
    )
    moneyness_band: float = Field(
        default=0.0,
        alias="FLOW_MONEYNESS_BAND",
        ge=0.0,
        le=10.0,
        description="Restrict individual subscriptions to |K/S - 1| <= band; 0 disables",
    )
    oi_poll_interval_seconds: int = Field(
        default=60,
        alias="FLOW_OI_POLL_INTERVAL_SECONDS",
        ge=5,
        le=3600,
        description="Open-interest book summary polling interval",
    )
    reference_refresh_seconds: int = Field(
        default=5,
        alias="FLOW_REFERENCE_REFRESH_SECONDS",
        ge=1,
        le=600,
        description="Reference price refresh interval",
    )
    iv_refresh_interval_ms: int = Field(
        default=200,
        alias="FLOW_IV_REFRESH_INTERVAL_MS",
        ge=10,
        le=60_000,
        description="Spacing between on-demand ticker fetches for instruments lacking IV",
    )


class BackfillSettings(BaseSettings):
    """Historical trade reconciliation settings."""

    model_config = SettingsConfigDict(env_prefix="BACKFILL_", extra="ignore")

    max_in_flight: int = Field(
        default=8,
        alias="BACKFILL_MAX_IN_FLIGHT",
        ge=1,
        le=64,
        description="Maximum simultaneous history fetches per pipeline",
    )
    page_size: int = Field(
        default=1000,
        alias="BACKFILL_PAGE_SIZE",
        ge=10,
        le=1000,
        description="Rows requested per history call (the venue caps this at 1000)",
    )
    delta_lookback_days: int = Field(
        default=7,
        alias="BACKFILL_DELTA_LOOKBACK_DAYS",
        ge=1,
        le=90,
        description="Catch-up range start when no snapshot was restored",
    )
    full_lookback_days: int = Field(
        default=120,
        alias="BACKFILL_FULL_LOOKBACK_DAYS",
        ge=1,
        le=3650,
        description="How far before min(now, expiry) full reconstruction starts",
    )
    initial_window_hours: float = Field(
        default=6.0,
        alias="BACKFILL_INITIAL_WINDOW_HOURS",
        gt=0.0,
        le=24.0,
        description="Starting adaptive window for full reconstruction",
    )
    delta_on_startup: bool = Field(
        default=True,
        alias="BACKFILL_DELTA_ON_STARTUP",
        description="Run delta catch-up at startup",
    )
    full_on_startup: bool = Field(
        default=True,
        alias="BACKFILL_FULL_ON_STARTUP",
        description="Run full reconstruction at startup",
    )
    full_with_snapshot: bool = Field(
        default=False,
        alias="BACKFILL_FULL_WITH_SNAPSHOT",
        description="Also run full reconstruction when a snapshot was restored",
    )


class SnapshotSettings(BaseSettings):
    """Snapshot persistence settings."""

    model_config = SettingsConfigDict(env_prefix="SNAPSHOT_", extra="ignore")

    key: str = Field(
        default="options_flow:snapshot",
        alias="SNAPSHOT_KEY",
        description="Redis key holding the serialized ledger snapshot",
    )
    watermark_key: str = Field(
        default="options_flow:cache:last_backfill_to_ms",
        alias="SNAPSHOT_WATERMARK_KEY",
        description="Redis key holding the last reconciled backfill timestamp",
    )
    interval_seconds: int = Field(
        default=60,
        alias="SNAPSHOT_INTERVAL_SECONDS",
        ge=5,
        le=86_400,
        description="How often to persist the snapshot",
    )
    max_amount_samples: int = Field(
        default=1000,
        alias="SNAPSHOT_MAX_AMOUNT_SAMPLES",
        ge=0,
        le=1_000_000,
        description="Trailing amount samples kept in the snapshot",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from options_flow_tracker.config import get_settings

        settings = get_settings()
        print(settings.deribit.ws_url)
        print(settings.log_level)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    deribit: DeribitSettings = Field(
        default_factory=lambda: DeribitSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    flow: FlowSettings = Field(
        default_factory=lambda: FlowSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    backfill: BackfillSettings = Field(
        default_factory=lambda: BackfillSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    snapshot: SnapshotSettings = Field(
        default_factory=lambda: SnapshotSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    # Application settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    signal_stream_key: str = Field(
        default="options_flow:signals",
        alias="SIGNAL_STREAM_KEY",
        description="Redis stream receiving fired signals",
    )
    signal_stream_maxlen: int = Field(
        default=10_000,
        alias="SIGNAL_STREAM_MAXLEN",
        ge=100,
        le=10_000_000,
        description="Approximate cap on the signal stream length",
    )
    dry_run: bool = Field(
        default=False,
        alias="DRY_RUN",
        description="Log signals without publishing them",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "redis_url": self._redact_url(self.redis.url),
            "deribit": {
                "ws_url": self.deribit.ws_url,
                "rest_url": self.deribit.rest_url,
                "currency": self.deribit.currency,
                "reference_instrument": self.deribit.reference_instrument,
            },
            "flow": {
                "manual_big_unit": str(self.flow.manual_big_unit),
                "display_min_size": str(self.flow.display_min_size),
                "expiry_filter_ms": str(self.flow.expiry_filter_ms),
                "strikes_per_side": str(self.flow.strikes_per_side),
            },
            "backfill": {
                "max_in_flight": str(self.backfill.max_in_flight),
                "delta_lookback_days": str(self.backfill.delta_lookback_days),
                "full_lookback_days": str(self.backfill.full_lookback_days),
                "full_on_startup": str(self.backfill.full_on_startup),
            },
            "snapshot_key": self.snapshot.key,
            "log_level": self.log_level,
            "dry_run": str(self.dry_run),
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If environment variables have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
