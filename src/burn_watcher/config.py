"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the burn
watcher, loading and validating environment variables at startup.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from functools import lru_cache
from typing import Literal

from eth_account import Account
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from web3 import Web3

from burn_watcher.models import WatchedPair

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

DEFAULT_DEAD_ADDRESS = "0x000000000000000000000000000000000000dEaD"

Command = Literal["watch", "scan", "backfill-tx", "init-db"]


def _validate_address(v: str | None, name: str) -> str | None:
    if v is None:
        return v
    v = v.strip()
    if not Web3.is_address(v):
        raise ValueError(f"{name} must be a 20-byte hex address")
    return v.lower()


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL (or SQLite for local runs) connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or SQLite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings (optional block timestamp cache)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string; caching is disabled when unset",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None or v == "":
            return None
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class ChainSettings(BaseSettings):
    """EVM RPC endpoint settings."""

    model_config = SettingsConfigDict(env_prefix="RPC_", extra="ignore")

    http_url: str | None = Field(
        default=None,
        alias="RPC_HTTP",
        description="Primary HTTP JSON-RPC endpoint",
    )
    fallback_http_url: str | None = Field(
        default=None,
        alias="RPC_FALLBACK_HTTP",
        description="Fallback HTTP JSON-RPC endpoint",
    )
    wss_url: str | None = Field(
        default=None,
        alias="RPC_WSS",
        description="WebSocket JSON-RPC endpoint for live log subscriptions",
    )
    max_requests_per_second: float = Field(
        default=25,
        alias="RPC_MAX_REQUESTS_PER_SECOND",
        gt=0,
        le=1000,
        description="Client-side rate limit for HTTP RPC calls",
    )

    @field_validator("http_url", "fallback_http_url")
    @classmethod
    def validate_http_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None or v == "":
            return None
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v

    @field_validator("wss_url")
    @classmethod
    def validate_ws_url(cls, v: str | None) -> str | None:
        """Validate WebSocket URL format."""
        if v is None or v == "":
            return None
        if not v.startswith(("ws://", "wss://")):
            raise ValueError("RPC_WSS must start with ws:// or wss://")
        return v


class TokenSettings(BaseSettings):
    """The watched token and source/disposal pair."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    token_address: str | None = Field(
        default=None,
        alias="TOKEN_ADDRESS",
        description="ERC-20 token contract to watch",
    )
    decimals: int = Field(
        default=18,
        alias="TOKEN_DECIMALS",
        ge=0,
        le=77,
        description="Token decimals used to scale raw amounts",
    )
    reward_recipient: str | None = Field(
        default=None,
        alias="REWARD_RECIPIENT",
        description="Source address whose outbound transfers to the disposal address are burns",
    )
    dead_address: str = Field(
        default=DEFAULT_DEAD_ADDRESS,
        alias="DEAD_ADDRESS",
        description="Disposal (burn) address",
    )

    @field_validator("token_address")
    @classmethod
    def validate_token_address(cls, v: str | None) -> str | None:
        return _validate_address(v, "TOKEN_ADDRESS")

    @field_validator("reward_recipient")
    @classmethod
    def validate_reward_recipient(cls, v: str | None) -> str | None:
        return _validate_address(v, "REWARD_RECIPIENT")

    @field_validator("dead_address")
    @classmethod
    def validate_dead_address(cls, v: str) -> str:
        return str(_validate_address(v, "DEAD_ADDRESS"))


class ScanSettings(BaseSettings):
    """Cursor scanner settings."""

    model_config = SettingsConfigDict(env_prefix="SCAN_", extra="ignore")

    batch_blocks: int = Field(
        default=500,
        alias="SCAN_BATCH_BLOCKS",
        ge=1,
        le=1_000_000,
        description="Blocks processed (and checkpointed) per batch",
    )
    max_range_blocks: int = Field(
        default=10,
        alias="SCAN_MAX_RANGE_BLOCKS",
        ge=1,
        le=100_000,
        description="Largest block span requested in one eth_getLogs call",
    )
    poll_interval_seconds: float = Field(
        default=12.0,
        alias="SCAN_POLL_INTERVAL_SECONDS",
        gt=0,
        le=3600,
        description="Steady-state polling interval once caught up",
    )
    start_block: int | None = Field(
        default=None,
        alias="SCAN_START_BLOCK",
        ge=0,
        description="Origin block when no checkpoint exists (defaults to the current head)",
    )


class TriggerSettings(BaseSettings):
    """Reactive burn (trigger engine) settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    private_key: SecretStr | None = Field(
        default=None,
        alias="PRIVATE_KEY",
        description="Signer key of the reward recipient",
    )
    min_token_to_act: Decimal = Field(
        default=Decimal("0"),
        alias="MIN_TOKEN_TO_ACT",
        ge=0,
        description="Minimum balance, in human units, before a burn is submitted",
    )
    delay_ms_after_event: int = Field(
        default=3000,
        alias="DELAY_MS_AFTER_EVENT",
        ge=0,
        le=600_000,
        description="Wait after an inbound transfer before acting",
    )
    startup_sweep: bool = Field(
        default=False,
        alias="STARTUP_SWEEP",
        description="Burn any pre-existing balance once at startup",
    )
    inclusion_timeout_seconds: float = Field(
        default=180.0,
        alias="TRIGGER_INCLUSION_TIMEOUT_SECONDS",
        gt=0,
        le=3600,
        description="How long to wait for a submitted burn to be mined",
    )

    @property
    def delay_seconds(self) -> float:
        return self.delay_ms_after_event / 1000


class RetrySettings(BaseSettings):
    """Backoff for transient provider failures."""

    model_config = SettingsConfigDict(env_prefix="RETRY_", extra="ignore")

    base_delay_seconds: float = Field(
        default=1.0,
        alias="RETRY_BASE_DELAY_SECONDS",
        ge=0,
        le=60,
        description="First retry delay",
    )
    max_delay_seconds: float = Field(
        default=15.0,
        alias="RETRY_MAX_DELAY_SECONDS",
        ge=0,
        le=600,
        description="Cap on the exponential retry delay",
    )
    max_attempts: int = Field(
        default=5,
        alias="RETRY_MAX_ATTEMPTS",
        ge=1,
        le=100,
        description="Attempts per call before giving up",
    )


class SubscriptionSettings(BaseSettings):
    """Live WebSocket subscription supervision."""

    model_config = SettingsConfigDict(env_prefix="WS_", extra="ignore")

    probe_interval_seconds: float = Field(
        default=30.0,
        alias="WS_PROBE_INTERVAL_SECONDS",
        gt=0,
        le=3600,
        description="Liveness probe interval",
    )
    probe_timeout_seconds: float = Field(
        default=10.0,
        alias="WS_PROBE_TIMEOUT_SECONDS",
        gt=0,
        le=600,
        description="How long a liveness probe may take before the connection is rebuilt",
    )
    max_reconnect_delay_seconds: float = Field(
        default=15.0,
        alias="WS_MAX_RECONNECT_DELAY_SECONDS",
        ge=1,
        le=600,
        description="Cap on the reconnect backoff",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from burn_watcher.config import get_settings

        settings = get_settings()
        print(settings.token.token_address)
        print(settings.log_level)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # Nested groups need the env_file passed through to read `.env`.
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    chain: ChainSettings = Field(
        default_factory=lambda: ChainSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    token: TokenSettings = Field(
        default_factory=lambda: TokenSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    scan: ScanSettings = Field(
        default_factory=lambda: ScanSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    trigger: TriggerSettings = Field(
        default_factory=lambda: TriggerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    retry: RetrySettings = Field(
        default_factory=lambda: RetrySettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    subscription: SubscriptionSettings = Field(
        default_factory=lambda: SubscriptionSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def watched_pair(self) -> WatchedPair:
        """Build the immutable watch configuration.

        Raises:
            ValueError: If TOKEN_ADDRESS or REWARD_RECIPIENT is not set.
        """
        if not self.token.token_address:
            raise ValueError("TOKEN_ADDRESS is required")
        if not self.token.reward_recipient:
            raise ValueError("REWARD_RECIPIENT is required")
        return WatchedPair(
            token_address=self.token.token_address,
            source_address=self.token.reward_recipient,
            disposal_address=self.token.dead_address,
            decimals=self.token.decimals,
            min_amount_to_act=self.trigger.min_token_to_act,
            post_event_delay_seconds=self.trigger.delay_seconds,
        )

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "chain": {
                "http_url": self.chain.http_url or "(not set)",
                "fallback_http_url": self.chain.fallback_http_url or "(not set)",
                "wss_url": self.chain.wss_url or "(not set)",
            },
            "token": {
                "token_address": self.token.token_address or "(not set)",
                "decimals": str(self.token.decimals),
                "reward_recipient": self.token.reward_recipient or "(not set)",
                "dead_address": self.token.dead_address,
            },
            "scan": {
                "batch_blocks": str(self.scan.batch_blocks),
                "max_range_blocks": str(self.scan.max_range_blocks),
                "start_block": str(self.scan.start_block) if self.scan.start_block is not None else "(head)",
            },
            "trigger": {
                "private_key": "(set)" if self.trigger.private_key else "(not set)",
                "min_token_to_act": str(self.trigger.min_token_to_act),
                "delay_ms_after_event": str(self.trigger.delay_ms_after_event),
                "startup_sweep": str(self.trigger.startup_sweep),
            },
            "log_level": self.log_level,
        }

    def validate_requirements(self, *, command: Command) -> None:
        """Validate command-specific requirements.

        A command whose required capability is not configured must refuse
        to run.
        """
        if command == "init-db":
            return

        if not self.chain.http_url:
            raise ValueError("RPC_HTTP is required")
        if not self.token.token_address:
            raise ValueError("TOKEN_ADDRESS is required")
        if not self.token.reward_recipient:
            raise ValueError("REWARD_RECIPIENT is required")

        if command == "watch":
            if not self.chain.wss_url:
                raise ValueError("RPC_WSS is required for the live watcher")
            if not self.trigger.private_key:
                raise ValueError("PRIVATE_KEY is required for the live watcher")
            try:
                signer = Account.from_key(self.trigger.private_key.get_secret_value()).address.lower()
            except ValueError as e:
                raise ValueError("PRIVATE_KEY is not a valid secp256k1 private key") from e
            if signer != self.token.reward_recipient:
                raise ValueError(
                    f"PRIVATE_KEY signs for {signer}, not REWARD_RECIPIENT {self.token.reward_recipient}"
                )

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

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
