"""Tests for environment-driven settings."""

from __future__ import annotations

import logging
from decimal import Decimal

import pytest
from eth_account import Account
from pydantic import ValidationError

from burn_watcher.config import Settings, clear_settings_cache, get_settings

TOKEN = "0x3C499c542cEF5E3811e1192ce70d8cC03d5c3359"
PRIVATE_KEY = "0x" + "11" * 32
RECIPIENT = Account.from_key(PRIVATE_KEY).address

_ALL_VARS = (
    "DATABASE_URL",
    "REDIS_URL",
    "RPC_HTTP",
    "RPC_FALLBACK_HTTP",
    "RPC_WSS",
    "TOKEN_ADDRESS",
    "TOKEN_DECIMALS",
    "REWARD_RECIPIENT",
    "DEAD_ADDRESS",
    "PRIVATE_KEY",
    "MIN_TOKEN_TO_ACT",
    "DELAY_MS_AFTER_EVENT",
    "SCAN_START_BLOCK",
    "STARTUP_SWEEP",
    "LOG_LEVEL",
)


@pytest.fixture
def env(monkeypatch, tmp_path):
    """Isolated environment with the minimum for scanning."""
    monkeypatch.chdir(tmp_path)
    for name in _ALL_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DATABASE_URL", "postgresql+asyncpg://burner:s3cret@db:5432/burns")
    monkeypatch.setenv("RPC_HTTP", "https://rpc.example")
    monkeypatch.setenv("TOKEN_ADDRESS", TOKEN)
    monkeypatch.setenv("REWARD_RECIPIENT", RECIPIENT)
    clear_settings_cache()
    yield monkeypatch
    clear_settings_cache()


class TestSettings:
    def test_defaults(self, env) -> None:
        settings = Settings()
        assert settings.token.decimals == 18
        assert settings.token.dead_address == "0x000000000000000000000000000000000000dead"
        assert settings.scan.batch_blocks == 500
        assert settings.scan.max_range_blocks == 10
        assert settings.scan.start_block is None
        assert settings.trigger.delay_seconds == 3.0
        assert settings.trigger.min_token_to_act == Decimal("0")
        assert settings.trigger.startup_sweep is False
        assert settings.redis.url is None
        assert settings.get_logging_level() == logging.INFO

    def test_addresses_lowercased(self, env) -> None:
        settings = Settings()
        assert settings.token.token_address == TOKEN.lower()
        assert settings.token.reward_recipient == RECIPIENT.lower()

    def test_invalid_address_rejected(self, env) -> None:
        env.setenv("TOKEN_ADDRESS", "0x1234")
        with pytest.raises(ValidationError):
            Settings()

    def test_invalid_database_url_rejected(self, env) -> None:
        env.setenv("DATABASE_URL", "mysql://x")
        with pytest.raises(ValidationError):
            Settings()

    def test_watched_pair(self, env) -> None:
        env.setenv("MIN_TOKEN_TO_ACT", "2.5")
        env.setenv("DELAY_MS_AFTER_EVENT", "1500")
        env.setenv("TOKEN_DECIMALS", "6")
        pair = Settings().watched_pair()
        assert pair.token_address == TOKEN.lower()
        assert pair.source_address == RECIPIENT.lower()
        assert pair.decimals == 6
        assert pair.min_amount_to_act == Decimal("2.5")
        assert pair.post_event_delay_seconds == 1.5

    def test_redacted_summary_hides_secrets(self, env) -> None:
        env.setenv("PRIVATE_KEY", PRIVATE_KEY)
        summary = Settings().redacted_summary()
        assert summary["database_url"] == "postgresql+asyncpg://burner:***@db:5432/burns"
        assert summary["trigger"]["private_key"] == "(set)"
        assert "11" * 32 not in str(summary)

    def test_get_settings_is_cached(self, env) -> None:
        assert get_settings() is get_settings()


class TestValidateRequirements:
    def test_scan_ok(self, env) -> None:
        Settings().validate_requirements(command="scan")

    def test_init_db_needs_nothing_else(self, env) -> None:
        env.delenv("RPC_HTTP")
        env.delenv("TOKEN_ADDRESS")
        Settings().validate_requirements(command="init-db")

    def test_scan_requires_rpc(self, env) -> None:
        env.delenv("RPC_HTTP")
        with pytest.raises(ValueError, match="RPC_HTTP"):
            Settings().validate_requirements(command="scan")

    def test_backfill_requires_recipient(self, env) -> None:
        env.delenv("REWARD_RECIPIENT")
        with pytest.raises(ValueError, match="REWARD_RECIPIENT"):
            Settings().validate_requirements(command="backfill-tx")

    def test_watch_requires_websocket_and_signer(self, env) -> None:
        with pytest.raises(ValueError, match="RPC_WSS"):
            Settings().validate_requirements(command="watch")

        env.setenv("RPC_WSS", "wss://rpc.example")
        with pytest.raises(ValueError, match="PRIVATE_KEY"):
            Settings().validate_requirements(command="watch")

        env.setenv("PRIVATE_KEY", PRIVATE_KEY)
        Settings().validate_requirements(command="watch")

    def test_watch_rejects_key_for_another_address(self, env) -> None:
        env.setenv("RPC_WSS", "wss://rpc.example")
        env.setenv("PRIVATE_KEY", "0x" + "22" * 32)
        with pytest.raises(ValueError, match="REWARD_RECIPIENT"):
            Settings().validate_requirements(command="watch")

    def test_watch_rejects_malformed_key(self, env) -> None:
        env.setenv("RPC_WSS", "wss://rpc.example")
        env.setenv("PRIVATE_KEY", "0x1234")
        with pytest.raises(ValueError, match="not a valid"):
            Settings().validate_requirements(command="watch")

    def test_startup_sweep_opt_in(self, env) -> None:
        env.setenv("STARTUP_SWEEP", "true")
        assert Settings().trigger.startup_sweep is True
