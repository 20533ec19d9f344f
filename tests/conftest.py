"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import Callable
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from eth_account import Account

from burn_watcher.chain.transfers import TRANSFER_TOPIC, pad_topic_address
from burn_watcher.models import WatchedPair
from burn_watcher.storage.database import DatabaseManager

TOKEN = "0x3c499c542cef5e3811e1192ce70d8cc03d5c3359"
PRIVATE_KEY = "0x" + "11" * 32
RECIPIENT = Account.from_key(PRIVATE_KEY).address.lower()
DEAD = "0x000000000000000000000000000000000000dead"
OTHER = "0xabcdef1234567890abcdef1234567890abcdef12"
BLOCK_TIMESTAMP = 1_767_225_600  # 2026-01-01T00:00:00Z


@pytest.fixture
def pair() -> WatchedPair:
    return WatchedPair(
        token_address=TOKEN,
        source_address=RECIPIENT,
        disposal_address=DEAD,
        decimals=18,
        min_amount_to_act=Decimal("0"),
        post_event_delay_seconds=0,
    )


@pytest.fixture
def make_log() -> Callable[..., dict[str, Any]]:
    """Factory for raw Transfer logs shaped like eth_getLogs results."""

    def _make_log(
        *,
        from_address: str = RECIPIENT,
        to_address: str = DEAD,
        amount: int = 10**18,
        block: int = 100,
        log_index: int = 0,
        tx_hash: str | None = None,
        token: str = TOKEN,
    ) -> dict[str, Any]:
        return {
            "address": token,
            "topics": [
                TRANSFER_TOPIC,
                pad_topic_address(from_address),
                pad_topic_address(to_address),
            ],
            "data": "0x" + format(amount, "064x"),
            "blockNumber": block,
            "logIndex": log_index,
            "transactionHash": tx_hash or "0x" + format(block, "x").rjust(4, "0") * 16,
        }

    return _make_log


@pytest.fixture
def mock_client() -> MagicMock:
    """Chain client double with async provider methods."""
    client = MagicMock()
    client.signer_address = RECIPIENT
    client.get_head_height = AsyncMock(return_value=100)
    client.get_logs = AsyncMock(return_value=[])
    client.get_block_timestamp = AsyncMock(return_value=BLOCK_TIMESTAMP)
    client.get_token_balance = AsyncMock(return_value=0)
    client.get_token_decimals = AsyncMock(return_value=18)
    client.get_transaction_receipt = AsyncMock(return_value=None)
    client.get_confirmed_nonce = AsyncMock(return_value=0)
    client.submit_transfer = AsyncMock()
    client.wait_for_inclusion = AsyncMock()
    client.aclose = AsyncMock()
    return client


@pytest.fixture
async def db(tmp_path) -> DatabaseManager:
    """File-backed SQLite database with the schema created."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'burns.db'}")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()
