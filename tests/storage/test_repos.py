"""Tests for the burn event sink and checkpoint store."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from burn_watcher.models import EventOrigin, RecordOutcome
from burn_watcher.storage.models import Base
from burn_watcher.storage.repos import BurnEventDTO, BurnEventRepository, CheckpointRepository

TOKEN = "0x3c499c542cef5e3811e1192ce70d8cc03d5c3359"
RECIPIENT = "0x1234567890abcdef1234567890abcdef12345678"
DEAD = "0x000000000000000000000000000000000000dead"


@pytest.fixture
async def async_engine():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def async_session(async_engine) -> AsyncSession:
    session_factory = async_sessionmaker(bind=async_engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session


def _dto(tx_hash: str = "0x" + "a" * 64, log_index: int = 0, **overrides) -> BurnEventDTO:
    values = {
        "tx_hash": tx_hash,
        "log_index": log_index,
        "token_address": TOKEN,
        "from_address": RECIPIENT,
        "to_address": DEAD,
        "amount_raw": 123 * 10**18,
        "amount_human": Decimal("123"),
        "timestamp": datetime(2026, 1, 1, tzinfo=UTC),
        "block_number": 100,
    }
    values.update(overrides)
    return BurnEventDTO(**values)


class TestBurnEventRepository:
    @pytest.mark.asyncio
    async def test_record_then_duplicate(self, async_session: AsyncSession) -> None:
        repo = BurnEventRepository(async_session)

        assert await repo.record_if_absent(_dto()) is RecordOutcome.INSERTED
        assert await repo.record_if_absent(_dto()) is RecordOutcome.ALREADY_PRESENT
        assert await repo.count() == 1

    @pytest.mark.asyncio
    async def test_duplicate_keeps_first_row(self, async_session: AsyncSession) -> None:
        repo = BurnEventRepository(async_session)
        await repo.record_if_absent(_dto(origin=EventOrigin.TRIGGER.value))
        await repo.record_if_absent(_dto(origin=EventOrigin.SCANNER.value, amount_raw=1))

        stored = await repo.get("0x" + "a" * 64, 0)
        assert stored is not None
        assert stored.origin == EventOrigin.TRIGGER.value
        assert stored.amount_raw == 123 * 10**18

    @pytest.mark.asyncio
    async def test_same_tx_distinct_log_index(self, async_session: AsyncSession) -> None:
        repo = BurnEventRepository(async_session)
        await repo.record_if_absent(_dto(log_index=1))
        await repo.record_if_absent(_dto(log_index=0))

        rows = await repo.list_by_tx("0x" + "A" * 64)
        assert [r.log_index for r in rows] == [0, 1]

    @pytest.mark.asyncio
    async def test_hash_is_normalized(self, async_session: AsyncSession) -> None:
        repo = BurnEventRepository(async_session)
        assert await repo.record_if_absent(_dto(tx_hash="0x" + "B" * 64)) is RecordOutcome.INSERTED
        assert await repo.record_if_absent(_dto(tx_hash="0x" + "b" * 64)) is RecordOutcome.ALREADY_PRESENT

    @pytest.mark.asyncio
    async def test_uint256_amount_round_trips(self, async_session: AsyncSession) -> None:
        repo = BurnEventRepository(async_session)
        raw = 2**256 - 1
        await repo.record_if_absent(_dto(amount_raw=raw))

        stored = await repo.get("0x" + "a" * 64, 0)
        assert stored is not None
        assert stored.amount_raw == raw

    @pytest.mark.asyncio
    async def test_list_for_token_newest_first(self, async_session: AsyncSession) -> None:
        repo = BurnEventRepository(async_session)
        await repo.record_if_absent(_dto(tx_hash="0x" + "1" * 64, block_number=10))
        await repo.record_if_absent(_dto(tx_hash="0x" + "2" * 64, block_number=30))
        await repo.record_if_absent(_dto(tx_hash="0x" + "3" * 64, block_number=20))

        rows = await repo.list_for_token(TOKEN, limit=2)
        assert [r.block_number for r in rows] == [30, 20]
        assert await repo.count(TOKEN) == 3
        assert await repo.count("0x" + "9" * 40) == 0


class TestCheckpointRepository:
    @pytest.mark.asyncio
    async def test_absent_is_none(self, async_session: AsyncSession) -> None:
        assert await CheckpointRepository(async_session).get(TOKEN) is None

    @pytest.mark.asyncio
    async def test_advance_never_decreases(self, async_session: AsyncSession) -> None:
        repo = CheckpointRepository(async_session)

        await repo.advance(TOKEN, 100)
        assert await repo.get(TOKEN) == 100

        await repo.advance(TOKEN, 150)
        assert await repo.get(TOKEN) == 150

        await repo.advance(TOKEN, 120)
        assert await repo.get(TOKEN) == 150

    @pytest.mark.asyncio
    async def test_tokens_are_independent(self, async_session: AsyncSession) -> None:
        repo = CheckpointRepository(async_session)
        other = "0x" + "9" * 40
        await repo.advance(TOKEN, 10)
        await repo.advance(other, 5)

        assert await repo.get(TOKEN.upper().replace("0X", "0x")) == 10
        assert await repo.get(other) == 5

    @pytest.mark.asyncio
    async def test_negative_height_rejected(self, async_session: AsyncSession) -> None:
        with pytest.raises(ValueError):
            await CheckpointRepository(async_session).advance(TOKEN, -1)
