"""Repository pattern implementations for data access.

This module provides the idempotent burn-event sink and the monotonic
scan checkpoint store.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

import sqlalchemy as sa
from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from burn_watcher.models import BurnEvent, EventOrigin, RecordOutcome
from burn_watcher.storage.models import BurnEventModel, ScanCheckpointModel

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def _insert_for(session: AsyncSession):  # type: ignore[no-untyped-def]
    """Pick the dialect-specific ``insert`` that supports ``ON CONFLICT``."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise NotImplementedError(f"Unsupported database dialect: {dialect}")


@dataclass
class BurnEventDTO:
    """Data transfer object for recorded burn events."""

    tx_hash: str
    log_index: int
    token_address: str
    from_address: str
    to_address: str
    amount_raw: int
    amount_human: Decimal
    timestamp: datetime
    block_number: int | None = None
    origin: str = EventOrigin.SCANNER.value
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: BurnEventModel) -> BurnEventDTO:
        return cls(
            tx_hash=model.tx_hash,
            log_index=model.log_index,
            token_address=model.token_address,
            from_address=model.from_address,
            to_address=model.to_address,
            amount_raw=int(model.amount_raw),
            amount_human=model.amount_human,
            timestamp=model.timestamp,
            block_number=model.block_number,
            origin=model.origin,
            created_at=model.created_at,
        )

    @classmethod
    def from_event(cls, event: BurnEvent) -> BurnEventDTO:
        return cls(
            tx_hash=event.tx_hash.lower(),
            log_index=event.log_index,
            token_address=event.token_address.lower(),
            from_address=event.from_address.lower(),
            to_address=event.to_address.lower(),
            amount_raw=event.amount_raw,
            amount_human=event.amount_human,
            timestamp=event.timestamp,
            block_number=event.block_number,
            origin=EventOrigin(event.origin).value,
        )


class BurnEventRepository:
    """Idempotent sink for burn events keyed by ``(tx_hash, log_index)``."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
        """
        self.session = session

    async def record_if_absent(self, dto: BurnEventDTO) -> RecordOutcome:
        """Insert ``dto`` unless its natural key is already stored.

        A duplicate key is an expected outcome and never raises. Any other
        database failure propagates as ``SQLAlchemyError``.

        Returns:
            ``INSERTED`` if a row was written, ``ALREADY_PRESENT`` otherwise.
        """
        insert = _insert_for(self.session)
        stmt = (
            insert(BurnEventModel)
            .values(
                tx_hash=dto.tx_hash.lower(),
                log_index=dto.log_index,
                token_address=dto.token_address.lower(),
                from_address=dto.from_address.lower(),
                to_address=dto.to_address.lower(),
                amount_raw=str(dto.amount_raw),
                amount_human=dto.amount_human,
                block_number=dto.block_number,
                origin=dto.origin,
                timestamp=dto.timestamp,
                created_at=datetime.now(UTC),
            )
            .on_conflict_do_nothing(index_elements=["tx_hash", "log_index"])
            .returning(BurnEventModel.id)
        )
        result = await self.session.execute(stmt)
        inserted_id = result.scalar_one_or_none()

        if inserted_id is None:
            logger.debug("Burn event already present: tx=%s log=%d", dto.tx_hash, dto.log_index)
            return RecordOutcome.ALREADY_PRESENT

        logger.info(
            "Recorded burn tx=%s log=%d amount=%s origin=%s",
            dto.tx_hash,
            dto.log_index,
            dto.amount_human,
            dto.origin,
        )
        return RecordOutcome.INSERTED

    async def get(self, tx_hash: str, log_index: int) -> BurnEventDTO | None:
        result = await self.session.execute(
            select(BurnEventModel).where(
                BurnEventModel.tx_hash == tx_hash.lower(),
                BurnEventModel.log_index == log_index,
            )
        )
        model = result.scalar_one_or_none()
        return BurnEventDTO.from_model(model) if model else None

    async def list_by_tx(self, tx_hash: str) -> list[BurnEventDTO]:
        result = await self.session.execute(
            select(BurnEventModel)
            .where(BurnEventModel.tx_hash == tx_hash.lower())
            .order_by(BurnEventModel.log_index.asc())
        )
        return [BurnEventDTO.from_model(m) for m in result.scalars().all()]

    async def list_for_token(self, token_address: str, limit: int = 100) -> list[BurnEventDTO]:
        """Most recent burns for a token, newest first."""
        result = await self.session.execute(
            select(BurnEventModel)
            .where(BurnEventModel.token_address == token_address.lower())
            .order_by(BurnEventModel.block_number.desc(), BurnEventModel.log_index.desc())
            .limit(limit)
        )
        return [BurnEventDTO.from_model(m) for m in result.scalars().all()]

    async def count(self, token_address: str | None = None) -> int:
        stmt = select(func.count()).select_from(BurnEventModel)
        if token_address is not None:
            stmt = stmt.where(BurnEventModel.token_address == token_address.lower())
        result = await self.session.execute(stmt)
        return int(result.scalar_one())


class CheckpointRepository:
    """Per-token scan checkpoint that only ever moves forward."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, token_address: str) -> int | None:
        result = await self.session.execute(
            select(ScanCheckpointModel.last_block).where(
                ScanCheckpointModel.token_address == token_address.lower()
            )
        )
        value = result.scalar_one_or_none()
        return int(value) if value is not None else None

    async def advance(self, token_address: str, height: int) -> None:
        """Set the checkpoint to ``height`` unless it is already higher.

        A lower ``height`` is a no-op, so concurrent or replayed writers
        cannot move the checkpoint backwards.
        """
        if height < 0:
            raise ValueError("height must be >= 0")

        now = datetime.now(UTC)
        insert = _insert_for(self.session)
        stmt = insert(ScanCheckpointModel).values(
            token_address=token_address.lower(),
            last_block=height,
            updated_at=now,
        )
        current = ScanCheckpointModel.__table__.c.last_block
        stmt = stmt.on_conflict_do_update(
            index_elements=["token_address"],
            set_={
                "last_block": sa.case(
                    (stmt.excluded.last_block > current, stmt.excluded.last_block),
                    else_=current,
                ),
                "updated_at": now,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()
        logger.debug("Checkpoint for %s advanced to >= %d", token_address, height)
