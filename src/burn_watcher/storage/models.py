"""SQLAlchemy models for persistent storage.

This module defines the database schema for recorded burn events and
the per-token scan checkpoint.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class BurnEventModel(Base):
    """Recorded source -> disposal Transfer events.

    ``(tx_hash, log_index)`` is unique; the unique constraint is what makes
    recording idempotent.
    """

    __tablename__ = "burn_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)

    token_address: Mapped[str] = mapped_column(String(42), nullable=False)
    from_address: Mapped[str] = mapped_column(String(42), nullable=False)
    to_address: Mapped[str] = mapped_column(String(42), nullable=False)

    # uint256 as decimal text; exceeds every native integer column type.
    amount_raw: Mapped[str] = mapped_column(Text, nullable=False)
    # Unbounded NUMERIC keeps the scaled amount exact.
    amount_human: Mapped[Decimal] = mapped_column(Numeric(), nullable=False)

    block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    origin: Mapped[str] = mapped_column(String(16), nullable=False, default="scanner")
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("tx_hash", "log_index", name="uq_burn_events_tx_log"),
        Index("idx_burn_events_token_block", "token_address", "block_number"),
        Index("idx_burn_events_timestamp", "timestamp"),
    )


class ScanCheckpointModel(Base):
    """Highest block fully processed by the scanner, per token."""

    __tablename__ = "scan_checkpoints"

    token_address: Mapped[str] = mapped_column(String(42), primary_key=True)
    last_block: Mapped[int] = mapped_column(BigInteger, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
