"""Domain models for the burn watcher.

These are plain value objects shared by the chain, storage, scanner and
trigger layers. Raw token amounts are Python ints (uint256 fits) and
human-scaled amounts are exact ``Decimal`` values; binary floats never
appear on the amount path.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum


def scale_amount(raw: int, decimals: int) -> Decimal:
    """Scale a raw on-chain amount into human units.

    ``Decimal.scaleb`` only shifts the exponent, so the result is exact
    for any raw value and decimal count.

    Example:
        >>> scale_amount(123000000000000000000, 18) == Decimal("123")
        True
        >>> scale_amount(1, 18)
        Decimal('1E-18')
    """
    if raw < 0:
        raise ValueError("raw amount must be >= 0")
    if decimals < 0:
        raise ValueError("decimals must be >= 0")
    return Decimal(raw).scaleb(-decimals)


class RecordOutcome(str, Enum):
    """Result of an idempotent insert."""

    INSERTED = "inserted"
    ALREADY_PRESENT = "already_present"


class EventOrigin(str, Enum):
    """Which path recorded a burn event."""

    SCANNER = "scanner"
    TRIGGER = "trigger"
    BACKFILL = "backfill"


@dataclass(frozen=True)
class WatchedPair:
    """Immutable per-instance watch configuration.

    Transfers ``source_address -> disposal_address`` of ``token_address``
    are burns. ``source_address`` is also the reward recipient whose
    inbound transfers the trigger engine forwards to the disposal address.
    """

    token_address: str
    source_address: str
    disposal_address: str
    decimals: int = 18
    min_amount_to_act: Decimal = Decimal("0")
    post_event_delay_seconds: float = 3.0

    def __post_init__(self) -> None:
        # Addresses are compared lowercase everywhere downstream.
        object.__setattr__(self, "token_address", self.token_address.lower())
        object.__setattr__(self, "source_address", self.source_address.lower())
        object.__setattr__(self, "disposal_address", self.disposal_address.lower())
        if self.decimals < 0:
            raise ValueError("decimals must be >= 0")
        if self.post_event_delay_seconds < 0:
            raise ValueError("post_event_delay_seconds must be >= 0")

    def is_burn(self, event: RawTransferEvent) -> bool:
        """True if ``event`` is a source -> disposal transfer of the watched token."""
        return (
            event.token_address.lower() == self.token_address
            and event.from_address.lower() == self.source_address
            and event.to_address.lower() == self.disposal_address
        )

    def is_inbound(self, event: RawTransferEvent) -> bool:
        """True if ``event`` credits the reward recipient."""
        return (
            event.token_address.lower() == self.token_address
            and event.to_address.lower() == self.source_address
        )

    def to_human(self, raw: int) -> Decimal:
        return scale_amount(raw, self.decimals)


@dataclass(frozen=True)
class RawTransferEvent:
    """A decoded ERC-20 ``Transfer`` log as returned by the provider."""

    token_address: str
    from_address: str
    to_address: str
    amount_raw: int
    tx_hash: str
    log_index: int
    block_number: int | None


@dataclass(frozen=True)
class BurnEvent:
    """A recorded transfer-of-interest.

    ``(tx_hash, log_index)`` is the natural key; ``log_index`` is 0 when
    the provider does not expose sub-transaction ordering.
    """

    tx_hash: str
    log_index: int
    token_address: str
    from_address: str
    to_address: str
    amount_raw: int
    amount_human: Decimal
    timestamp: datetime
    block_number: int | None = None
    origin: EventOrigin = EventOrigin.SCANNER

    def __post_init__(self) -> None:
        if self.log_index < 0:
            raise ValueError("log_index must be >= 0")
        if self.amount_raw < 0:
            raise ValueError("amount_raw must be >= 0")

    @classmethod
    def from_transfer(
        cls,
        event: RawTransferEvent,
        *,
        decimals: int,
        timestamp: datetime,
        origin: EventOrigin,
    ) -> BurnEvent:
        return cls(
            tx_hash=event.tx_hash.lower(),
            log_index=event.log_index,
            token_address=event.token_address.lower(),
            from_address=event.from_address.lower(),
            to_address=event.to_address.lower(),
            amount_raw=event.amount_raw,
            amount_human=scale_amount(event.amount_raw, decimals),
            timestamp=timestamp,
            block_number=event.block_number,
            origin=origin,
        )
