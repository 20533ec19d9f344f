"""Tests for domain models."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

import pytest

from burn_watcher.models import (
    BurnEvent,
    EventOrigin,
    RawTransferEvent,
    WatchedPair,
    scale_amount,
)

TOKEN = "0x3C499c542cEF5E3811e1192ce70d8cC03d5c3359"
RECIPIENT = "0x1234567890ABCDEF1234567890abcdef12345678"
DEAD = "0x000000000000000000000000000000000000dEaD"


def _transfer(from_address: str, to_address: str, *, token: str = TOKEN, amount: int = 5) -> RawTransferEvent:
    return RawTransferEvent(
        token_address=token,
        from_address=from_address,
        to_address=to_address,
        amount_raw=amount,
        tx_hash="0x" + "ab" * 32,
        log_index=3,
        block_number=42,
    )


class TestScaleAmount:
    def test_whole_tokens(self) -> None:
        assert scale_amount(123_000_000_000_000_000_000, 18) == Decimal("123")

    def test_smallest_unit_is_exact(self) -> None:
        result = scale_amount(1, 18)
        assert result == Decimal("0.000000000000000001")
        assert str(result) == "1E-18"

    def test_uint256_max_has_no_rounding(self) -> None:
        raw = 2**256 - 1
        result = scale_amount(raw, 18)
        assert result.scaleb(18) == Decimal(raw)

    def test_zero_decimals(self) -> None:
        assert scale_amount(7, 0) == Decimal(7)

    def test_negative_raw_rejected(self) -> None:
        with pytest.raises(ValueError):
            scale_amount(-1, 18)


class TestWatchedPair:
    def test_addresses_are_lowercased(self) -> None:
        pair = WatchedPair(token_address=TOKEN, source_address=RECIPIENT, disposal_address=DEAD)
        assert pair.token_address == TOKEN.lower()
        assert pair.source_address == RECIPIENT.lower()
        assert pair.disposal_address == DEAD.lower()

    def test_is_burn_matches_case_insensitively(self) -> None:
        pair = WatchedPair(token_address=TOKEN, source_address=RECIPIENT, disposal_address=DEAD)
        assert pair.is_burn(_transfer(RECIPIENT.lower(), DEAD.upper().replace("0X", "0x")))

    def test_is_burn_rejects_other_recipient(self) -> None:
        pair = WatchedPair(token_address=TOKEN, source_address=RECIPIENT, disposal_address=DEAD)
        assert not pair.is_burn(_transfer(RECIPIENT, "0x" + "11" * 20))

    def test_is_burn_rejects_other_sender(self) -> None:
        pair = WatchedPair(token_address=TOKEN, source_address=RECIPIENT, disposal_address=DEAD)
        assert not pair.is_burn(_transfer("0x" + "22" * 20, DEAD))

    def test_is_burn_rejects_other_token(self) -> None:
        pair = WatchedPair(token_address=TOKEN, source_address=RECIPIENT, disposal_address=DEAD)
        assert not pair.is_burn(_transfer(RECIPIENT, DEAD, token="0x" + "33" * 20))

    def test_is_inbound(self) -> None:
        pair = WatchedPair(token_address=TOKEN, source_address=RECIPIENT, disposal_address=DEAD)
        assert pair.is_inbound(_transfer("0x" + "44" * 20, RECIPIENT))
        assert not pair.is_inbound(_transfer(RECIPIENT, DEAD))

    def test_negative_delay_rejected(self) -> None:
        with pytest.raises(ValueError):
            WatchedPair(
                token_address=TOKEN,
                source_address=RECIPIENT,
                disposal_address=DEAD,
                post_event_delay_seconds=-1,
            )


class TestBurnEvent:
    def test_from_transfer(self) -> None:
        ts = datetime(2026, 1, 1, tzinfo=UTC)
        event = BurnEvent.from_transfer(
            _transfer(RECIPIENT, DEAD, amount=2_500_000_000_000_000_000),
            decimals=18,
            timestamp=ts,
            origin=EventOrigin.TRIGGER,
        )
        assert event.amount_human == Decimal("2.5")
        assert event.from_address == RECIPIENT.lower()
        assert event.to_address == DEAD.lower()
        assert event.log_index == 3
        assert event.block_number == 42
        assert event.origin is EventOrigin.TRIGGER

    def test_negative_log_index_rejected(self) -> None:
        with pytest.raises(ValueError):
            BurnEvent(
                tx_hash="0x" + "00" * 32,
                log_index=-1,
                token_address=TOKEN,
                from_address=RECIPIENT,
                to_address=DEAD,
                amount_raw=1,
                amount_human=Decimal("1E-18"),
                timestamp=datetime.now(UTC),
            )
