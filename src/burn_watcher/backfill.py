"""Record burns from known transaction hashes.

Used for operator repair (``backfill-tx``) and by the trigger engine to
record its own included transfers. Both read the burn straight out of the
transaction receipt, so recording never depends on re-sending anything.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from burn_watcher.chain.client import ChainClient, ChainClientError
from burn_watcher.chain.transfers import TransferDecodeError, decode_transfer_log, is_transfer_log, to_int
from burn_watcher.models import BurnEvent, EventOrigin, RawTransferEvent, RecordOutcome, WatchedPair
from burn_watcher.storage.database import DatabaseManager
from burn_watcher.storage.repos import BurnEventDTO, BurnEventRepository

logger = logging.getLogger(__name__)


def burns_in_receipt(receipt: Mapping[str, Any], pair: WatchedPair) -> list[RawTransferEvent]:
    """Extract the watched pair's burn Transfer logs from a receipt."""
    receipt_block = receipt.get("blockNumber")
    burns: list[RawTransferEvent] = []
    for log in receipt.get("logs") or []:
        if log.get("removed") or not is_transfer_log(log, pair.token_address):
            continue
        try:
            raw = decode_transfer_log(log)
        except TransferDecodeError as e:
            logger.debug("Skipping undecodable receipt log: %s", e)
            continue
        if not pair.is_burn(raw):
            continue
        if raw.block_number is None and receipt_block is not None:
            raw = dataclasses.replace(raw, block_number=to_int(receipt_block))
        burns.append(raw)
    return burns


class TransactionBackfiller:
    """Record burns found in the receipts of given transactions."""

    def __init__(self, *, client: ChainClient, db: DatabaseManager, pair: WatchedPair) -> None:
        self._client = client
        self._db = db
        self._pair = pair

    async def backfill(self, tx_hashes: Sequence[str]) -> dict[str, RecordOutcome | None]:
        """Record the burn of each transaction hash.

        A hash without a receipt, without a matching log, or whose recording
        failed maps to ``None`` and does not affect the others.
        """
        results: dict[str, RecordOutcome | None] = {}
        for tx_hash in tx_hashes:
            tx_hash = tx_hash.strip().lower()
            if not tx_hash:
                continue
            try:
                receipt = await self._client.get_transaction_receipt(tx_hash)
            except ChainClientError as e:
                logger.warning("Could not fetch receipt for %s: %s", tx_hash, e)
                results[tx_hash] = None
                continue

            if receipt is None:
                logger.warning("No receipt for %s (unknown or not mined)", tx_hash)
                results[tx_hash] = None
                continue

            try:
                results[tx_hash] = await self.record_from_receipt(receipt, origin=EventOrigin.BACKFILL)
            except (ChainClientError, SQLAlchemyError) as e:
                logger.error("Could not record %s: %s", tx_hash, e)
                results[tx_hash] = None
        return results

    async def record_from_receipt(
        self,
        receipt: Mapping[str, Any],
        *,
        origin: EventOrigin,
    ) -> RecordOutcome | None:
        """Record every burn log in ``receipt``.

        Returns:
            ``INSERTED`` if at least one row was written, ``ALREADY_PRESENT``
            if all were known, ``None`` if the receipt holds no burn.

        Raises:
            ChainClientError: If the block timestamp cannot be read.
            SQLAlchemyError: On store failure.
        """
        tx_hash = receipt.get("transactionHash")
        status = receipt.get("status")
        if status is not None and to_int(status) != 1:
            logger.warning("Transaction %s reverted; nothing to record", tx_hash)
            return None

        burns = burns_in_receipt(receipt, self._pair)
        if not burns:
            logger.warning(
                "Transaction %s has no %s transfer %s -> %s",
                tx_hash,
                self._pair.token_address,
                self._pair.source_address,
                self._pair.disposal_address,
            )
            return None

        timestamps: dict[int, datetime] = {}
        for block in {b.block_number for b in burns if b.block_number is not None}:
            timestamps[block] = datetime.fromtimestamp(await self._client.get_block_timestamp(block), tz=UTC)

        outcomes: list[RecordOutcome] = []
        async with self._db.get_async_session() as session:
            sink = BurnEventRepository(session)
            for raw in burns:
                if raw.block_number is None:
                    logger.warning("Burn log in %s has no block number; skipping", raw.tx_hash)
                    continue
                event = BurnEvent.from_transfer(
                    raw,
                    decimals=self._pair.decimals,
                    timestamp=timestamps[raw.block_number],
                    origin=origin,
                )
                outcomes.append(await sink.record_if_absent(BurnEventDTO.from_event(event)))

        if not outcomes:
            return None
        if RecordOutcome.INSERTED in outcomes:
            return RecordOutcome.INSERTED
        return RecordOutcome.ALREADY_PRESENT
