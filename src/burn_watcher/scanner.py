"""Checkpointed historical/steady-state scanner.

The scanner walks the chain from its checkpoint towards the head in
batches. For each batch it fetches the watched pair's Transfer events,
records them through the idempotent sink, and only then advances the
checkpoint, all in one transaction. A crash mid-batch therefore replays
the batch on restart and the sink absorbs the duplicates.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError

from burn_watcher.chain.client import ChainClient, ChainClientError
from burn_watcher.chain.fetcher import RangeFetcher
from burn_watcher.models import BurnEvent, EventOrigin, RecordOutcome, WatchedPair
from burn_watcher.storage.database import DatabaseManager
from burn_watcher.storage.repos import BurnEventDTO, BurnEventRepository, CheckpointRepository

logger = logging.getLogger(__name__)

DEFAULT_BATCH_BLOCKS = 500
DEFAULT_POLL_INTERVAL_SECONDS = 12.0


class ScannerState(Enum):
    CATCHUP = "catchup"
    STEADY = "steady"


class ScannerError(Exception):
    """Raised when a one-shot scan cannot reach the head."""


@dataclass
class ScanStats:
    batches_processed: int = 0
    batches_failed: int = 0
    events_seen: int = 0
    events_recorded: int = 0
    duplicates_absorbed: int = 0
    amount_burned_raw: int = 0
    amount_burned_human: Decimal = Decimal("0")
    last_block: int | None = None


class CursorScanner:
    """Advance a per-token cursor from the checkpoint to the chain head."""

    def __init__(
        self,
        *,
        client: ChainClient,
        db: DatabaseManager,
        pair: WatchedPair,
        fetcher: RangeFetcher | None = None,
        batch_blocks: int = DEFAULT_BATCH_BLOCKS,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        start_block: int | None = None,
    ) -> None:
        if batch_blocks < 1:
            raise ValueError("batch_blocks must be >= 1")
        if start_block is not None and start_block < 0:
            raise ValueError("start_block must be >= 0")
        self._client = client
        self._db = db
        self._pair = pair
        self._fetcher = fetcher or RangeFetcher(
            client,
            from_address=pair.source_address,
            to_address=pair.disposal_address,
        )
        self._batch_blocks = batch_blocks
        self._poll_interval = poll_interval_seconds
        self._start_block = start_block

        self._cursor: int | None = None
        self._state = ScannerState.CATCHUP
        self._stats = ScanStats()
        self._running = False
        self._stop_event = asyncio.Event()
        self._wake_event = asyncio.Event()

    @property
    def state(self) -> ScannerState:
        return self._state

    @property
    def stats(self) -> ScanStats:
        return self._stats

    @property
    def cursor(self) -> int | None:
        return self._cursor

    def _set_state(self, new_state: ScannerState) -> None:
        if new_state != self._state:
            logger.info("Scanner state: %s -> %s (cursor=%s)", self._state.value, new_state.value, self._cursor)
            self._state = new_state

    async def resolve_origin(self) -> int:
        """Return the last block considered processed.

        Order of precedence: stored checkpoint, then the configured start
        block, then the current head. The scan begins at the block after
        the returned cursor.
        """
        async with self._db.get_async_session() as session:
            checkpoint = await CheckpointRepository(session).get(self._pair.token_address)
        if checkpoint is not None:
            logger.info("Resuming %s from checkpoint %d", self._pair.token_address, checkpoint)
            return checkpoint

        if self._start_block is not None:
            logger.info("No checkpoint; starting at configured block %d", self._start_block)
            return self._start_block - 1

        head = await self._client.get_head_height()
        logger.info("No checkpoint or start block; starting at head %d", head)
        return head - 1

    async def run_once(self) -> int | None:
        """Process at most one batch.

        Returns:
            The processed upper bound, or ``None`` if already at the head.

        Raises:
            ChainClientError: Provider failure; the checkpoint is not advanced.
            SQLAlchemyError: Store failure; the checkpoint is not advanced.
        """
        if self._cursor is None:
            self._cursor = await self.resolve_origin()

        head = await self._client.get_head_height()
        if self._cursor >= head:
            self._set_state(ScannerState.STEADY)
            return None

        if head - self._cursor > self._batch_blocks:
            self._set_state(ScannerState.CATCHUP)

        start = self._cursor + 1
        end = min(self._cursor + self._batch_blocks, head)
        await self._process_range(start, end)
        self._cursor = end
        if end >= head:
            self._set_state(ScannerState.STEADY)
        return end

    async def _process_range(self, start: int, end: int) -> None:
        events = await self._fetcher.fetch(self._pair.token_address, start, end)
        self._stats.events_seen += len(events)
        burns = [e for e in events if self._pair.is_burn(e)]
        if len(burns) != len(events):
            logger.debug("Discarded %d non-matching transfers in %d-%d", len(events) - len(burns), start, end)

        blocks = {e.block_number if e.block_number is not None else end for e in burns}
        timestamps = await self._block_timestamps(blocks)

        # Events and checkpoint commit together.
        async with self._db.get_async_session() as session:
            sink = BurnEventRepository(session)
            for raw in burns:
                block = raw.block_number if raw.block_number is not None else end
                event = BurnEvent.from_transfer(
                    raw,
                    decimals=self._pair.decimals,
                    timestamp=timestamps[block],
                    origin=EventOrigin.SCANNER,
                )
                outcome = await sink.record_if_absent(BurnEventDTO.from_event(event))
                if outcome is RecordOutcome.INSERTED:
                    self._stats.events_recorded += 1
                    self._stats.amount_burned_raw += event.amount_raw
                    self._stats.amount_burned_human += event.amount_human
                else:
                    self._stats.duplicates_absorbed += 1
            await CheckpointRepository(session).advance(self._pair.token_address, end)

        self._stats.batches_processed += 1
        self._stats.last_block = end
        logger.info("Scanned %d-%d: %d burn(s)", start, end, len(burns))

    async def _block_timestamps(self, blocks: set[int]) -> dict[int, datetime]:
        timestamps: dict[int, datetime] = {}
        for block in sorted(blocks):
            ts = await self._client.get_block_timestamp(block)
            timestamps[block] = datetime.fromtimestamp(ts, tz=UTC)
        return timestamps

    def wake(self) -> None:
        """Cut the current poll sleep short."""
        self._wake_event.set()

    async def _sleep(self) -> None:
        self._wake_event.clear()
        waiters = [
            asyncio.ensure_future(self._stop_event.wait()),
            asyncio.ensure_future(self._wake_event.wait()),
        ]
        try:
            await asyncio.wait(waiters, timeout=self._poll_interval, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await waiter

    async def run(self, *, until_caught_up: bool = False) -> ScanStats:
        """Catch up, then poll until :meth:`stop` is called.

        Args:
            until_caught_up: Return as soon as the cursor reaches the head.

        Returns:
            Accumulated stats for this run.

        Raises:
            ScannerError: A one-shot run hit a failed batch.
        """
        if self._running:
            raise RuntimeError("Scanner already running")
        self._running = True
        try:
            while not self._stop_event.is_set():
                try:
                    processed = await self.run_once()
                except ChainClientError as e:
                    self._stats.batches_failed += 1
                    if until_caught_up:
                        raise ScannerError(f"Scan stopped at cursor {self._cursor}: {e}") from e
                    logger.warning("Scan batch after %s abandoned (provider): %s", self._cursor, e)
                    await self._sleep()
                    continue
                except SQLAlchemyError as e:
                    self._stats.batches_failed += 1
                    if until_caught_up:
                        raise ScannerError(f"Scan stopped at cursor {self._cursor}: {e}") from e
                    logger.exception("Scan batch after %s abandoned (store)", self._cursor)
                    await self._sleep()
                    continue

                if processed is None:
                    if until_caught_up:
                        break
                    await self._sleep()
        finally:
            self._running = False
            self._log_summary()
        return self._stats

    async def stop(self) -> None:
        self._stop_event.set()

    def _log_summary(self) -> None:
        s = self._stats
        logger.info(
            "Scan summary: batches=%d failed=%d seen=%d recorded=%d duplicates=%d burned=%s cursor=%s",
            s.batches_processed,
            s.batches_failed,
            s.events_seen,
            s.events_recorded,
            s.duplicates_absorbed,
            s.amount_burned_human,
            self._cursor,
        )
