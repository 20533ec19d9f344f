"""Reactive burn engine.

Inbound transfers to the reward recipient wake a single worker. After the
post-event delay the worker re-reads the recipient's live balance and, if
it meets the threshold, transfers the whole balance to the disposal
address, waits for inclusion and records the resulting burn.

Acting is balance-based: notifications that arrive while a cycle is
pending or running collapse into one follow-up cycle, and each cycle moves
whatever balance exists at that moment. Cycles never overlap.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from burn_watcher.backfill import TransactionBackfiller
from burn_watcher.chain.client import (
    ChainClient,
    ChainClientError,
    InclusionResult,
    InclusionTimeoutError,
    PendingAction,
    TransactionRejectedError,
)
from burn_watcher.chain.transfers import TransferDecodeError, decode_transfer_log
from burn_watcher.models import EventOrigin, RawTransferEvent, RecordOutcome, WatchedPair
from burn_watcher.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

DEFAULT_INCLUSION_TIMEOUT_SECONDS = 180.0


class TriggerState(Enum):
    IDLE = "idle"
    QUALIFYING = "qualifying"
    ACTING = "acting"
    CONFIRMING = "confirming"
    RECORDING = "recording"


class CycleOutcome(Enum):
    SKIPPED = "skipped"
    BELOW_MINIMUM = "below_minimum"
    RECORDED = "recorded"
    NOT_RECORDED = "not_recorded"
    SUBMIT_FAILED = "submit_failed"
    REJECTED = "rejected"
    UNRESOLVED = "unresolved"


class TriggerError(Exception):
    """Base exception for trigger engine errors."""


class ActionAmbiguousError(TriggerError):
    """A submitted burn whose on-chain outcome is unknown.

    Such an action is never resubmitted automatically; it blocks new
    actions until :meth:`TriggerEngine.reconcile` resolves it.
    """

    def __init__(self, action: PendingAction, reason: str) -> None:
        super().__init__(f"Burn {action.tx_hash} unresolved: {reason}")
        self.action = action
        self.reason = reason


@dataclass
class TriggerStats:
    notifications: int = 0
    cycles: int = 0
    below_minimum: int = 0
    actions_submitted: int = 0
    actions_included: int = 0
    actions_rejected: int = 0
    actions_unresolved: int = 0
    submit_failures: int = 0
    events_recorded: int = 0
    last_cycle_at: float | None = None


class TriggerEngine:
    """Serialized IDLE -> QUALIFYING -> ACTING -> CONFIRMING -> RECORDING loop."""

    def __init__(
        self,
        *,
        client: ChainClient,
        db: DatabaseManager,
        pair: WatchedPair,
        inclusion_timeout_seconds: float = DEFAULT_INCLUSION_TIMEOUT_SECONDS,
        backfiller: TransactionBackfiller | None = None,
    ) -> None:
        self._client = client
        self._db = db
        self._pair = pair
        self._inclusion_timeout = inclusion_timeout_seconds
        self._backfiller = backfiller or TransactionBackfiller(client=client, db=db, pair=pair)

        self._state = TriggerState.IDLE
        self._stats = TriggerStats()
        self._unresolved: list[ActionAmbiguousError] = []

        self._pending = asyncio.Event()
        self._cycle_lock = asyncio.Lock()
        self._stopping = False
        self._running = False

    @property
    def state(self) -> TriggerState:
        return self._state

    @property
    def stats(self) -> TriggerStats:
        return self._stats

    @property
    def unresolved(self) -> list[ActionAmbiguousError]:
        return list(self._unresolved)

    def _set_state(self, new_state: TriggerState) -> None:
        if new_state != self._state:
            logger.debug("Trigger state: %s -> %s", self._state.value, new_state.value)
            self._state = new_state

    async def notify(self, event: RawTransferEvent) -> None:
        """Queue a cycle for an inbound transfer to the recipient."""
        if not self._pair.is_inbound(event):
            logger.debug("Ignoring transfer not addressed to the recipient: tx=%s", event.tx_hash)
            return
        self._stats.notifications += 1
        logger.info(
            "Inbound transfer tx=%s amount=%s",
            event.tx_hash,
            self._pair.to_human(event.amount_raw),
        )
        if self._stopping:
            logger.warning("Trigger stopping; not queuing cycle for tx=%s", event.tx_hash)
            return
        self._pending.set()

    async def on_log(self, log: dict[str, Any]) -> None:
        """Subscription handler: decode a raw log and notify."""
        try:
            event = decode_transfer_log(log)
        except TransferDecodeError as e:
            logger.debug("Ignoring undecodable subscription log: %s", e)
            return
        await self.notify(event)

    async def sweep(self) -> CycleOutcome:
        """Run one cycle immediately, without the post-event delay."""
        logger.info("Startup sweep for %s", self._pair.source_address)
        return await self._run_cycle(delay=False)

    async def run(self) -> None:
        """Process queued cycles until :meth:`stop` is called."""
        if self._running:
            raise RuntimeError("Trigger engine already running")
        self._running = True
        try:
            while not self._stopping:
                await self._pending.wait()
                if self._stopping:
                    break
                self._pending.clear()
                try:
                    await self._run_cycle(delay=True)
                except Exception:
                    logger.exception("Trigger cycle failed")
                    self._set_state(TriggerState.IDLE)
        finally:
            self._running = False
        logger.info("Trigger engine stopped")

    async def stop(self) -> None:
        """Stop after the in-flight cycle, if any, completes."""
        self._stopping = True
        self._pending.set()
        async with self._cycle_lock:
            pass

    async def reconcile(self) -> None:
        """Resolve previously unresolved actions from on-chain state."""
        still_unresolved: list[ActionAmbiguousError] = []
        for item in self._unresolved:
            action = item.action
            try:
                receipt = await self._client.get_transaction_receipt(action.tx_hash)
            except ChainClientError as e:
                logger.warning("Reconcile of %s deferred: %s", action.tx_hash, e)
                still_unresolved.append(item)
                continue

            if receipt is not None:
                if int(receipt.get("status", 1)) == 1:
                    logger.info("Unresolved burn %s was included; recording", action.tx_hash)
                    self._stats.actions_included += 1
                    await self._record(receipt)
                else:
                    logger.warning("Unresolved burn %s was reverted", action.tx_hash)
                    self._stats.actions_rejected += 1
                continue

            try:
                mined_nonce = await self._client.get_confirmed_nonce()
            except ChainClientError as e:
                logger.warning("Reconcile of %s deferred: %s", action.tx_hash, e)
                still_unresolved.append(item)
                continue

            if mined_nonce > action.nonce:
                # Nonce consumed by a different transaction; this one can never be mined.
                logger.warning("Unresolved burn %s was dropped or replaced", action.tx_hash)
                continue

            still_unresolved.append(item)

        self._unresolved = still_unresolved

    async def _run_cycle(self, *, delay: bool) -> CycleOutcome:
        async with self._cycle_lock:
            self._stats.cycles += 1
            self._stats.last_cycle_at = time.time()
            try:
                return await self._cycle(delay=delay)
            finally:
                self._set_state(TriggerState.IDLE)

    async def _cycle(self, *, delay: bool) -> CycleOutcome:
        if self._unresolved:
            await self.reconcile()
            if self._unresolved:
                logger.error(
                    "Not acting: %d burn(s) still unresolved (%s)",
                    len(self._unresolved),
                    ", ".join(u.action.tx_hash for u in self._unresolved),
                )
                return CycleOutcome.SKIPPED

        if self._stopping:
            # A cycle queued behind the in-flight one must not start a new action.
            logger.info("Stop requested; not starting a new burn")
            return CycleOutcome.SKIPPED

        self._set_state(TriggerState.QUALIFYING)
        if delay and self._pair.post_event_delay_seconds > 0:
            await asyncio.sleep(self._pair.post_event_delay_seconds)
            if self._stopping:
                logger.info("Stop requested during settle delay; not acting")
                return CycleOutcome.SKIPPED

        balance = await self._client.get_token_balance(self._pair.source_address, self._pair.token_address)
        human = self._pair.to_human(balance)
        if balance == 0 or human < self._pair.min_amount_to_act:
            self._stats.below_minimum += 1
            logger.info("Balance %s below minimum %s; not acting", human, self._pair.min_amount_to_act)
            return CycleOutcome.BELOW_MINIMUM

        self._set_state(TriggerState.ACTING)
        try:
            action = await self._client.submit_transfer(
                self._pair.token_address,
                self._pair.disposal_address,
                balance,
            )
        except ChainClientError as e:
            self._stats.submit_failures += 1
            logger.error("Burn submission of %s failed: %s", human, e)
            return CycleOutcome.SUBMIT_FAILED
        self._stats.actions_submitted += 1
        logger.info("Submitted burn tx=%s amount=%s", action.tx_hash, human)

        self._set_state(TriggerState.CONFIRMING)
        try:
            result = await self._client.wait_for_inclusion(action, timeout=self._inclusion_timeout)
        except TransactionRejectedError as e:
            self._stats.actions_rejected += 1
            logger.error("Burn %s rejected: %s", action.tx_hash, e)
            return CycleOutcome.REJECTED
        except InclusionTimeoutError as e:
            ambiguous = ActionAmbiguousError(action, str(e))
            self._unresolved.append(ambiguous)
            self._stats.actions_unresolved += 1
            logger.error("%s; manual reconciliation required", ambiguous)
            return CycleOutcome.UNRESOLVED
        self._stats.actions_included += 1

        self._set_state(TriggerState.RECORDING)
        return await self._record_inclusion(result)

    async def _record_inclusion(self, result: InclusionResult) -> CycleOutcome:
        receipt = {
            "transactionHash": result.tx_hash,
            "status": 1,
            "blockNumber": result.block_number,
            "logs": list(result.logs),
        }
        return await self._record(receipt)

    async def _record(self, receipt: dict[str, Any]) -> CycleOutcome:
        tx_hash = receipt.get("transactionHash")
        try:
            outcome = await self._backfiller.record_from_receipt(receipt, origin=EventOrigin.TRIGGER)
        except (ChainClientError, SQLAlchemyError):
            logger.exception("Burn %s is on chain but was not recorded; run backfill-tx", tx_hash)
            return CycleOutcome.NOT_RECORDED
        if outcome is None:
            logger.error("Burn %s is on chain but its Transfer log was not found", tx_hash)
            return CycleOutcome.NOT_RECORDED
        if outcome is RecordOutcome.INSERTED:
            self._stats.events_recorded += 1
        return CycleOutcome.RECORDED
