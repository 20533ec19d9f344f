"""Service orchestrator for the burn watcher.

This module provides the WatcherService class that wires the chain
client, storage, scanner, trigger engine and live subscription together
and owns their lifecycle.

Modes:
    ``watch``: live subscription feeding the trigger engine, plus the
    scanner as polling reconciliation for subscription outages.
    ``scan``: scanner only (continuous, or a single catch-up).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from redis.asyncio import Redis

from burn_watcher.backfill import TransactionBackfiller
from burn_watcher.chain.client import ChainClient, ChainClientError
from burn_watcher.chain.fetcher import RangeFetcher
from burn_watcher.chain.subscription import ConnectionState, ConnectionSupervisor
from burn_watcher.chain.transfers import transfer_filter
from burn_watcher.config import Settings, get_settings
from burn_watcher.models import RecordOutcome, WatchedPair
from burn_watcher.retry import RetryPolicy
from burn_watcher.scanner import CursorScanner
from burn_watcher.storage.database import DatabaseManager
from burn_watcher.trigger import TriggerEngine

logger = logging.getLogger(__name__)

Mode = Literal["watch", "scan"]


class ServiceState(str, Enum):
    """Service lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class ServiceStats:
    """Statistics for the service."""

    started_at: datetime | None = None
    subscription_reconnects: int = 0
    decimals_mismatch: bool = False
    last_error: str | None = None


class WatcherService:
    """Main orchestrator for the burn watcher.

    Example:
        ```python
        from burn_watcher.config import get_settings
        from burn_watcher.service import WatcherService

        service = WatcherService(get_settings(), mode="watch")
        await service.run()  # until request_stop() or a fatal component error
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        mode: Mode = "watch",
        once: bool = False,
        client: ChainClient | None = None,
        db: DatabaseManager | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            mode: ``watch`` or ``scan``.
            once: In ``scan`` mode, stop once the scanner reaches the head.
            client: Pre-built chain client (tests); built from settings otherwise.
            db: Pre-built database manager (tests); built from settings otherwise.
        """
        self._settings = settings or get_settings()
        self._mode = mode
        self._once = once

        self._state = ServiceState.STOPPED
        self._stats = ServiceStats()

        # Components (initialized in start())
        self._redis: Redis | None = None
        self._client = client
        self._owns_client = client is None
        self._db_manager = db
        self._owns_db = db is None
        self._pair: WatchedPair | None = None
        self._scanner: CursorScanner | None = None
        self._trigger: TriggerEngine | None = None
        self._supervisor: ConnectionSupervisor | None = None

        self._stop_event: asyncio.Event | None = None
        self._tasks: dict[str, asyncio.Task[Any]] = {}

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def stats(self) -> ServiceStats:
        return self._stats

    @property
    def scanner(self) -> CursorScanner | None:
        return self._scanner

    @property
    def trigger(self) -> TriggerEngine | None:
        return self._trigger

    @property
    def is_running(self) -> bool:
        return self._state == ServiceState.RUNNING

    async def start(self) -> None:
        """Start the service.

        Raises:
            RuntimeError: If the service is not stopped.
            Exception: If any component fails to initialize.
        """
        if self._state != ServiceState.STOPPED:
            raise RuntimeError(f"Cannot start service in state {self._state}")

        self._state = ServiceState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting burn watcher (mode=%s)...", self._mode)

        try:
            await self._initialize_components()
            await self._check_decimals()
            self._start_background_services()
            self._stats.started_at = datetime.now(UTC)
            self._state = ServiceState.RUNNING
            logger.info("Burn watcher started")
        except Exception as e:
            self._state = ServiceState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start burn watcher: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop gracefully.

        An in-flight burn cycle is allowed to finish before resources are
        released.
        """
        if self._state == ServiceState.STOPPED:
            return

        self._state = ServiceState.STOPPING
        logger.info("Stopping burn watcher...")

        if self._stop_event:
            self._stop_event.set()

        await self._stop_background_services()
        await self._cleanup()

        self._state = ServiceState.STOPPED
        logger.info("Burn watcher stopped")

    def request_stop(self) -> None:
        """Signal-handler-safe stop request; :meth:`run` performs the shutdown."""
        if self._stop_event:
            self._stop_event.set()

    async def _initialize_components(self) -> None:
        settings = self._settings
        settings.validate_requirements(command=self._mode)
        self._pair = settings.watched_pair()

        if settings.redis.url:
            logger.debug("Initializing Redis connection...")
            self._redis = Redis.from_url(settings.redis.url)

        if self._db_manager is None:
            self._db_manager = DatabaseManager(settings.database.url)

        if self._client is None:
            self._client = self._build_client(with_signer=self._mode == "watch")

        self._scanner = CursorScanner(
            client=self._client,
            db=self._db_manager,
            pair=self._pair,
            fetcher=RangeFetcher(
                self._client,
                max_range_blocks=settings.scan.max_range_blocks,
                from_address=self._pair.source_address,
                to_address=self._pair.disposal_address,
            ),
            batch_blocks=settings.scan.batch_blocks,
            poll_interval_seconds=settings.scan.poll_interval_seconds,
            start_block=settings.scan.start_block,
        )

        if self._mode == "watch":
            signer = self._client.signer_address
            if signer != self._pair.source_address:
                raise ValueError(f"Signer {signer} cannot move tokens held by {self._pair.source_address}")
            self._trigger = TriggerEngine(
                client=self._client,
                db=self._db_manager,
                pair=self._pair,
                inclusion_timeout_seconds=settings.trigger.inclusion_timeout_seconds,
            )
            self._supervisor = ConnectionSupervisor(
                url=str(settings.chain.wss_url),
                log_filter=transfer_filter(self._pair.token_address, to_address=self._pair.source_address),
                on_log=self._trigger.on_log,
                on_state_change=self._on_subscription_state,
                probe_interval=settings.subscription.probe_interval_seconds,
                probe_timeout=settings.subscription.probe_timeout_seconds,
                max_reconnect_delay=settings.subscription.max_reconnect_delay_seconds,
            )

    def _build_client(self, *, with_signer: bool) -> ChainClient:
        settings = self._settings
        if not settings.chain.http_url:
            raise ValueError("RPC_HTTP is required")
        private_key = settings.trigger.private_key if with_signer else None
        return ChainClient(
            settings.chain.http_url,
            fallback_rpc_url=settings.chain.fallback_http_url,
            private_key=private_key.get_secret_value() if private_key else None,
            redis=self._redis,
            retry_policy=RetryPolicy(
                base_delay=settings.retry.base_delay_seconds,
                max_delay=settings.retry.max_delay_seconds,
                max_attempts=settings.retry.max_attempts,
            ),
            max_requests_per_second=settings.chain.max_requests_per_second,
        )

    async def _check_decimals(self) -> None:
        """Warn when the contract's decimals differ from TOKEN_DECIMALS."""
        if self._client is None or self._pair is None:
            return
        try:
            onchain = await self._client.get_token_decimals(self._pair.token_address)
        except ChainClientError as e:
            logger.warning("Could not read token decimals: %s", e)
            return
        if onchain != self._pair.decimals:
            self._stats.decimals_mismatch = True
            logger.warning(
                "TOKEN_DECIMALS=%d but contract reports %d; amounts will be scaled with %d",
                self._pair.decimals,
                onchain,
                self._pair.decimals,
            )

    def _start_background_services(self) -> None:
        if self._scanner is None:
            raise RuntimeError("Components not initialized")
        self._tasks["scanner"] = asyncio.create_task(
            self._scanner.run(until_caught_up=self._once), name="scanner"
        )
        if self._trigger is not None and self._supervisor is not None:
            self._tasks["trigger"] = asyncio.create_task(self._trigger.run(), name="trigger")
            self._tasks["subscription"] = asyncio.create_task(self._supervisor.run(), name="subscription")
            if self._settings.trigger.startup_sweep:
                self._tasks["sweep"] = asyncio.create_task(self._startup_sweep(), name="sweep")

    async def _startup_sweep(self) -> None:
        if self._trigger is None:
            return
        try:
            outcome = await self._trigger.sweep()
            logger.info("Startup sweep finished: %s", outcome.value)
        except ChainClientError as e:
            logger.error("Startup sweep failed: %s", e)

    async def _on_subscription_state(self, state: ConnectionState) -> None:
        if state == ConnectionState.RECONNECTING:
            self._stats.subscription_reconnects += 1
        elif state == ConnectionState.CONNECTED and self._stats.subscription_reconnects and self._scanner:
            # Close the outage gap without waiting for the next poll tick.
            self._scanner.wake()

    async def _stop_background_services(self) -> None:
        if self._supervisor:
            await self._supervisor.stop()
        if self._scanner:
            await self._scanner.stop()
        if self._trigger:
            await self._trigger.stop()

        for name, task in list(self._tasks.items()):
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=30.0)
            except TimeoutError:
                logger.warning("Task %s did not stop in time; cancelling", name)
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error("Task %s ended with error: %s", name, e)
        self._tasks.clear()

    async def _cleanup(self) -> None:
        if self._client and self._owns_client:
            await self._client.aclose()
        if self._owns_client:
            self._client = None

        if self._db_manager and self._owns_db:
            await self._db_manager.dispose_async()
        if self._owns_db:
            self._db_manager = None

        if self._redis:
            await self._redis.aclose()
            self._redis = None

        logger.debug("Resources cleaned up")

    async def run(self) -> None:
        """Start and run until a stop request or a component ends.

        Raises:
            Exception: The error of a component that ended abnormally.
        """
        await self.start()
        stop_event = self._stop_event or asyncio.Event()

        stop_waiter = asyncio.create_task(stop_event.wait(), name="stop-waiter")
        watched = [t for name, t in self._tasks.items() if name != "sweep"]
        failure: BaseException | None = None
        try:
            done, _ = await asyncio.wait([stop_waiter, *watched], return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if task is stop_waiter or task.cancelled():
                    continue
                exc = task.exception()
                if exc is not None:
                    failure = exc
                    self._stats.last_error = str(exc)
                    logger.error("Component %s failed: %s", task.get_name(), exc)
                else:
                    logger.info("Component %s finished", task.get_name())
        except asyncio.CancelledError:
            pass
        finally:
            stop_waiter.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await stop_waiter
            await self.stop()

        if failure is not None:
            raise failure

    async def backfill_transactions(self, tx_hashes: Sequence[str]) -> dict[str, RecordOutcome | None]:
        """Record burns from explicit transaction hashes, then release resources."""
        settings = self._settings
        settings.validate_requirements(command="backfill-tx")
        pair = settings.watched_pair()
        if self._db_manager is None:
            self._db_manager = DatabaseManager(settings.database.url)
        if self._client is None:
            self._client = self._build_client(with_signer=False)
        try:
            backfiller = TransactionBackfiller(client=self._client, db=self._db_manager, pair=pair)
            return await backfiller.backfill(tx_hashes)
        finally:
            await self._cleanup()

    async def __aenter__(self) -> WatcherService:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()
