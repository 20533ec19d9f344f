"""Live ``eth_subscribe`` log subscription with self-healing.

The supervisor owns one WebSocket connection, subscribes to the Transfer
logs of the watched token, probes liveness with WebSocket pings, and
rebuilds connection and subscription with exponential backoff whenever
either fails. The log handler is re-attached on every rebuild.

Events emitted while the subscription is down are not replayed; the
polling scanner closes such gaps.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import websockets
from websockets.asyncio.client import ClientConnection

logger = logging.getLogger(__name__)

DEFAULT_PROBE_INTERVAL = 30.0  # seconds
DEFAULT_PROBE_TIMEOUT = 10.0  # seconds
DEFAULT_INITIAL_RECONNECT_DELAY = 1.0  # seconds
DEFAULT_MAX_RECONNECT_DELAY = 15.0  # seconds
DEFAULT_SUBSCRIBE_TIMEOUT = 10.0  # seconds


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass
class SubscriptionStats:
    logs_received: int = 0
    removed_logs_skipped: int = 0
    reconnect_count: int = 0
    last_message_time: float | None = None
    connected_since: float | None = None
    last_error: str | None = None
    next_reconnect_delay: float | None = None


class SubscriptionError(Exception):
    """Raised when the live subscription cannot be established or stays unhealthy."""


LogCallback = Callable[[dict[str, Any]], Awaitable[None]]
StateCallback = Callable[[ConnectionState], Awaitable[None]]


class ConnectionSupervisor:
    """Keeps a ``logs`` subscription alive across provider failures."""

    def __init__(
        self,
        *,
        url: str,
        log_filter: dict[str, Any],
        on_log: LogCallback,
        on_state_change: StateCallback | None = None,
        probe_interval: float = DEFAULT_PROBE_INTERVAL,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
        initial_reconnect_delay: float = DEFAULT_INITIAL_RECONNECT_DELAY,
        max_reconnect_delay: float = DEFAULT_MAX_RECONNECT_DELAY,
        subscribe_timeout: float = DEFAULT_SUBSCRIBE_TIMEOUT,
    ) -> None:
        self._url = url
        self._log_filter = log_filter
        self._on_log = on_log
        self._on_state_change = on_state_change
        self._probe_interval = probe_interval
        self._probe_timeout = probe_timeout
        self._initial_reconnect_delay = initial_reconnect_delay
        self._max_reconnect_delay = max_reconnect_delay
        self._subscribe_timeout = subscribe_timeout

        self._state = ConnectionState.DISCONNECTED
        self._stats = SubscriptionStats()
        self._request_ids = itertools.count(1)

        self._ws: ClientConnection | None = None
        self._subscription_id: str | None = None
        self._running = False
        self._stop_event: asyncio.Event | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def stats(self) -> SubscriptionStats:
        return self._stats

    @property
    def subscription_id(self) -> str | None:
        return self._subscription_id

    async def _set_state(self, new_state: ConnectionState) -> None:
        if self._state != new_state:
            old = self._state
            self._state = new_state
            logger.info("Log subscription state: %s -> %s", old.value, new_state.value)
            if self._on_state_change:
                try:
                    await self._on_state_change(new_state)
                except Exception as e:  # pragma: no cover
                    logger.error("Error in state change callback: %s", e)

    async def _subscribe(self, ws: ClientConnection) -> str:
        request_id = next(self._request_ids)
        await ws.send(
            json.dumps(
                {
                    "jsonrpc": "2.0",
                    "id": request_id,
                    "method": "eth_subscribe",
                    "params": ["logs", self._log_filter],
                }
            )
        )

        deadline = time.monotonic() + self._subscribe_timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise SubscriptionError("Timed out waiting for eth_subscribe confirmation")
            try:
                message = await asyncio.wait_for(ws.recv(), timeout=remaining)
            except TimeoutError as e:
                raise SubscriptionError("Timed out waiting for eth_subscribe confirmation") from e

            data = json.loads(message)
            if data.get("id") != request_id:
                continue
            if "error" in data:
                raise SubscriptionError(f"eth_subscribe rejected: {data['error']}")
            return str(data["result"])

    async def _connect(self) -> ClientConnection:
        await self._set_state(ConnectionState.CONNECTING)
        try:
            # Liveness is probed explicitly in _listen.
            ws = await websockets.connect(self._url, ping_interval=None)
        except Exception as e:
            self._stats.last_error = str(e)
            raise SubscriptionError(f"Failed to connect to {self._url}: {e}") from e

        try:
            self._subscription_id = await self._subscribe(ws)
        except Exception:
            with contextlib.suppress(Exception):
                await ws.close()
            raise

        await self._set_state(ConnectionState.CONNECTED)
        self._stats.connected_since = time.time()
        logger.info("Subscribed to logs (id=%s) on %s", self._subscription_id, self._url)
        return ws

    async def _probe(self, ws: ClientConnection) -> None:
        """Ping the server and wait for the pong.

        Raises:
            SubscriptionError: If no pong arrives within ``probe_timeout``.
        """
        try:
            pong_waiter = await ws.ping()
            await asyncio.wait_for(pong_waiter, timeout=self._probe_timeout)
        except TimeoutError as e:
            raise SubscriptionError(f"Liveness probe timed out after {self._probe_timeout:.0f}s") from e

    async def _handle_message(self, message: str | bytes) -> None:
        try:
            data = json.loads(message)
        except json.JSONDecodeError:  # pragma: no cover
            logger.warning("Invalid JSON message on log subscription")
            return

        if data.get("method") != "eth_subscription":
            logger.debug("Ignoring non-subscription message: %r", data)
            return

        params = data.get("params") or {}
        if params.get("subscription") != self._subscription_id:
            logger.debug("Ignoring message for stale subscription %r", params.get("subscription"))
            return

        log = params.get("result")
        if not isinstance(log, dict):
            return

        self._stats.last_message_time = time.time()
        if log.get("removed"):
            self._stats.removed_logs_skipped += 1
            logger.info("Skipping removed log tx=%s", log.get("transactionHash"))
            return

        self._stats.logs_received += 1
        try:
            await self._on_log(log)
        except Exception:
            logger.exception("Log handler failed for tx=%s", log.get("transactionHash"))

    async def _listen(self, ws: ClientConnection) -> None:
        next_probe = time.monotonic() + self._probe_interval
        try:
            while self._running:
                try:
                    message = await asyncio.wait_for(ws.recv(), timeout=1.0)
                except TimeoutError:
                    message = None

                if message is not None:
                    await self._handle_message(message)

                if time.monotonic() >= next_probe:
                    await self._probe(ws)
                    next_probe = time.monotonic() + self._probe_interval
        except websockets.ConnectionClosed as e:
            logger.warning("Log subscription connection closed: %s", e)
            raise

    async def run(self) -> None:
        """Connect, subscribe and keep rebuilding until :meth:`stop` is called."""
        if self._running:
            raise RuntimeError("Connection supervisor already running")
        self._running = True
        self._stop_event = asyncio.Event()

        delay = self._initial_reconnect_delay
        while self._running and not self._stop_event.is_set():
            connected_at: float | None = None
            try:
                self._ws = await self._connect()
                connected_at = time.monotonic()
                await self._listen(self._ws)
            except Exception as e:
                if not self._running:
                    break
                # Only a connection that survived a full probe interval resets the backoff.
                if connected_at is not None and time.monotonic() - connected_at >= self._probe_interval:
                    delay = self._initial_reconnect_delay
                self._stats.next_reconnect_delay = delay
                self._stats.reconnect_count += 1
                self._stats.last_error = str(e)
                logger.warning("Log subscription failed: %s. Rebuilding in %.1fs", e, delay)
                await self._set_state(ConnectionState.RECONNECTING)
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                delay = min(self._max_reconnect_delay, delay * 2)
            finally:
                with contextlib.suppress(Exception):
                    if self._ws:
                        await self._ws.close()
                self._ws = None
                self._subscription_id = None

        await self._set_state(ConnectionState.DISCONNECTED)

    async def stop(self) -> None:
        self._running = False
        if self._stop_event:
            self._stop_event.set()
        if self._ws:
            with contextlib.suppress(Exception):
                await self._ws.close()
