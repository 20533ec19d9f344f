"""EVM JSON-RPC client for the burn watcher.

This module provides the provider capability used by the scanner and the
trigger engine:
- Head height, log and block-timestamp reads
- ERC-20 balance/decimals reads
- Signed ERC-20 transfer submission and inclusion waiting
- Retry with bounded exponential backoff and failover to a secondary RPC
- Rate limiting to respect provider limits
- Optional Redis caching of immutable block timestamps
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import aiohttp
from eth_account import Account
from eth_account.signers.local import LocalAccount
from redis.asyncio import Redis
from web3 import AsyncWeb3
from web3.exceptions import TimeExhausted, TransactionNotFound, Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

from burn_watcher.chain.transfers import ERC20_ABI, to_hex
from burn_watcher.retry import RetryExhaustedError, RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_BLOCK_CACHE_TTL_SECONDS = 3600
DEFAULT_RECEIPT_POLL_SECONDS = 2.0

# Substrings providers use when an eth_getLogs span is too wide or returns
# too many results. Matched case-insensitively against the error text.
RANGE_TOO_LARGE_MARKERS = (
    "block range",
    "range is too large",
    "range too large",
    "query returned more than",
    "response size exceeded",
    "too many results",
    "max results",
    "log response size",
)

# A resend of an identical signed transaction is reported this way; the
# original submission stands.
ALREADY_KNOWN_MARKERS = ("already known", "known transaction")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    Web3Exception,
    aiohttp.ClientError,
    TimeoutError,
    OSError,
)


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class RPCError(ChainClientError):
    """Raised when an RPC call fails after all retries and failover."""


class RangeTooLargeError(ChainClientError):
    """Raised when the provider rejects an eth_getLogs span as too wide."""


class SignerNotConfiguredError(ChainClientError):
    """Raised when a write is attempted without a private key."""


class TransactionRejectedError(ChainClientError):
    """Raised when a submitted transaction is mined but reverted."""

    def __init__(self, tx_hash: str, message: str) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash


class InclusionTimeoutError(ChainClientError):
    """Raised when a submitted transaction's fate is unknown at timeout."""

    def __init__(self, tx_hash: str, message: str) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash


@dataclass(frozen=True)
class PendingAction:
    """Handle for a submitted, not yet included transfer."""

    tx_hash: str
    token_address: str
    to_address: str
    amount_raw: int
    nonce: int
    submitted_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class InclusionResult:
    """Terminal on-chain state of a submitted transaction."""

    tx_hash: str
    included: bool
    block_number: int | None
    logs: tuple[dict[str, Any], ...] = ()


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


def is_range_too_large(error: BaseException) -> bool:
    text = str(error).lower()
    return any(marker in text for marker in RANGE_TOO_LARGE_MARKERS)


def _is_already_known(error: BaseException) -> bool:
    text = str(error).lower()
    return any(marker in text for marker in ALREADY_KNOWN_MARKERS)


class ChainClient:
    """EVM chain client with retry, failover, rate limiting and caching.

    Example:
        ```python
        client = ChainClient(
            "https://mainnet.base.org",
            fallback_rpc_url="https://base.publicnode.com",
            private_key=settings.trigger.private_key.get_secret_value(),
        )
        head = await client.get_head_height()
        logs = await client.get_logs({"address": token, "fromBlock": head - 9, "toBlock": head})
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        fallback_rpc_url: str | None = None,
        private_key: str | None = None,
        redis: Redis | None = None,
        retry_policy: RetryPolicy | None = None,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        block_cache_ttl_seconds: int = DEFAULT_BLOCK_CACHE_TTL_SECONDS,
    ) -> None:
        """Initialize the chain client.

        Args:
            rpc_url: Primary HTTP RPC endpoint URL.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            private_key: Signer key; required only for transfers.
            redis: Optional Redis client for block timestamp caching.
            retry_policy: Backoff applied to every RPC call.
            max_requests_per_second: Rate limit for RPC calls.
            block_cache_ttl_seconds: Redis TTL for cached block timestamps.
        """
        self._rpc_url = rpc_url
        self._fallback_rpc_url = fallback_rpc_url
        self._redis = redis
        self._retry = retry_policy or RetryPolicy()
        self._block_cache_ttl = block_cache_ttl_seconds

        self._w3 = self._new_web3_client(rpc_url)
        self._w3_fallback: AsyncWeb3[AsyncHTTPProvider] | None = None
        if fallback_rpc_url:
            self._w3_fallback = self._new_web3_client(fallback_rpc_url)

        self._account: LocalAccount | None = Account.from_key(private_key) if private_key else None
        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = 60.0

        self._cache_prefix = "burn_watcher:"

    @property
    def signer_address(self) -> str | None:
        return self._account.address.lower() if self._account else None

    def _new_web3_client(self, rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        client = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        try:
            client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        except Exception as e:
            logger.warning("Failed to inject PoA middleware (rpc=%s): %s", rpc_url, e)
        return client

    def _should_try_primary(self) -> bool:
        if self._primary_healthy:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str, ttl: int) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    async def _call_eth(self, w3: AsyncWeb3[AsyncHTTPProvider], func_name: str, *args: Any) -> Any:
        await self._rate_limiter.acquire()
        method = getattr(w3.eth, func_name)
        try:
            return await method(*args)
        except TransactionNotFound:
            return None
        except TRANSIENT_ERRORS as e:
            if func_name == "get_logs" and is_range_too_large(e):
                raise RangeTooLargeError(str(e)) from e
            raise

    async def _execute_with_retry(self, func_name: str, *args: Any) -> Any:
        """Execute an ``w3.eth`` call with retry and failover.

        Raises:
            RangeTooLargeError: Immediately, without retrying, for oversize log spans.
            RPCError: If all retries on every endpoint fail.
        """
        last_error: BaseException | None = None

        if self._should_try_primary():
            try:
                result = await self._retry.call_retrying_on(
                    TRANSIENT_ERRORS, self._call_eth, self._w3, func_name, *args
                )
                self._primary_healthy = True
                return result
            except RetryExhaustedError as e:
                last_error = e.last_exception
                self._primary_healthy = False
                self._last_primary_check = time.monotonic()

        if self._w3_fallback:
            try:
                result = await self._retry.call_retrying_on(
                    TRANSIENT_ERRORS, self._call_eth, self._w3_fallback, func_name, *args
                )
                logger.info("Fallback RPC succeeded for %s", func_name)
                return result
            except RetryExhaustedError as e:
                last_error = e.last_exception

        raise RPCError(f"RPC call {func_name} failed after all retries: {last_error}")

    async def get_head_height(self) -> int:
        """Current head block number."""
        return int(await self._execute_with_retry("get_block_number"))

    async def get_logs(self, filter_params: dict[str, Any]) -> list[dict[str, Any]]:
        """Fetch logs via ``eth_getLogs``.

        Raises:
            RangeTooLargeError: If the provider rejects the span.
            RPCError: On exhausted transient failures.
        """
        logs = await self._execute_with_retry("get_logs", filter_params)
        return [dict(log) for log in logs]

    async def get_block_timestamp(self, block_number: int) -> int:
        """Unix timestamp of a block. Blocks are immutable so this is cached."""
        if block_number < 0:
            raise ValueError("block_number must be >= 0")
        cache_key = f"{self._cache_prefix}block_ts:{block_number}"
        cached = await self._get_cached(cache_key)
        if cached is not None:
            return int(cached)

        block = await self._execute_with_retry("get_block", block_number)
        timestamp = int(block["timestamp"])
        await self._set_cached(cache_key, str(timestamp), ttl=self._block_cache_ttl)
        return timestamp

    async def get_transaction_receipt(self, tx_hash: str) -> dict[str, Any] | None:
        """Receipt for ``tx_hash``, or ``None`` if it is not (yet) mined."""
        receipt = await self._execute_with_retry("get_transaction_receipt", tx_hash)
        if receipt is None:
            return None
        return _receipt_to_dict(receipt)

    async def _call_contract(self, token_address: str, fn_name: str, *args: Any) -> Any:
        async def _call() -> Any:
            await self._rate_limiter.acquire()
            w3 = self._w3 if self._primary_healthy else (self._w3_fallback or self._w3)
            contract = w3.eth.contract(
                address=AsyncWeb3.to_checksum_address(token_address),
                abi=ERC20_ABI,
            )
            return await getattr(contract.functions, fn_name)(*args).call()

        try:
            return await self._retry.call_retrying_on(TRANSIENT_ERRORS, _call)
        except RetryExhaustedError as e:
            raise RPCError(f"Contract call {fn_name} failed: {e.last_exception}") from e

    async def get_token_balance(self, holder_address: str, token_address: str) -> int:
        """Latest ERC-20 balance in raw units."""
        balance = await self._call_contract(
            token_address,
            "balanceOf",
            AsyncWeb3.to_checksum_address(holder_address),
        )
        return int(balance)

    async def get_token_decimals(self, token_address: str) -> int:
        return int(await self._call_contract(token_address, "decimals"))

    async def get_confirmed_nonce(self) -> int:
        """Number of the signer's transactions mined so far."""
        if self._account is None:
            raise SignerNotConfiguredError("PRIVATE_KEY is required to read the signer nonce")
        return int(await self._execute_with_retry("get_transaction_count", self._account.address, "latest"))

    async def submit_transfer(self, token_address: str, to_address: str, amount_raw: int) -> PendingAction:
        """Sign and broadcast ``transfer(to_address, amount_raw)`` from the signer.

        The transaction is signed once; retries resend the identical raw bytes,
        so a retry can never create a second transfer.

        Raises:
            SignerNotConfiguredError: No private key configured.
            RPCError: Submission failed after all retries.
        """
        if self._account is None:
            raise SignerNotConfiguredError("PRIVATE_KEY is required to submit transfers")
        if amount_raw <= 0:
            raise ValueError("amount_raw must be > 0")

        sender = self._account.address
        contract = self._w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(token_address),
            abi=ERC20_ABI,
        )
        nonce = int(await self._execute_with_retry("get_transaction_count", sender, "pending"))
        chain_id = int(await self._execute_with_retry("get_chain_id"))

        async def _build() -> dict[str, Any]:
            await self._rate_limiter.acquire()
            return await contract.functions.transfer(
                AsyncWeb3.to_checksum_address(to_address),
                amount_raw,
            ).build_transaction({"from": sender, "nonce": nonce, "chainId": chain_id})

        try:
            tx = await self._retry.call_retrying_on(TRANSIENT_ERRORS, _build)
        except RetryExhaustedError as e:
            raise RPCError(f"Failed to build transfer: {e.last_exception}") from e

        signed = self._account.sign_transaction(tx)
        tx_hash = to_hex(signed.hash)

        async def _send() -> None:
            await self._rate_limiter.acquire()
            try:
                await self._w3.eth.send_raw_transaction(signed.raw_transaction)
            except TRANSIENT_ERRORS as e:
                if _is_already_known(e):
                    logger.info("Transaction %s already known to the node", tx_hash)
                    return
                raise

        try:
            await self._retry.call_retrying_on(TRANSIENT_ERRORS, _send)
        except RetryExhaustedError as e:
            raise RPCError(f"Failed to send transfer {tx_hash}: {e.last_exception}") from e

        return PendingAction(
            tx_hash=tx_hash,
            token_address=token_address.lower(),
            to_address=to_address.lower(),
            amount_raw=amount_raw,
            nonce=nonce,
        )

    async def wait_for_inclusion(
        self,
        action: PendingAction,
        *,
        timeout: float,
        poll_latency: float = DEFAULT_RECEIPT_POLL_SECONDS,
    ) -> InclusionResult:
        """Block until ``action`` is mined (included or reverted).

        Raises:
            TransactionRejectedError: The transaction was mined but reverted.
            InclusionTimeoutError: The outcome is unknown when ``timeout`` elapses
                or the node cannot be queried.
        """
        try:
            receipt = await self._w3.eth.wait_for_transaction_receipt(
                action.tx_hash,
                timeout=timeout,
                poll_latency=poll_latency,
            )
        except TimeExhausted as e:
            raise InclusionTimeoutError(
                action.tx_hash, f"Transaction {action.tx_hash} not mined within {timeout:.0f}s"
            ) from e
        except TRANSIENT_ERRORS as e:
            raise InclusionTimeoutError(
                action.tx_hash, f"Could not confirm transaction {action.tx_hash}: {e}"
            ) from e
        result = inclusion_from_receipt(_receipt_to_dict(receipt))
        if not result.included:
            raise TransactionRejectedError(action.tx_hash, f"Transaction {action.tx_hash} reverted")
        return result

    async def health_check(self) -> bool:
        try:
            await self.get_head_height()
            return True
        except ChainClientError:
            return False

    async def aclose(self) -> None:
        """Close async HTTP provider sessions to avoid leaked aiohttp sessions."""
        providers = [self._w3.provider]
        if self._w3_fallback is not None:
            providers.append(self._w3_fallback.provider)

        for provider in providers:
            disconnect = getattr(provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Failed to close RPC provider session: %s", e)


def _receipt_to_dict(receipt: Any) -> dict[str, Any]:
    data = dict(receipt)
    data["logs"] = [dict(log) for log in data.get("logs") or []]
    return data


def inclusion_from_receipt(receipt: dict[str, Any]) -> InclusionResult:
    status = receipt.get("status")
    block_number = receipt.get("blockNumber")
    logs: Sequence[dict[str, Any]] = receipt.get("logs") or []
    return InclusionResult(
        tx_hash=to_hex(receipt["transactionHash"]),
        included=int(status) == 1 if status is not None else True,
        block_number=int(block_number) if block_number is not None else None,
        logs=tuple(logs),
    )
