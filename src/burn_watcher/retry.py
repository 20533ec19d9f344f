"""Shared retry/backoff policy for provider calls."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass
from typing import ParamSpec, TypeVar

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

DEFAULT_BASE_DELAY_SECONDS = 1.0
DEFAULT_MAX_DELAY_SECONDS = 15.0
DEFAULT_MAX_ATTEMPTS = 5


class RetryExhaustedError(Exception):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, message: str, last_exception: BaseException | None = None) -> None:
        super().__init__(message)
        self.last_exception = last_exception


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff: ``base, 2*base, 4*base, ...`` capped at ``max_delay``."""

    base_delay: float = DEFAULT_BASE_DELAY_SECONDS
    max_delay: float = DEFAULT_MAX_DELAY_SECONDS
    max_attempts: int = DEFAULT_MAX_ATTEMPTS

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")

    def delays(self) -> Iterator[float]:
        """Yield the sleep before each retry (``max_attempts - 1`` values)."""
        delay = self.base_delay
        for _ in range(self.max_attempts - 1):
            yield min(delay, self.max_delay)
            delay *= 2

    async def call(
        self,
        func: Callable[P, Awaitable[T]],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> T:
        """Call ``func`` retrying on any ``Exception``."""
        return await self.call_retrying_on((Exception,), func, *args, **kwargs)

    async def call_retrying_on(
        self,
        retry_on: tuple[type[BaseException], ...],
        func: Callable[P, Awaitable[T]],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> T:
        """Call ``func``, retrying only on ``retry_on`` exceptions.

        Anything else propagates immediately.

        Raises:
            RetryExhaustedError: After ``max_attempts`` failures.
        """
        name = getattr(func, "__name__", repr(func))
        last_exception: BaseException | None = None
        delays = self.delays()
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await func(*args, **kwargs)
            except retry_on as e:
                last_exception = e
                delay = next(delays, None)
                if delay is None:
                    break
                logger.warning(
                    "%s failed (attempt %d/%d): %s. Retrying in %.1fs",
                    name,
                    attempt,
                    self.max_attempts,
                    e,
                    delay,
                )
                await asyncio.sleep(delay)

        raise RetryExhaustedError(
            f"All {self.max_attempts} attempts failed for {name}: {last_exception}",
            last_exception=last_exception,
        )
