"""Tests for the retry policy."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from burn_watcher.retry import RetryExhaustedError, RetryPolicy


class TestRetryPolicy:
    def test_delays_double_and_cap(self) -> None:
        policy = RetryPolicy(base_delay=1.0, max_delay=15.0, max_attempts=7)
        assert list(policy.delays()) == [1.0, 2.0, 4.0, 8.0, 15.0, 15.0]

    def test_single_attempt_has_no_delays(self) -> None:
        assert list(RetryPolicy(max_attempts=1).delays()) == []

    def test_invalid_attempts(self) -> None:
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self) -> None:
        func = AsyncMock(side_effect=[TimeoutError("slow"), OSError("reset"), "ok"])
        policy = RetryPolicy(base_delay=0.5, max_delay=15.0, max_attempts=5)

        with patch("burn_watcher.retry.asyncio.sleep", new=AsyncMock()) as sleep:
            result = await policy.call_retrying_on((TimeoutError, OSError), func, "arg")

        assert result == "ok"
        assert func.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_exhausted_raises_with_last_exception(self) -> None:
        last = TimeoutError("third")
        func = AsyncMock(side_effect=[TimeoutError("first"), TimeoutError("second"), last])
        policy = RetryPolicy(base_delay=0, max_attempts=3)

        with pytest.raises(RetryExhaustedError) as exc_info:
            await policy.call_retrying_on((TimeoutError,), func)

        assert exc_info.value.last_exception is last
        assert func.await_count == 3

    @pytest.mark.asyncio
    async def test_non_retryable_propagates_immediately(self) -> None:
        func = AsyncMock(side_effect=KeyError("nope"))
        policy = RetryPolicy(base_delay=0, max_attempts=5)

        with pytest.raises(KeyError):
            await policy.call_retrying_on((TimeoutError,), func)
        assert func.await_count == 1

    @pytest.mark.asyncio
    async def test_call_retries_any_exception(self) -> None:
        func = AsyncMock(side_effect=[RuntimeError("x"), 5])
        policy = RetryPolicy(base_delay=0, max_attempts=2)
        assert await policy.call(func) == 5
