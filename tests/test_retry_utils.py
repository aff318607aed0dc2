"""Tests for the bounded retry helper."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from app.domain.exceptions.domain_exceptions import DuplicateLinkError, RetryExhaustedError
from app.utils.retry_utils import is_transient_error, retry_bounded


class TestIsTransientError:
    def test_timeout_error_is_transient(self):
        assert is_transient_error(TimeoutError("Connection timeout"))

    def test_connection_error_in_message(self):
        assert is_transient_error(Exception("Connection reset by peer"))

    def test_rate_limit_error_is_transient(self):
        assert is_transient_error(Exception("Rate limit exceeded, try again later"))

    def test_duplicate_is_not_transient(self):
        assert not is_transient_error(DuplicateLinkError("https://a.com", "u1"))

    def test_unknown_error_is_not_transient(self):
        assert not is_transient_error(ValueError("bad value"))


class TestRetryBounded:
    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self):
        func = AsyncMock(return_value="ok")
        result = await retry_bounded(func, "a", attempts=3, delay=0, timeout=None, key="v")
        assert result == "ok"
        func.assert_awaited_once_with("a", key="v")

    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self):
        func = AsyncMock(side_effect=[ConnectionError("connection refused"), "ok"])
        result = await retry_bounded(func, attempts=2, delay=0, timeout=None)
        assert result == "ok"
        assert func.await_count == 2

    @pytest.mark.asyncio
    async def test_exhaustion_wraps_last_error(self):
        last = ConnectionError("connection refused again")
        func = AsyncMock(side_effect=[ConnectionError("connection refused"), last])
        with pytest.raises(RetryExhaustedError) as exc_info:
            await retry_bounded(func, attempts=2, delay=0, timeout=None, operation="write")
        assert exc_info.value.last_error is last
        assert exc_info.value.attempts == 2
        assert "write failed after 2 attempts" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_non_retryable_error_raised_immediately(self):
        func = AsyncMock(side_effect=DuplicateLinkError("https://a.com", "u1"))
        with pytest.raises(DuplicateLinkError):
            await retry_bounded(func, attempts=5, delay=0, timeout=None)
        assert func.await_count == 1

    @pytest.mark.asyncio
    async def test_per_attempt_timeout_counts_as_transient(self):
        calls = 0

        async def slow_then_fast():
            nonlocal calls
            calls += 1
            if calls == 1:
                await asyncio.sleep(1)
            return calls

        result = await retry_bounded(slow_then_fast, attempts=2, delay=0, timeout=0.05)
        assert result == 2

    @pytest.mark.asyncio
    async def test_fixed_delay_between_attempts(self, monkeypatch):
        sleeps: list[float] = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        monkeypatch.setattr("app.utils.retry_utils.asyncio.sleep", fake_sleep)
        func = AsyncMock(side_effect=TimeoutError("timed out"))
        with pytest.raises(RetryExhaustedError):
            await retry_bounded(func, attempts=3, delay=1.5, timeout=None)
        assert sleeps == [1.5, 1.5]

    @pytest.mark.asyncio
    async def test_custom_predicate(self):
        func = AsyncMock(side_effect=[ValueError("flaky"), "ok"])
        result = await retry_bounded(
            func, attempts=2, delay=0, timeout=None, is_retryable=lambda e: True
        )
        assert result == "ok"

    @pytest.mark.asyncio
    async def test_attempts_must_be_positive(self):
        with pytest.raises(ValueError):
            await retry_bounded(AsyncMock(), attempts=0, delay=0, timeout=None)
