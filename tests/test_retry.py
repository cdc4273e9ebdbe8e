"""Tests for retry with backoff and cancellable sleep."""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

from scan_extract.core.errors import (
    DispatchCancelled,
    ExtractionClientError,
    ResponseValidationError,
)
from scan_extract.orchestration.retry import (
    RetryOptions,
    backoff_delay,
    cancellable_sleep,
    with_retry,
)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return _sleep


class TestBackoffDelay:
    """Test the backoff schedule."""

    def test_doubles_each_attempt(self):
        assert [backoff_delay(a, 1.0, 30.0) for a in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_max(self):
        assert backoff_delay(10, 1.0, 30.0) == 30.0


class TestWithRetry:
    """Test with_retry behaviour."""

    @pytest.mark.asyncio
    async def test_returns_first_success(self, fake_sleep, sleeps):
        operation = AsyncMock(return_value="ok")

        assert await with_retry(operation, sleep=fake_sleep) == "ok"
        assert operation.await_count == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_retries_retryable_error(self, fake_sleep, sleeps):
        """Server errors are retried with backoff."""
        error = ExtractionClientError("HTTP 503: unavailable", status_code=503)
        operation = AsyncMock(side_effect=[error, "ok"])
        on_retry = MagicMock()

        result = await with_retry(operation, RetryOptions(on_retry=on_retry), sleep=fake_sleep)

        assert result == "ok"
        assert sleeps == [1.0]
        on_retry.assert_called_once_with(1, error)

    @pytest.mark.asyncio
    async def test_non_retryable_error_raises_immediately(self, fake_sleep, sleeps):
        operation = AsyncMock(side_effect=ExtractionClientError("HTTP 400: bad request", 400))

        with pytest.raises(ExtractionClientError):
            await with_retry(operation, sleep=fake_sleep)

        assert operation.await_count == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_validation_error_not_retried(self, fake_sleep):
        operation = AsyncMock(side_effect=ResponseValidationError("timeout in text"))

        with pytest.raises(ResponseValidationError):
            await with_retry(operation, sleep=fake_sleep)

        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_raises_last_error_after_max_retries(self, fake_sleep, sleeps):
        """After max_retries retries the last error propagates."""
        operation = AsyncMock(side_effect=ExtractionClientError("Network error: reset"))

        with pytest.raises(ExtractionClientError, match="Network error"):
            await with_retry(operation, RetryOptions(max_retries=2), sleep=fake_sleep)

        assert operation.await_count == 3
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_cancelled_before_attempt(self, fake_sleep):
        """A set cancel event stops before the operation runs."""
        cancel_event = asyncio.Event()
        cancel_event.set()
        operation = AsyncMock(return_value="ok")

        with pytest.raises(DispatchCancelled):
            await with_retry(operation, RetryOptions(cancel_event=cancel_event), sleep=fake_sleep)

        operation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancellation_not_retried(self, fake_sleep):
        operation = AsyncMock(side_effect=DispatchCancelled())

        with pytest.raises(DispatchCancelled):
            await with_retry(operation, sleep=fake_sleep)

        assert operation.await_count == 1


class TestCancellableSleep:
    """Test sleeping with early wake-up."""

    @pytest.mark.asyncio
    async def test_completes_without_cancel(self):
        await cancellable_sleep(0.01, asyncio.Event())

    @pytest.mark.asyncio
    async def test_wakes_on_cancel(self):
        """Setting the event interrupts a long sleep."""
        cancel_event = asyncio.Event()
        asyncio.get_running_loop().call_later(0.01, cancel_event.set)

        with pytest.raises(DispatchCancelled):
            await cancellable_sleep(30, cancel_event)

    @pytest.mark.asyncio
    async def test_already_cancelled(self):
        cancel_event = asyncio.Event()
        cancel_event.set()

        with pytest.raises(DispatchCancelled):
            await cancellable_sleep(30, cancel_event)
