"""Bounded exponential-backoff retry for provider calls."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from ..core.errors import DispatchCancelled, is_retryable_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


@dataclass
class RetryOptions:
    """Options for with_retry()."""

    max_retries: int = 3
    base_delay: float = 1.0  # Seconds
    max_delay: float = 30.0  # Seconds
    cancel_event: Optional[asyncio.Event] = None
    on_retry: Optional[Callable[[int, Exception], None]] = None


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number attempt + 1: min(base * 2^attempt, max)."""
    return min(base_delay * (2**attempt), max_delay)


async def cancellable_sleep(seconds: float, cancel_event: Optional[asyncio.Event] = None) -> None:
    """Sleep, waking early and raising DispatchCancelled if cancelled."""
    if cancel_event is None:
        await asyncio.sleep(seconds)
        return

    if cancel_event.is_set():
        raise DispatchCancelled()

    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return
    raise DispatchCancelled()


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    options: Optional[RetryOptions] = None,
    sleep: Optional[SleepFn] = None,
) -> T:
    """Run an async operation, retrying retryable errors with backoff.

    Cancellation is checked before each attempt and is never retried.
    Non-retryable errors propagate immediately. After the final attempt
    the last error propagates.

    Args:
        operation: Zero-argument coroutine factory.
        options: Retry options.
        sleep: Replacement for the backoff sleep (used by tests).

    Returns:
        The operation's result.
    """
    opts = options or RetryOptions()

    for attempt in range(opts.max_retries + 1):
        if opts.cancel_event is not None and opts.cancel_event.is_set():
            raise DispatchCancelled()

        try:
            return await operation()
        except DispatchCancelled:
            raise
        except Exception as e:
            if not is_retryable_error(e) or attempt == opts.max_retries:
                raise

            delay = backoff_delay(attempt, opts.base_delay, opts.max_delay)
            logger.debug(
                f"Retryable error: {e} - retrying in {delay}s "
                f"(attempt {attempt + 1}/{opts.max_retries})"
            )

            if opts.on_retry:
                opts.on_retry(attempt + 1, e)

            if sleep is not None:
                await sleep(delay)
            else:
                await cancellable_sleep(delay, opts.cancel_event)

    # Unreachable: the loop either returns or raises
    raise RuntimeError("with_retry exited without a result")
