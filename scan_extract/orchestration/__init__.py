"""Batch planning, rate limiting and dispatch orchestration."""

from .batch_planner import Batch, BatchPlanner, plan_batches
from .dispatcher import (
    DispatchOrchestrator,
    DispatchResult,
    ProgressCallback,
    process_documents,
    validate_batch_response,
)
from .rate_limiter import RateLimiter, next_midnight_ms
from .retry import RetryOptions, backoff_delay, cancellable_sleep, with_retry

__all__ = [
    # Dispatcher
    "DispatchOrchestrator",
    "DispatchResult",
    "ProgressCallback",
    "process_documents",
    "validate_batch_response",
    # Planner
    "Batch",
    "BatchPlanner",
    "plan_batches",
    # Rate Limiter
    "RateLimiter",
    "next_midnight_ms",
    # Retry
    "RetryOptions",
    "with_retry",
    "backoff_delay",
    "cancellable_sleep",
]
