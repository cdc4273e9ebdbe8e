"""Per-credential rate-limit state."""

from dataclasses import dataclass


@dataclass
class TokenBucketState:
    """Continuously refilling token bucket.

    Invariant: 0 <= tokens <= max_tokens whenever observed.
    """

    tokens: float
    max_tokens: int
    last_refill_ms: float  # Unix epoch milliseconds


@dataclass
class DailyUsage:
    """Requests counted against the daily quota."""

    count: int
    reset_at_ms: float  # Unix epoch milliseconds of the next reset
