"""Multi-key token-bucket rate limiter.

Tracks one token bucket and one daily counter per credential:
- Buckets refill lazily from elapsed time, never from a timer
- Daily counters reset at midnight in the provider's quota zone
- Key selection prefers the key with the most available tokens
- State is persisted after every consuming mutation so several
  processes can share it (last writer wins)
"""

import logging
import math
import threading
import time
from datetime import datetime, time as dtime, timedelta
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from ..core.config import QUOTA_RESET_TIMEZONE, WAIT_FALLBACK_MS
from ..storage.quota_store import KeyQuotaStore
from ..types.credentials import Credential
from ..types.progress import KeyStatus
from ..types.quota import DailyUsage, TokenBucketState

logger = logging.getLogger(__name__)


def wall_clock_ms() -> float:
    """Current Unix time in milliseconds."""
    return time.time() * 1000


def next_midnight_ms(now_ms: float, timezone: str = QUOTA_RESET_TIMEZONE) -> float:
    """Get the next local midnight in a timezone as Unix milliseconds.

    The result is always strictly greater than now_ms.
    """
    tz = ZoneInfo(timezone)
    local_now = datetime.fromtimestamp(now_ms / 1000, tz)
    next_day = local_now.date() + timedelta(days=1)
    midnight = datetime.combine(next_day, dtime.min, tzinfo=tz)
    return midnight.timestamp() * 1000


def refill_rate_per_ms(rpm: int) -> float:
    """Tokens gained per millisecond for a requests-per-minute limit."""
    return rpm / 60_000


class RateLimiter:
    """Token-bucket rate limiter over a set of credentials.

    The instance is owned by the caller and meant to live for a whole
    application session. Call reconcile() when the credential set changes.
    """

    def __init__(
        self,
        credentials: list[Credential],
        quota_store: Optional[KeyQuotaStore] = None,
        clock: Optional[Callable[[], float]] = None,
        reset_timezone: str = QUOTA_RESET_TIMEZONE,
    ):
        """Initialize the rate limiter.

        Args:
            credentials: Credentials in preference order.
            quota_store: Persistence for bucket and daily state.
            clock: Returns the current time in Unix milliseconds.
            reset_timezone: Zone whose midnight resets daily quotas.
        """
        self._store = quota_store or KeyQuotaStore()
        self._clock = clock or wall_clock_ms
        self._reset_timezone = reset_timezone
        self._lock = threading.RLock()

        self._credentials: list[Credential] = []
        self._buckets: dict[str, TokenBucketState] = {}
        self._daily: dict[str, DailyUsage] = {}

        self.reconcile(credentials)

    @property
    def credentials(self) -> list[Credential]:
        """Credentials currently tracked, in iteration order."""
        return list(self._credentials)

    def get_credential(self, key_id: str) -> Optional[Credential]:
        """Look up a tracked credential by id."""
        for credential in self._credentials:
            if credential.id == key_id:
                return credential
        return None

    # -- Lifecycle ---------------------------------------------------------

    def reconcile(self, credentials: list[Credential]) -> None:
        """Sync tracked state with a new credential set.

        New ids are loaded from persistence, ids no longer present are
        dropped from memory, and common ids keep their live state.
        """
        with self._lock:
            self._credentials = list(credentials)
            now = self._clock()

            for credential in credentials:
                if credential.id not in self._buckets:
                    self._buckets[credential.id] = self._load_bucket(credential, now)
                else:
                    # Capacity follows the current tier
                    bucket = self._buckets[credential.id]
                    bucket.max_tokens = credential.limits.rpm
                    bucket.tokens = min(bucket.tokens, bucket.max_tokens)

                if credential.id not in self._daily:
                    self._daily[credential.id] = self._load_daily(credential.id, now)

            current_ids = {c.id for c in credentials}
            for key_id in list(self._buckets):
                if key_id not in current_ids:
                    del self._buckets[key_id]
                    self._daily.pop(key_id, None)
                    logger.debug(f"Retired rate limit state for {key_id}")

    def clear_credential_state(self, key_id: str) -> None:
        """Delete bucket and daily state for a key, in memory and persisted."""
        with self._lock:
            self._buckets.pop(key_id, None)
            self._daily.pop(key_id, None)
        self._store.clear(key_id)

    def _load_bucket(self, credential: Credential, now: float) -> TokenBucketState:
        max_tokens = credential.limits.rpm
        bucket = TokenBucketState(tokens=max_tokens, max_tokens=max_tokens, last_refill_ms=now)

        saved = self._store.load_bucket(credential.id)
        if saved is not None:
            tokens, last_refill = saved
            bucket.tokens = max(0.0, min(tokens, max_tokens))
            bucket.last_refill_ms = min(last_refill, now)

        self._refill(bucket, credential, now)
        return bucket

    def _load_daily(self, key_id: str, now: float) -> DailyUsage:
        saved = self._store.load_daily(key_id)
        if saved is None or now >= saved.reset_at_ms:
            return DailyUsage(count=0, reset_at_ms=next_midnight_ms(now, self._reset_timezone))
        return saved

    # -- Internal accounting -------------------------------------------------

    def _refill(self, bucket: TokenBucketState, credential: Credential, now: float) -> None:
        elapsed = max(0.0, now - bucket.last_refill_ms)
        refill = elapsed * refill_rate_per_ms(credential.limits.rpm)
        bucket.tokens = min(float(bucket.max_tokens), bucket.tokens + refill)
        bucket.last_refill_ms = max(bucket.last_refill_ms, now)

    def _current_daily(self, key_id: str, now: float) -> DailyUsage:
        """Get daily usage for a key, rolling it over if the reset passed."""
        usage = self._daily.get(key_id)
        if usage is None:
            usage = self._load_daily(key_id, now)
            self._daily[key_id] = usage

        if now >= usage.reset_at_ms:
            usage.count = 0
            usage.reset_at_ms = next_midnight_ms(now, self._reset_timezone)
            self._store.save_daily(key_id, usage)
            logger.debug(f"Daily quota reset for {key_id}")

        return usage

    def _has_daily_quota(self, credential: Credential, now: float) -> bool:
        limit = credential.limits.rpd
        usage = self._current_daily(credential.id, now)
        return limit is None or usage.count < limit

    # -- Public API ----------------------------------------------------------

    def best_available_key(self) -> Optional[Credential]:
        """Get the key with the most available tokens.

        Keys without daily quota are skipped. Ties go to the key listed
        first.

        Returns:
            The best credential, or None if no key has a whole token.
        """
        with self._lock:
            now = self._clock()
            best: Optional[Credential] = None
            best_tokens = 0.0

            for credential in self._credentials:
                bucket = self._buckets.get(credential.id)
                if bucket is None:
                    continue

                self._refill(bucket, credential, now)

                if not self._has_daily_quota(credential, now):
                    continue

                if bucket.tokens >= 1 and bucket.tokens > best_tokens:
                    best_tokens = bucket.tokens
                    best = credential

            return best

    def has_available_key(self) -> bool:
        """Check if any key can serve a request now."""
        return self.best_available_key() is not None

    def has_daily_quota(self) -> bool:
        """Check if any key still has requests left today.

        When this is False no key recovers before the next daily reset.
        """
        with self._lock:
            now = self._clock()
            return any(
                credential.id in self._buckets and self._has_daily_quota(credential, now)
                for credential in self._credentials
            )

    def consume(self, key_id: str) -> bool:
        """Consume one token and one daily request from a key.

        Returns:
            True if a token was consumed, False if the key is unknown, has
            no whole token, or has used its daily quota.
        """
        with self._lock:
            credential = self.get_credential(key_id)
            bucket = self._buckets.get(key_id)
            if credential is None or bucket is None:
                return False

            now = self._clock()
            self._refill(bucket, credential, now)

            if bucket.tokens < 1 or not self._has_daily_quota(credential, now):
                return False

            bucket.tokens -= 1
            self._store.save_bucket(key_id, bucket)

            usage = self._current_daily(key_id, now)
            usage.count += 1
            self._store.save_daily(key_id, usage)

            logger.debug(
                f"Consumed token from {credential.display_name} "
                f"({bucket.tokens:.2f} left, {usage.count} today)"
            )
            return True

    def mark_exhausted(self, key_id: str) -> None:
        """Drain a key after the provider rejected it for quota.

        The next refill starts from now, so the key stays excluded until
        real refill time has passed.
        """
        with self._lock:
            bucket = self._buckets.get(key_id)
            if bucket is None:
                return

            bucket.tokens = 0.0
            bucket.last_refill_ms = self._clock()
            self._store.save_bucket(key_id, bucket)
            logger.info(f"Marked key {key_id} as exhausted")

    def estimated_wait_ms(self) -> int:
        """Estimate how long until some key has a whole token.

        Returns:
            0 if a key is available now, the shortest refill time among
            keys with daily quota left, or WAIT_FALLBACK_MS if no key has
            daily quota.
        """
        with self._lock:
            now = self._clock()
            min_wait = math.inf

            for credential in self._credentials:
                bucket = self._buckets.get(credential.id)
                if bucket is None:
                    continue

                if not self._has_daily_quota(credential, now):
                    continue

                self._refill(bucket, credential, now)

                if bucket.tokens >= 1:
                    return 0

                tokens_needed = 1 - bucket.tokens
                wait = tokens_needed / refill_rate_per_ms(credential.limits.rpm)
                min_wait = min(min_wait, wait)

            if min_wait == math.inf:
                return WAIT_FALLBACK_MS
            return max(1, math.ceil(min_wait))

    def status_snapshot(self) -> list[KeyStatus]:
        """Get the status of every key. Refills buckets as a side effect."""
        with self._lock:
            now = self._clock()
            statuses = []

            for credential in self._credentials:
                bucket = self._buckets.get(credential.id)
                limits = credential.limits

                if bucket is not None:
                    self._refill(bucket, credential, now)

                usage = self._current_daily(credential.id, now)
                tokens = bucket.tokens if bucket is not None else 0.0
                has_daily_quota = limits.rpd is None or usage.count < limits.rpd

                statuses.append(
                    KeyStatus(
                        key_id=credential.id,
                        label=credential.label,
                        tier=credential.tier.value,
                        available_tokens=math.floor(tokens),
                        max_tokens=limits.rpm,
                        daily_used=usage.count,
                        daily_limit=limits.rpd,
                        has_any_token=tokens >= 1,
                        is_exhausted=not has_daily_quota or tokens < 1,
                    )
                )

            return statuses

    def get_bucket(self, key_id: str) -> Optional[TokenBucketState]:
        """Get a copy of a key's bucket state, refilled to now."""
        with self._lock:
            credential = self.get_credential(key_id)
            bucket = self._buckets.get(key_id)
            if credential is None or bucket is None:
                return None
            self._refill(bucket, credential, self._clock())
            return TokenBucketState(bucket.tokens, bucket.max_tokens, bucket.last_refill_ms)

    def get_daily_usage(self, key_id: str) -> Optional[DailyUsage]:
        """Get a copy of a key's daily usage, rolled over if due."""
        with self._lock:
            if self.get_credential(key_id) is None:
                return None
            usage = self._current_daily(key_id, self._clock())
            return DailyUsage(usage.count, usage.reset_at_ms)
