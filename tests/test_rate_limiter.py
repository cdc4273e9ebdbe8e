"""Tests for the multi-key token-bucket rate limiter."""

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from scan_extract.orchestration.rate_limiter import RateLimiter, next_midnight_ms
from scan_extract.types import ApiTier, DailyUsage

LA = ZoneInfo("America/Los_Angeles")


class TestTokenBucket:
    """Test token consumption and lazy refill."""

    def test_new_key_starts_full(self, make_credential, make_limiter):
        """A key with no stored state starts at tier capacity."""
        limiter = make_limiter([make_credential("k1")])

        bucket = limiter.get_bucket("k1")
        assert bucket.tokens == 10
        assert bucket.max_tokens == 10

    def test_consume_deducts_token_and_counts_daily(self, make_credential, make_limiter):
        """Consuming takes one token and one daily request."""
        limiter = make_limiter([make_credential("k1")])

        assert limiter.consume("k1") is True
        assert limiter.get_bucket("k1").tokens == 9
        assert limiter.get_daily_usage("k1").count == 1

    def test_consume_fails_when_empty(self, make_credential, make_limiter):
        """An empty bucket refuses further consumption."""
        limiter = make_limiter([make_credential("k1")])

        for _ in range(10):
            assert limiter.consume("k1") is True

        assert limiter.consume("k1") is False
        assert limiter.get_daily_usage("k1").count == 10

    def test_consume_unknown_key(self, make_credential, make_limiter):
        """Unknown ids are refused."""
        limiter = make_limiter([make_credential("k1")])
        assert limiter.consume("nope") is False

    def test_refill_over_time(self, clock, make_credential, make_limiter):
        """Tokens return at rpm / 60000 per millisecond."""
        limiter = make_limiter([make_credential("k1")])
        for _ in range(10):
            limiter.consume("k1")

        clock.advance(30_000)

        assert limiter.get_bucket("k1").tokens == pytest.approx(5.0)

    def test_refill_caps_at_capacity(self, clock, make_credential, make_limiter):
        """Tokens never exceed max_tokens."""
        limiter = make_limiter([make_credential("k1")])
        limiter.consume("k1")

        clock.advance(24 * 60 * 60 * 1000)

        assert limiter.get_bucket("k1").tokens == 10

    def test_clock_going_backwards_adds_nothing(self, clock, make_credential, make_limiter):
        """Negative elapsed time is treated as zero."""
        limiter = make_limiter([make_credential("k1")])
        for _ in range(5):
            limiter.consume("k1")

        clock.advance(-60_000)

        assert limiter.get_bucket("k1").tokens == 5

    def test_mark_exhausted_drains_key(self, clock, make_credential, make_limiter):
        """A drained key is excluded until real refill time passes."""
        limiter = make_limiter([make_credential("k1")])

        limiter.mark_exhausted("k1")

        assert limiter.get_bucket("k1").tokens == 0
        assert limiter.best_available_key() is None

        clock.advance(6_100)
        assert limiter.best_available_key().id == "k1"


class TestKeySelection:
    """Test best-key selection."""

    def test_ties_go_to_first_key(self, make_credential, make_limiter):
        """Equal token counts select the key listed first."""
        limiter = make_limiter([make_credential("k1"), make_credential("k2")])
        assert limiter.best_available_key().id == "k1"

    def test_prefers_most_tokens(self, make_credential, make_limiter):
        """The key with the most available tokens wins."""
        limiter = make_limiter([make_credential("k1"), make_credential("k2")])
        limiter.consume("k1")

        assert limiter.best_available_key().id == "k2"

    def test_higher_tier_wins(self, make_credential, make_limiter):
        """A larger bucket outranks a full smaller one."""
        limiter = make_limiter(
            [make_credential("k1"), make_credential("k2", tier=ApiTier.TIER1)]
        )
        assert limiter.best_available_key().id == "k2"

    def test_fractional_token_is_not_available(self, clock, make_credential, make_limiter):
        """A key needs a whole token to be selected."""
        limiter = make_limiter([make_credential("k1")])
        limiter.mark_exhausted("k1")

        clock.advance(3_000)

        assert limiter.get_bucket("k1").tokens == pytest.approx(0.5)
        assert limiter.has_available_key() is False

    def test_no_keys(self, make_limiter):
        """An empty limiter never selects a key."""
        limiter = make_limiter([])
        assert limiter.best_available_key() is None


class TestEstimatedWait:
    """Test wait estimation."""

    def test_zero_when_available(self, make_credential, make_limiter):
        limiter = make_limiter([make_credential("k1")])
        assert limiter.estimated_wait_ms() == 0

    def test_time_until_next_token(self, make_credential, make_limiter):
        """An empty free-tier key needs about 6 seconds for one token."""
        limiter = make_limiter([make_credential("k1")])
        limiter.mark_exhausted("k1")

        assert 6_000 <= limiter.estimated_wait_ms() <= 6_001

    def test_shortest_wait_across_keys(self, clock, make_credential, make_limiter):
        """The estimate is the minimum over keys."""
        limiter = make_limiter([make_credential("k1"), make_credential("k2")])
        limiter.mark_exhausted("k1")
        clock.advance(3_000)
        limiter.mark_exhausted("k2")

        assert 3_000 <= limiter.estimated_wait_ms() <= 3_001

    def test_fallback_when_daily_quota_spent(self, quota_store, clock, make_credential):
        """With no daily quota left anywhere, the fallback wait is returned."""
        quota_store.save_daily(
            "k1", DailyUsage(count=250, reset_at_ms=next_midnight_ms(clock()))
        )
        limiter = RateLimiter([make_credential("k1")], quota_store=quota_store, clock=clock)

        assert limiter.best_available_key() is None
        assert limiter.estimated_wait_ms() == 60_000


class TestDailyQuota:
    """Test daily request counting and reset."""

    def test_spent_daily_quota_blocks_key(self, quota_store, clock, make_credential):
        """A key at its daily limit is skipped even with tokens."""
        quota_store.save_daily(
            "k1", DailyUsage(count=250, reset_at_ms=next_midnight_ms(clock()))
        )
        limiter = RateLimiter([make_credential("k1")], quota_store=quota_store, clock=clock)

        assert limiter.get_bucket("k1").tokens == 10
        assert limiter.consume("k1") is False

    def test_has_daily_quota(self, quota_store, clock, make_credential):
        """Reports whether any key can still serve today."""
        quota_store.save_daily(
            "k1", DailyUsage(count=250, reset_at_ms=next_midnight_ms(clock()))
        )
        spent = RateLimiter([make_credential("k1")], quota_store=quota_store, clock=clock)
        mixed = RateLimiter(
            [make_credential("k1"), make_credential("k2")], quota_store=quota_store, clock=clock
        )

        assert spent.has_daily_quota() is False
        assert mixed.has_daily_quota() is True
        assert RateLimiter([], quota_store=quota_store, clock=clock).has_daily_quota() is False

        mixed.mark_exhausted("k2")
        assert mixed.has_daily_quota() is True

    def test_daily_counter_resets_at_midnight(self, quota_store, clock, make_credential):
        """Crossing the reset time zeroes the counter."""
        quota_store.save_daily(
            "k1", DailyUsage(count=250, reset_at_ms=next_midnight_ms(clock()))
        )
        limiter = RateLimiter([make_credential("k1")], quota_store=quota_store, clock=clock)

        clock.advance(13 * 60 * 60 * 1000)

        assert limiter.best_available_key().id == "k1"
        usage = limiter.get_daily_usage("k1")
        assert usage.count == 0
        assert usage.reset_at_ms > clock()

    def test_unbounded_tier_ignores_daily_count(self, quota_store, clock, make_credential):
        """Tiers without a daily limit are never blocked by the counter."""
        quota_store.save_daily(
            "k1", DailyUsage(count=1_000_000, reset_at_ms=next_midnight_ms(clock()))
        )
        limiter = RateLimiter(
            [make_credential("k1", tier=ApiTier.TIER2)], quota_store=quota_store, clock=clock
        )

        assert limiter.consume("k1") is True

    def test_next_midnight_is_local_midnight(self):
        """The reset lands on the next midnight in the reset zone."""
        now = datetime(2024, 6, 1, 23, 59, tzinfo=LA)

        reset = datetime.fromtimestamp(next_midnight_ms(now.timestamp() * 1000) / 1000, LA)

        assert reset == datetime(2024, 6, 2, 0, 0, tzinfo=LA)

    def test_next_midnight_is_strictly_after_now(self):
        """At exactly midnight the following midnight is returned."""
        midnight = datetime(2024, 6, 2, 0, 0, tzinfo=LA)

        reset_ms = next_midnight_ms(midnight.timestamp() * 1000)

        assert reset_ms == (midnight + timedelta(days=1)).timestamp() * 1000

    def test_next_midnight_across_dst_change(self):
        """The day the clocks change is 23 hours long."""
        now = datetime(2024, 3, 10, 0, 30, tzinfo=LA)

        reset = datetime.fromtimestamp(next_midnight_ms(now.timestamp() * 1000) / 1000, LA)

        assert reset.date() == datetime(2024, 3, 11).date()
        assert reset.hour == 0


class TestPersistence:
    """Test state shared through the quota store."""

    def test_state_survives_new_limiter(self, quota_store, clock, make_credential):
        """A second limiter over the same store sees consumed tokens."""
        first = RateLimiter([make_credential("k1")], quota_store=quota_store, clock=clock)
        for _ in range(3):
            first.consume("k1")

        second = RateLimiter([make_credential("k1")], quota_store=quota_store, clock=clock)

        assert second.get_bucket("k1").tokens == 7
        assert second.get_daily_usage("k1").count == 3

    def test_corrupt_bucket_record_uses_defaults(self, quota_store, clock, make_credential):
        """Malformed persisted state falls back to a full bucket."""
        quota_store.backend.set("bucket:k1", "garbage")
        quota_store.backend.set("daily:k1", {"count": "many"})

        limiter = RateLimiter([make_credential("k1")], quota_store=quota_store, clock=clock)

        assert limiter.get_bucket("k1").tokens == 10
        assert limiter.get_daily_usage("k1").count == 0

    def test_stored_tokens_clamped_to_capacity(self, quota_store, clock, make_credential):
        """Stored tokens above the tier capacity are clamped."""
        quota_store.backend.set("bucket:k1", {"tokens": 500, "last_refill": clock()})

        limiter = RateLimiter([make_credential("k1")], quota_store=quota_store, clock=clock)

        assert limiter.get_bucket("k1").tokens == 10

    def test_future_refill_time_clamped_to_now(self, quota_store, clock, make_credential):
        """A refill timestamp in the future does not freeze the bucket."""
        quota_store.backend.set(
            "bucket:k1", {"tokens": 0, "last_refill": clock() + 3_600_000}
        )

        limiter = RateLimiter([make_credential("k1")], quota_store=quota_store, clock=clock)
        clock.advance(6_100)

        assert limiter.get_bucket("k1").tokens >= 1

    def test_elapsed_time_refills_persisted_bucket(self, quota_store, clock, make_credential):
        """Time passed between sessions is credited on load."""
        quota_store.backend.set("bucket:k1", {"tokens": 0, "last_refill": clock()})
        clock.advance(30_000)

        limiter = RateLimiter([make_credential("k1")], quota_store=quota_store, clock=clock)

        assert limiter.get_bucket("k1").tokens == pytest.approx(5.0)


class TestReconcile:
    """Test syncing with a changed credential set."""

    def test_adds_new_keys(self, make_credential, make_limiter):
        limiter = make_limiter([make_credential("k1")])

        limiter.reconcile([make_credential("k1"), make_credential("k2")])

        assert limiter.get_bucket("k2").tokens == 10

    def test_keeps_live_state_for_common_keys(self, make_credential, make_limiter):
        """Existing keys keep their in-memory tokens."""
        limiter = make_limiter([make_credential("k1")])
        limiter.consume("k1")

        limiter.reconcile([make_credential("k1"), make_credential("k2")])

        assert limiter.get_bucket("k1").tokens == 9

    def test_tier_change_updates_capacity(self, make_credential, make_limiter):
        """Capacity follows the credential's current tier."""
        limiter = make_limiter([make_credential("k1", tier=ApiTier.TIER1)])

        limiter.reconcile([make_credential("k1", tier=ApiTier.FREE)])

        bucket = limiter.get_bucket("k1")
        assert bucket.max_tokens == 10
        assert bucket.tokens == 10

    def test_removed_keys_are_dropped(self, make_credential, make_limiter):
        """Retired keys vanish from memory and selection."""
        limiter = make_limiter([make_credential("k1"), make_credential("k2")])

        limiter.reconcile([make_credential("k2")])

        assert limiter.get_bucket("k1") is None
        assert [s.key_id for s in limiter.status_snapshot()] == ["k2"]

    def test_clear_credential_state_removes_persisted_records(
        self, quota_store, make_credential, make_limiter
    ):
        limiter = make_limiter([make_credential("k1")])
        limiter.consume("k1")
        assert quota_store.load_bucket("k1") is not None

        limiter.reconcile([])
        limiter.clear_credential_state("k1")

        assert quota_store.load_bucket("k1") is None
        assert quota_store.load_daily("k1") is None


class TestStatusSnapshot:
    """Test per-key status reporting."""

    def test_reports_each_key(self, make_credential, make_limiter):
        limiter = make_limiter([make_credential("k1", label="main"), make_credential("k2")])
        limiter.consume("k1")
        limiter.mark_exhausted("k2")

        first, second = limiter.status_snapshot()

        assert first.label == "main"
        assert first.available_tokens == 9
        assert first.daily_used == 1
        assert first.daily_limit == 250
        assert first.is_available is True

        assert second.available_tokens == 0
        assert second.has_any_token is False
        assert second.is_exhausted is True
