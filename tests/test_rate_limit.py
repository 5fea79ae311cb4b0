"""Tests for the dual-tier rate limiter."""

import unittest
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import Mock

import pytest

from enrollgate._config import RateLimitConfig
from enrollgate._rate_limit import (
    Decision,
    FixedWindowRateLimiter,
    RateLimiter,
    RateLimitExceededError,
    TokenBucketRateLimiter,
    create_rate_limiter,
)
from enrollgate._store import InMemoryStateStore, StateStore, StoreUnavailableError


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> InMemoryStateStore:
    return InMemoryStateStore(clock=clock)


@pytest.fixture
def limiter(store: InMemoryStateStore) -> RateLimiter:
    return create_rate_limiter(store, RateLimitConfig())


# =============================================================================
# Fixed window
# =============================================================================


class TestFixedWindowRateLimiter:
    """Tests for FixedWindowRateLimiter."""

    def test_allows_up_to_capacity(self, store):
        tier = FixedWindowRateLimiter(store, capacity=3, window=1, key_prefix="rl:t")

        decisions = [tier.check("client") for _ in range(3)]

        assert [d.allowed for d in decisions] == [True, True, True]
        assert [d.remaining for d in decisions] == [2, 1, 0]

    def test_denies_over_capacity(self, store):
        tier = FixedWindowRateLimiter(store, capacity=3, window=1, key_prefix="rl:t")
        for _ in range(3):
            tier.check("client")

        decision = tier.check("client")

        assert decision == Decision(allowed=False, remaining=0, retry_after_seconds=1)

    def test_resets_after_window(self, store, clock):
        tier = FixedWindowRateLimiter(store, capacity=1, window=1, key_prefix="rl:t")
        assert tier.check("client").allowed
        assert not tier.check("client").allowed

        clock.advance(1)

        assert tier.check("client").allowed

    def test_keys_are_independent(self, store):
        tier = FixedWindowRateLimiter(store, capacity=1, window=1, key_prefix="rl:t")

        assert tier.check("a").allowed
        assert tier.check("b").allowed
        assert not tier.check("a").allowed

    def test_counter_key_is_namespaced(self, store):
        tier = FixedWindowRateLimiter(store, capacity=5, window=1, key_prefix="rl:t")
        tier.check("10.0.0.1")

        assert store.get("rl:t:10.0.0.1") == "1"

    def test_retry_after_rounds_fractional_window_up(self, store):
        tier = FixedWindowRateLimiter(store, capacity=1, window=0.5, key_prefix="rl:t")
        tier.check("client")

        assert tier.check("client").retry_after_seconds == 1

    def test_peek_does_not_consume(self, store):
        tier = FixedWindowRateLimiter(store, capacity=2, window=1, key_prefix="rl:t")

        for _ in range(5):
            assert tier.peek("client") == Decision(allowed=True, remaining=2, retry_after_seconds=0)

        tier.check("client")
        assert tier.peek("client").remaining == 1

    def test_peek_reports_exhausted_window(self, store):
        tier = FixedWindowRateLimiter(store, capacity=2, window=1, key_prefix="rl:t")
        tier.check("client")
        tier.check("client")

        assert tier.peek("client") == Decision(allowed=False, remaining=0, retry_after_seconds=1)

    def test_exactly_capacity_admitted_under_concurrency(self, store):
        tier = FixedWindowRateLimiter(store, capacity=10, window=60, key_prefix="rl:t")

        with ThreadPoolExecutor(max_workers=8) as pool:
            decisions = list(pool.map(lambda _: tier.check("client"), range(50)))

        assert sum(d.allowed for d in decisions) == 10

    def test_counters_of_departed_clients_are_freed(self, clock):
        store = InMemoryStateStore(clock=clock, purge_every=100)
        tier = FixedWindowRateLimiter(store, capacity=10, window=1, key_prefix="rl:t")

        for i in range(10_000):
            tier.check(f"10.0.{i // 256}.{i % 256}")
            if i % 100 == 99:
                clock.advance(1)

        assert len(store) <= 200

    def test_fails_open_when_store_unavailable(self):
        broken = Mock(spec=StateStore)
        broken.increment.side_effect = StoreUnavailableError("State store increment failed")
        broken.get.side_effect = StoreUnavailableError("State store get failed")
        tier = FixedWindowRateLimiter(broken, capacity=1, window=1, key_prefix="rl:t")

        assert tier.check("client") == Decision(allowed=True, remaining=0, retry_after_seconds=0)
        assert tier.peek("client") == Decision(allowed=True, remaining=0, retry_after_seconds=0)

    def test_rejects_invalid_capacity(self, store):
        with pytest.raises(AssertionError):
            FixedWindowRateLimiter(store, capacity=0, window=1, key_prefix="rl:t")


# =============================================================================
# Token bucket
# =============================================================================


class TestTokenBucketRateLimiter:
    """Tests for the process-local TokenBucketRateLimiter."""

    def test_starts_full_and_denies_when_empty(self, clock):
        tier = TokenBucketRateLimiter(capacity=2, window=1, clock=clock)

        assert tier.check("client").allowed
        assert tier.check("client").allowed
        decision = tier.check("client")

        assert not decision.allowed
        assert decision.retry_after_seconds == 1

    def test_refills_over_time(self, clock):
        tier = TokenBucketRateLimiter(capacity=2, window=1, clock=clock)
        tier.check("client")
        tier.check("client")

        clock.advance(0.5)

        assert tier.check("client").allowed
        assert not tier.check("client").allowed

    def test_retry_after_reflects_refill_rate(self, clock):
        tier = TokenBucketRateLimiter(capacity=10, window=100, clock=clock)
        for _ in range(10):
            tier.check("client")

        assert tier.check("client").retry_after_seconds == 10

    def test_peek_does_not_consume(self, clock):
        tier = TokenBucketRateLimiter(capacity=1, window=1, clock=clock)

        assert tier.peek("client").allowed
        assert tier.peek("client").allowed
        assert tier.check("client").allowed
        assert not tier.peek("client").allowed

    def test_idle_buckets_keep_their_level_within_a_window(self, clock):
        tier = TokenBucketRateLimiter(capacity=10, window=3600, idle_timeout=60, clock=clock)
        for _ in range(10):
            tier.check("client")

        clock.advance(120)

        # 120s at 10 tokens/hour refills a fraction of a token
        assert not tier.check("client").allowed


# =============================================================================
# Dual tier
# =============================================================================


class TestRateLimiter:
    """Tests for the dual-tier RateLimiter built from default configuration."""

    def test_technical_allows_ten_then_denies(self, limiter):
        decisions = [limiter.check_technical("10.0.0.1") for _ in range(11)]

        assert all(d.allowed for d in decisions[:10])
        assert decisions[10] == Decision(allowed=False, remaining=0, retry_after_seconds=1)

    def test_technical_resets_after_one_second(self, limiter, clock):
        for _ in range(11):
            limiter.check_technical("10.0.0.1")

        clock.advance(1)

        assert limiter.check_technical("10.0.0.1").allowed

    def test_technical_is_per_client(self, limiter):
        for _ in range(10):
            limiter.check_technical("10.0.0.1")

        assert not limiter.check_technical("10.0.0.1").allowed
        assert limiter.check_technical("10.0.0.2").allowed

    def test_missing_client_key_shares_unknown_bucket(self, limiter):
        for _ in range(10):
            limiter.check_technical("")

        assert not limiter.check_technical("").allowed

    def test_business_allows_thousand_per_hour(self, limiter, clock):
        decisions = [limiter.check_business() for _ in range(1001)]

        assert sum(d.allowed for d in decisions) == 1000
        assert decisions[1000] == Decision(allowed=False, remaining=0, retry_after_seconds=3600)

        clock.advance(3599)
        assert not limiter.check_business().allowed

        clock.advance(1)
        assert limiter.check_business().allowed

    def test_peeks_do_not_consume(self, limiter):
        limiter.check_technical("10.0.0.1")
        limiter.check_business()

        for _ in range(20):
            assert limiter.peek_technical("10.0.0.1").remaining == 9
            assert limiter.peek_business().remaining == 999


class TestCreateRateLimiter(unittest.TestCase):
    """Tests for create_rate_limiter()."""

    def test_fixed_window_by_default(self):
        limiter = create_rate_limiter(InMemoryStateStore(), RateLimitConfig())

        self.assertIsInstance(limiter.technical, FixedWindowRateLimiter)
        self.assertIsInstance(limiter.business, FixedWindowRateLimiter)
        self.assertEqual(limiter.technical.capacity, 10)
        self.assertEqual(limiter.business.window, 3600.0)

    def test_token_bucket_fallback(self):
        with self.assertLogs("enrollgate._rate_limit", level="WARNING"):
            limiter = create_rate_limiter(InMemoryStateStore(), RateLimitConfig(strategy="token_bucket"))

        self.assertIsInstance(limiter.technical, TokenBucketRateLimiter)
        self.assertIsInstance(limiter.business, TokenBucketRateLimiter)

    def test_custom_prefix(self):
        store = InMemoryStateStore()
        limiter = create_rate_limiter(store, RateLimitConfig(key_prefix="svc"))
        limiter.check_technical("c1")
        limiter.check_business()

        self.assertEqual(store.get("svc:technical:c1"), "1")
        self.assertEqual(store.get("svc:business:global"), "1")


class TestRateLimitExceededError(unittest.TestCase):
    def test_attributes(self):
        error = RateLimitExceededError("technical", 1)

        self.assertEqual(error.tier, "technical")
        self.assertEqual(error.retry_after_seconds, 1)
        self.assertIn("technical", str(error))


if __name__ == "__main__":
    unittest.main()
