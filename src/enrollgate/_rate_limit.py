"""
Admission control for requests hitting the enrollment API.

Two independent tiers gate every lookup:

- technical: keyed per client (usually the source address), 10 requests per
  second by default. Stops a single client from hammering the upstream.
- business: one global key for the whole deployment, 1000 requests per hour
  by default. Caps aggregate volume against the provider's contract.

Available implementations:
    - FixedWindowRateLimiter: Counter in the shared StateStore (INCR + expiry).
      Correct across several service instances. Default.
    - TokenBucketRateLimiter: Process-local lazy-refill bucket. Only valid for
      a single-instance deployment; kept as a fallback.

Example:
    >>> from enrollgate._store import InMemoryStateStore
    >>> store = InMemoryStateStore()
    >>> limiter = RateLimiter(
    ...     technical=FixedWindowRateLimiter(store, capacity=10, window=1, key_prefix="rl:technical"),
    ...     business=FixedWindowRateLimiter(store, capacity=1000, window=3600, key_prefix="rl:business"),
    ... )
    >>> limiter.check_technical("10.0.0.1")
    Decision(allowed=True, remaining=9, retry_after_seconds=0)
"""

from __future__ import annotations

import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, override

from enrollgate._store import StateStore, StoreUnavailableError

if TYPE_CHECKING:
    from enrollgate._config import RateLimitConfig

logger = logging.getLogger(__name__)


# =============================================================================
# Data Classes & Exceptions
# =============================================================================


@dataclass(frozen=True)
class Decision:
    """
    Outcome of a rate-limit check.

    Attributes:
        allowed: Whether the request may proceed.
        remaining: Requests left in the current window (0 when denied).
        retry_after_seconds: When denied, how long the caller should wait.
            0 when allowed.
    """

    allowed: bool
    remaining: int
    retry_after_seconds: int


class RateLimitExceededError(Exception):
    """
    Raised by the gateway when a tier denies a request.

    A throttling signal for the end caller, never a fatal condition.

    Attributes:
        tier: "technical" or "business".
        retry_after_seconds: Hint for when to try again.
    """

    def __init__(self, tier: str, retry_after_seconds: int):
        self.tier = tier
        self.retry_after_seconds = retry_after_seconds
        super().__init__(f"Rate limit exceeded ({tier}). Retry in {retry_after_seconds} seconds.")


# =============================================================================
# Abstract Base Class
# =============================================================================


class WindowLimiter(ABC):
    """
    A single tier: at most `capacity` requests per `window` seconds per key.

    `check` consumes quota; `peek` only reports and must never consume.
    """

    def __init__(self, capacity: int, window: float):
        assert capacity is not None and capacity > 0, "capacity must be greater than 0."
        assert window is not None and window > 0, "window must be greater than 0."

        self.capacity = capacity
        self.window = window

    @abstractmethod
    def check(self, key: str) -> Decision:
        pass

    @abstractmethod
    def peek(self, key: str) -> Decision:
        pass


# =============================================================================
# Implementations
# =============================================================================


class FixedWindowRateLimiter(WindowLimiter):
    """
    Fixed-window counter kept in the shared StateStore.

    Each check performs exactly one atomic `increment`; the counter expires
    `window` seconds after its first hit, which resets it. Denials don't
    clamp the count, and they always report `retry_after_seconds = window`
    rather than the exact time left in the window.

    If the store fails, the check fails open: it logs a warning and returns
    `allowed=True, remaining=0`.

    Args:
        store: Shared state store holding the counters.
        capacity: Requests admitted per window.
        window: Window length in seconds.
        key_prefix: Namespace for this tier's counters.
    """

    def __init__(self, store: StateStore, capacity: int, window: float, key_prefix: str):
        super().__init__(capacity, window)
        assert store is not None, "store is required."
        assert key_prefix, "key_prefix cannot be empty."

        self._store = store
        self._key_prefix = key_prefix

    def _counter_key(self, key: str) -> str:
        return f"{self._key_prefix}:{key}"

    @property
    def retry_after(self) -> int:
        return max(1, math.ceil(self.window))

    def _fail_open(self, key: str, exc: StoreUnavailableError) -> Decision:
        logger.warning(
            f"⚠️ Rate limit store unavailable for '{self._key_prefix}' ({exc.message}). "
            f"Failing open: request for key '{key}' admitted without counting."
        )
        return Decision(allowed=True, remaining=0, retry_after_seconds=0)

    @override
    def check(self, key: str) -> Decision:
        try:
            count = self._store.increment(self._counter_key(key), ttl=self.window)
        except StoreUnavailableError as e:
            return self._fail_open(key, e)

        if count > self.capacity:
            logger.debug(f"Rate limit '{self._key_prefix}' denied key '{key}' (count={count}).")
            return Decision(allowed=False, remaining=0, retry_after_seconds=self.retry_after)

        return Decision(allowed=True, remaining=self.capacity - count, retry_after_seconds=0)

    @override
    def peek(self, key: str) -> Decision:
        try:
            raw = self._store.get(self._counter_key(key))
        except StoreUnavailableError as e:
            return self._fail_open(key, e)

        count = int(raw) if raw else 0
        if count >= self.capacity:
            return Decision(allowed=False, remaining=0, retry_after_seconds=self.retry_after)
        return Decision(allowed=True, remaining=self.capacity - count, retry_after_seconds=0)


class TokenBucketRateLimiter(WindowLimiter):
    """
    Process-local token bucket with lazy refill.

    Single-instance fallback only: each process keeps its own buckets, so
    with N instances the effective limit is N times the configured one.
    Buckets refill at `capacity / window` tokens per second and start full.
    Denials report the whole seconds until the next token.

    Buckets idle for longer than `idle_timeout` (and at least one full window,
    so they would be full again anyway) are dropped on the next check.

    Args:
        capacity: Bucket size (burst) and tokens refilled per window.
        window: Refill period in seconds.
        idle_timeout: Seconds after which an untouched bucket is forgotten.
        clock: Time source, `time.monotonic` by default.
    """

    def __init__(
        self,
        capacity: int,
        window: float,
        idle_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(capacity, window)
        assert idle_timeout > 0, "idle_timeout must be greater than 0."

        self.idle_timeout = idle_timeout
        self._clock = clock
        self._refill_rate = capacity / window
        # key -> (tokens, last_refill)
        self._buckets: dict[str, tuple[float, float]] = {}
        self._lock = threading.Lock()

    def _refilled(self, key: str, now: float) -> float:
        """Return the refilled token count for `key`. Caller must hold the lock."""
        tokens, last_refill = self._buckets.get(key, (float(self.capacity), now))
        elapsed = max(0.0, now - last_refill)
        return min(float(self.capacity), tokens + elapsed * self._refill_rate)

    def _purge_idle(self, now: float) -> None:
        horizon = max(self.idle_timeout, self.window)
        idle = [k for k, (_, last) in self._buckets.items() if now - last > horizon]
        for k in idle:
            del self._buckets[k]

    def _denied(self, tokens: float) -> Decision:
        wait = math.ceil((1.0 - tokens) / self._refill_rate)
        return Decision(allowed=False, remaining=0, retry_after_seconds=max(1, wait))

    @override
    def check(self, key: str) -> Decision:
        with self._lock:
            now = self._clock()
            self._purge_idle(now)
            tokens = self._refilled(key, now)

            if tokens < 1.0:
                self._buckets[key] = (tokens, now)
                return self._denied(tokens)

            tokens -= 1.0
            self._buckets[key] = (tokens, now)
            return Decision(allowed=True, remaining=int(tokens), retry_after_seconds=0)

    @override
    def peek(self, key: str) -> Decision:
        with self._lock:
            tokens = self._refilled(key, self._clock())
        if tokens < 1.0:
            return self._denied(tokens)
        return Decision(allowed=True, remaining=int(tokens), retry_after_seconds=0)


# =============================================================================
# Dual-tier facade
# =============================================================================


class RateLimiter:
    """
    The two tiers consulted by the gateway, technical first.

    Args:
        technical: Per-client limiter.
        business: Global limiter; always checked against the same key.
    """

    BUSINESS_KEY = "global"

    def __init__(self, technical: WindowLimiter, business: WindowLimiter):
        assert technical is not None, "technical limiter is required."
        assert business is not None, "business limiter is required."

        self.technical = technical
        self.business = business

    def check_technical(self, client_key: str) -> Decision:
        return self.technical.check(client_key or "unknown")

    def check_business(self) -> Decision:
        return self.business.check(self.BUSINESS_KEY)

    def peek_technical(self, client_key: str) -> Decision:
        return self.technical.peek(client_key or "unknown")

    def peek_business(self) -> Decision:
        return self.business.peek(self.BUSINESS_KEY)


# =============================================================================
# Helper Functions
# =============================================================================


def create_rate_limiter(store: StateStore, config: RateLimitConfig | None = None) -> RateLimiter:
    """
    Build the dual-tier limiter from configuration.

    Args:
        store: Shared store for the fixed-window strategy (unused by the
            token-bucket fallback).
        config: Rate limit settings. If None, uses ENROLLGATE.config.rate_limit.

    Returns:
        A RateLimiter with both tiers configured.
    """
    if config is None:
        from enrollgate._config import ENROLLGATE

        config = ENROLLGATE.config.rate_limit

    if config.strategy == "token_bucket":
        logger.warning(
            "⚠️ Using process-local token bucket rate limiting. "
            "Limits are NOT shared across instances; use 'fixed_window' for multi-instance deployments."
        )
        return RateLimiter(
            technical=TokenBucketRateLimiter(config.technical_max_requests, config.technical_time_window),
            business=TokenBucketRateLimiter(config.business_max_requests, config.business_time_window),
        )

    return RateLimiter(
        technical=FixedWindowRateLimiter(
            store,
            capacity=config.technical_max_requests,
            window=config.technical_time_window,
            key_prefix=f"{config.key_prefix}:technical",
        ),
        business=FixedWindowRateLimiter(
            store,
            capacity=config.business_max_requests,
            window=config.business_time_window,
            key_prefix=f"{config.key_prefix}:business",
        ),
    )
