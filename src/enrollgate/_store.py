"""
Shared state store used by the credential cache and the rate-limit counters.

Everything that has to be shared between concurrent requests (and, with a
networked backend, between service instances) lives behind the `StateStore`
interface instead of in module-level variables:

- the cached bearer token (a plain entry with a TTL),
- the cluster-wide authentication lock (`set_if_absent` + `compare_and_delete`),
- the fixed-window rate-limit counters (`increment`).

Available implementations:
    - InMemoryStateStore: Thread-safe, process-local. Single-instance
      deployments and tests.
    - RedisStateStore: redis-py backed. Multi-instance deployments.

Example:
    >>> store = InMemoryStateStore()
    >>> store.increment("ratelimit:technical:10.0.0.1", ttl=1)
    1
    >>> store.set("auth:token", "abc", ttl=60)
    >>> store.get("auth:token")
    'abc'
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, override

import redis

if TYPE_CHECKING:
    from enrollgate._config import StoreConfig

logger = logging.getLogger(__name__)


# =============================================================================
# Exceptions
# =============================================================================


class StoreUnavailableError(Exception):
    """
    Raised when the state store cannot be reached or fails a command.

    Rate-limit checks treat it as "fail open"; the credential manager lets
    it propagate ("fail closed").

    Attributes:
        message: What failed. Never contains stored values.
        cause: The backend exception, if any.
    """

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


# =============================================================================
# Abstract Base Class
# =============================================================================


class StateStore(ABC):
    """
    Key-value store with expiry and an atomic counter.

    All TTLs are in seconds and must be positive. Implementations must be
    thread-safe, and `increment` must be atomic (never read-then-write).
    """

    @abstractmethod
    def get(self, key: str) -> str | None:
        """Return the value for `key`, or None if absent or expired."""
        pass

    @abstractmethod
    def set(self, key: str, value: str, ttl: float) -> None:
        """Store `value` under `key`, replacing any previous value."""
        pass

    @abstractmethod
    def increment(self, key: str, ttl: float) -> int:
        """
        Atomically add one to the counter at `key` and return the new count.

        When the counter is created by this call, it expires after `ttl`
        seconds. Later increments never extend the expiry, which is what
        makes the counter a fixed window.
        """
        pass

    @abstractmethod
    def set_if_absent(self, key: str, value: str, ttl: float) -> bool:
        """Store `value` only if `key` is absent. Returns True if stored."""
        pass

    @abstractmethod
    def compare_and_delete(self, key: str, expected: str) -> bool:
        """Delete `key` only if it currently holds `expected`. Returns True if deleted."""
        pass


# =============================================================================
# In-Memory Implementation
# =============================================================================


class InMemoryStateStore(StateStore):
    """
    Process-local store guarded by a single lock.

    Entries carry an absolute expiry computed from the injected clock and are
    dropped lazily when read. Keys that are never read again (one counter per
    client key, for instance) are swept every `purge_every` writes, so memory
    stays bounded by the keys live within one sweep interval. The clock
    defaults to `time.monotonic`; tests pass a fake one to move time forward.

    Args:
        clock: Zero-argument callable returning the current time in seconds.
        purge_every: Number of writes between two sweeps of expired entries.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, purge_every: int = 1000):
        assert purge_every > 0, "purge_every must be greater than 0."
        self._clock = clock
        self.purge_every = purge_every
        self._entries: dict[str, tuple[str, float]] = {}
        self._writes_since_purge = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _live_value(self, key: str) -> str | None:
        """Return the unexpired value of `key`. Caller must hold the lock."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def _purge_locked(self) -> int:
        now = self._clock()
        expired = [k for k, (_, expires_at) in self._entries.items() if now >= expires_at]
        for k in expired:
            del self._entries[k]
        self._writes_since_purge = 0
        return len(expired)

    def _record_write(self) -> None:
        """Count a write and sweep once the interval is reached. Caller must hold the lock."""
        self._writes_since_purge += 1
        if self._writes_since_purge >= self.purge_every:
            removed = self._purge_locked()
            if removed:
                logger.debug(f"🔍 Purged {removed} expired state store entries.")

    @override
    def get(self, key: str) -> str | None:
        with self._lock:
            return self._live_value(key)

    @override
    def set(self, key: str, value: str, ttl: float) -> None:
        assert ttl > 0, "ttl must be greater than 0."
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl)
            self._record_write()

    @override
    def increment(self, key: str, ttl: float) -> int:
        assert ttl > 0, "ttl must be greater than 0."
        with self._lock:
            current = self._live_value(key)
            if current is None:
                self._entries[key] = ("1", self._clock() + ttl)
                self._record_write()
                return 1
            count = int(current) + 1
            _, expires_at = self._entries[key]
            self._entries[key] = (str(count), expires_at)
            self._record_write()
            return count

    @override
    def set_if_absent(self, key: str, value: str, ttl: float) -> bool:
        assert ttl > 0, "ttl must be greater than 0."
        with self._lock:
            if self._live_value(key) is not None:
                return False
            self._entries[key] = (value, self._clock() + ttl)
            self._record_write()
            return True

    @override
    def compare_and_delete(self, key: str, expected: str) -> bool:
        with self._lock:
            if self._live_value(key) != expected:
                return False
            del self._entries[key]
            return True

    def purge_expired(self) -> int:
        """Drop every expired entry now. Returns how many were removed."""
        with self._lock:
            return self._purge_locked()


# =============================================================================
# Redis Implementation
# =============================================================================


class RedisStateStore(StateStore):
    """
    Store backed by Redis, shared by every service instance.

    `increment` and `compare_and_delete` run as Lua scripts so each is a
    single atomic server-side operation. TTLs are sent in milliseconds so
    sub-second windows work.

    Any `redis.RedisError` is re-raised as `StoreUnavailableError`.

    Example:
        >>> store = RedisStateStore.from_url("redis://localhost:6379/0")
        >>> store.verify_connection()

    Args:
        client: A configured `redis.Redis` client. Responses must be decoded
            (`decode_responses=True`).
    """

    # INCR, and set the expiry when the key is new or was left without one
    _INCREMENT_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 or redis.call('PTTL', KEYS[1]) == -1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
return count
"""

    _COMPARE_AND_DELETE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    def __init__(self, client: redis.Redis):
        assert client is not None, "Redis client is required."

        self.client = client
        self._increment = client.register_script(self._INCREMENT_SCRIPT)
        self._compare_and_delete = client.register_script(self._COMPARE_AND_DELETE_SCRIPT)

    @classmethod
    def from_url(cls, redis_url: str, socket_timeout: float = 5.0) -> RedisStateStore:
        """Build a store with a decoded client and bounded socket timeouts."""
        client = redis.Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client)

    @staticmethod
    def _ttl_ms(ttl: float) -> int:
        assert ttl > 0, "ttl must be greater than 0."
        return max(1, int(ttl * 1000))

    @contextmanager
    def _translate_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except redis.RedisError as e:
            logger.error(f"❌ Redis {operation} failed: {e}", exc_info=logger.isEnabledFor(logging.DEBUG))
            raise StoreUnavailableError(f"State store {operation} failed: {type(e).__name__}", cause=e) from e

    def verify_connection(self) -> None:
        """Ping the server; raises StoreUnavailableError if it can't be reached."""
        with self._translate_errors("ping"):
            self.client.ping()

    @override
    def get(self, key: str) -> str | None:
        with self._translate_errors("get"):
            value = self.client.get(key)
        return None if value is None else str(value)

    @override
    def set(self, key: str, value: str, ttl: float) -> None:
        px = self._ttl_ms(ttl)
        with self._translate_errors("set"):
            self.client.set(key, value, px=px)

    @override
    def increment(self, key: str, ttl: float) -> int:
        px = self._ttl_ms(ttl)
        with self._translate_errors("increment"):
            return int(self._increment(keys=[key], args=[px]))

    @override
    def set_if_absent(self, key: str, value: str, ttl: float) -> bool:
        px = self._ttl_ms(ttl)
        with self._translate_errors("set_if_absent"):
            return bool(self.client.set(key, value, nx=True, px=px))

    @override
    def compare_and_delete(self, key: str, expected: str) -> bool:
        with self._translate_errors("compare_and_delete"):
            return bool(int(self._compare_and_delete(keys=[key], args=[expected])))


# =============================================================================
# Helper Functions
# =============================================================================


def create_state_store(config: StoreConfig | None = None) -> StateStore:
    """
    Create the state store selected by configuration.

    Args:
        config: Store settings. If None, uses ENROLLGATE.config.store.

    Returns:
        An InMemoryStateStore or a RedisStateStore.

    Raises:
        ValueError: If the redis backend is selected without a URL.
    """
    if config is None:
        from enrollgate._config import ENROLLGATE

        config = ENROLLGATE.config.store

    if config.backend == "redis":
        if not config.redis_url:
            raise ValueError(
                "Redis backend selected but no URL configured. "
                "Set it via ENROLLGATE.configure(store={'redis_url': ...}) "
                "or the ENROLLGATE_STORE_REDIS_URL environment variable."
            )
        logger.debug("Using RedisStateStore for shared state.")
        return RedisStateStore.from_url(config.redis_url, socket_timeout=config.socket_timeout)

    logger.debug("Using InMemoryStateStore for shared state (single-instance deployment).")
    return InMemoryStateStore()
