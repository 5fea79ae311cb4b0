"""
Bearer token lifecycle for the upstream enrollment API.

The upstream hands out short-lived bearer tokens in exchange for a static
pre-shared credential. `CredentialManager` obtains one, caches it in the
shared StateStore with a TTL that stops `safety_margin` seconds before the
upstream expiry, and renews it lazily: the first caller that finds the cache
empty authenticates, and every concurrent caller waits for that same call.

The main classes are:
- CredentialManager: get_valid_token(), authenticate(), invalidate().
- TokenInfo: Token value plus absolute expiry.
- AuthenticationError: Permanent failure (bad credential, malformed response).
- TransientAuthError: Retryable failure (network, timeout, 5xx).

Example:
    >>> from enrollgate._store import InMemoryStateStore
    >>> credentials = CredentialManager(
    ...     access_token="static-credential",
    ...     store=InMemoryStateStore(),
    ... )
    >>> token = credentials.get_valid_token()
"""

from __future__ import annotations

import json
import logging
import math
import threading
import time
import uuid
from concurrent.futures import Future, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import requests

from enrollgate._retry import RetryableError
from enrollgate._store import StateStore, StoreUnavailableError
from enrollgate._utils import sleep_with_jitter

if TYPE_CHECKING:
    from enrollgate._config import AuthConfig

logger = logging.getLogger(__name__)


# =============================================================================
# Exceptions
# =============================================================================


class AuthenticationError(Exception):
    """
    Raised when the upstream definitively refuses to authenticate us.

    Covers a rejected static credential (HTTP 401/403) and responses that
    cannot be turned into a usable token. Never retried: fatal at startup,
    propagated as a service failure at runtime.

    Attributes:
        message: Description of the failure.
        cause: The underlying exception, if any.
    """

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


class TransientAuthError(RetryableError):
    """
    Raised when authentication failed for a reason that may go away.

    Network errors, timeouts and non-401/403 HTTP errors. The credential
    manager never retries these itself; callers using `Retrying` will.

    Attributes:
        message: Description of the failure.
        cause: The underlying exception, if any.
    """

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class TokenInfo:
    """
    Bearer token with its absolute expiry.

    Attributes:
        access_token: The bearer token.
        expires_at: Unix timestamp of the upstream-declared expiry.
    """

    access_token: str = field(repr=False)
    expires_at: float

    def to_json(self) -> str:
        return json.dumps({"access_token": self.access_token, "expires_at": self.expires_at})

    @classmethod
    def from_json(cls, raw: str) -> TokenInfo:
        """
        Raises:
            ValueError: If `raw` is not a cached token document.
        """
        try:
            data = json.loads(raw)
            return cls(access_token=str(data["access_token"]), expires_at=float(data["expires_at"]))
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Malformed cached token entry: {type(e).__name__}") from e


@dataclass
class _Flight:
    """An authentication in progress inside this process."""

    forced: bool
    future: Future[TokenInfo] = field(default_factory=Future)


def parse_expiry(value: Any) -> float:
    """
    Turn the upstream `expiresIn` field into a unix timestamp.

    `expiresIn` is an absolute instant, not a duration. Accepted forms:
    an ISO-8601 string (naive values are read as UTC), or a number of epoch
    milliseconds. Numbers below 10**11 are read as epoch seconds instead.

    Example:
        >>> parse_expiry("2030-01-01T00:00:00Z")
        1893456000.0
        >>> parse_expiry(1893456000000)
        1893456000.0

    Raises:
        ValueError: If the value is not a recognizable instant.
    """
    if isinstance(value, bool) or value is None:
        raise ValueError(f"Unsupported expiry value: {value!r}")

    if isinstance(value, str):
        text = value.strip()
        try:
            value = float(text)
        except ValueError:
            parsed = datetime.fromisoformat(text)
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.timestamp()

    if isinstance(value, (int, float)):
        number = float(value)
        if not math.isfinite(number) or number <= 0:
            raise ValueError(f"Unsupported expiry value: {value!r}")
        return number / 1000.0 if number >= 1e11 else number

    raise ValueError(f"Unsupported expiry value: {value!r}")


# =============================================================================
# Credential Manager
# =============================================================================


class CredentialManager:
    """
    Acquires, caches and renews the upstream bearer token.

    Features:
        - Shared cache: the token lives in the StateStore; an entry being
          present means it is still outside the safety margin.
        - Single-flight: one authentication call at a time per process,
          and per cluster when the store is shared (store-side lock).
        - No hidden retries: transient failures surface as TransientAuthError.

    State store failures propagate as StoreUnavailableError: without the
    store we can neither trust nor share a token.

    Attributes:
        DEFAULT_SAFETY_MARGIN: Seconds cut from the upstream expiry (5 min).

    Args:
        access_token: Static pre-shared credential.
        store: Shared state store.
        base_url: Base URL of the upstream authentication API.
        token_path: Path of the token endpoint.
        request_timeout: Timeout of the authentication call, in seconds.
        safety_margin: Seconds cut from the upstream expiry before caching.
        cache_key: Store key of the cached token.
        lock_key: Store key of the cluster-wide authentication lock.
        lock_ttl: Lifetime of that lock, and the longest wait on a peer.
        lock_poll_interval: Seconds between cache polls while a peer holds the lock.
    """

    DEFAULT_BASE_URL = "https://fsh-developer.jacad.com.br/api/v1"
    DEFAULT_SAFETY_MARGIN = 300.0

    def __init__(
        self,
        access_token: str,
        store: StateStore,
        base_url: str = DEFAULT_BASE_URL,
        token_path: str = "/auth/token",
        request_timeout: float = 10.0,
        safety_margin: float = DEFAULT_SAFETY_MARGIN,
        cache_key: str = "enrollgate:auth:token",
        lock_key: str = "enrollgate:auth:lock",
        lock_ttl: float = 15.0,
        lock_poll_interval: float = 0.2,
    ):
        assert access_token, "access_token cannot be empty"
        assert store is not None, "store is required"
        assert request_timeout > 0, "request_timeout must be greater than 0."
        assert safety_margin >= 0, "safety_margin must be >= 0."
        assert lock_ttl > 0, "lock_ttl must be greater than 0."
        assert lock_poll_interval > 0, "lock_poll_interval must be greater than 0."

        self._access_token = access_token
        self._store = store
        self._token_url = f"{base_url.rstrip('/')}{token_path}"
        self._request_timeout = request_timeout
        self._safety_margin = safety_margin
        self._cache_key = cache_key
        self._lock_key = lock_key
        self._lock_ttl = lock_ttl
        self._lock_poll_interval = lock_poll_interval

        self._flight: _Flight | None = None
        self._flight_lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def get_valid_token(self) -> str:
        """
        Return a token that is valid for at least the safety margin.

        Served from the cache when possible; otherwise authenticates, or waits
        for the authentication some other caller already started.

        Raises:
            AuthenticationError: If the upstream rejects the credential.
            TransientAuthError: If authentication failed transiently.
            StoreUnavailableError: If the state store cannot be used.
        """
        cached = self.current_token()
        if cached is not None:
            return cached.access_token
        return self._single_flight(force=False).access_token

    def authenticate(self) -> str:
        """
        Authenticate against the upstream, ignoring any cached token.

        Concurrent forced calls share one upstream request.

        Raises:
            AuthenticationError: If the upstream rejects the credential.
            TransientAuthError: If authentication failed transiently.
            StoreUnavailableError: If the state store cannot be used.
        """
        return self._single_flight(force=True).access_token

    def invalidate(self, stale_token: str) -> None:
        """
        Drop the cached token if it is still `stale_token`.

        A token written by a concurrent renewal in the meantime is left alone.
        """
        raw = self._store.get(self._cache_key)
        if raw is None:
            return
        try:
            cached = TokenInfo.from_json(raw)
        except ValueError:
            cached = None
        if cached is None or cached.access_token == stale_token:
            if self._store.compare_and_delete(self._cache_key, raw):
                logger.info("🔄 Cached upstream token invalidated.")

    def current_token(self) -> TokenInfo | None:
        """
        Return the cached token, or None when there is no usable one.

        A cached token whose expiry is already inside the safety margin
        counts as missing, even if its store entry has not expired yet.

        Raises:
            StoreUnavailableError: If the state store cannot be read.
        """
        raw = self._store.get(self._cache_key)
        if raw is None:
            return None
        try:
            token = TokenInfo.from_json(raw)
        except ValueError as e:
            logger.warning(f"⚠️ Ignoring cached token entry: {e}")
            return None
        if time.time() >= token.expires_at - self._safety_margin:
            return None
        return token

    # -------------------------------------------------------------------------
    # Single-flight coordination
    # -------------------------------------------------------------------------

    def _single_flight(self, force: bool) -> TokenInfo:
        """
        Run at most one authentication per process and share its outcome.

        A forced caller never reuses a non-forced flight, since that flight
        may answer from the cache with the very token being replaced; it waits
        for that flight to end and then starts (or joins) a forced one.
        """
        while True:
            with self._flight_lock:
                current = self._flight
                if current is None:
                    flight = _Flight(forced=force)
                    self._flight = flight
                    break

            if current.forced or not force:
                logger.debug("Authentication already in flight; waiting for its outcome.")
                return current.future.result()

            wait([current.future])

        try:
            token = self._lead(force)
        except BaseException as e:
            flight.future.set_exception(e)
            raise
        else:
            flight.future.set_result(token)
            return token
        finally:
            with self._flight_lock:
                self._flight = None

    def _lead(self, force: bool) -> TokenInfo:
        """Authenticate as this process's flight leader, coordinating with peer instances."""
        owner = uuid.uuid4().hex
        deadline = time.monotonic() + self._lock_ttl

        while True:
            if self._store.set_if_absent(self._lock_key, owner, self._lock_ttl):
                try:
                    if not force:
                        # an earlier flight (ours or a peer's) may have just filled the cache
                        cached = self.current_token()
                        if cached is not None:
                            return cached
                    return self._fetch_and_cache()
                finally:
                    self._release_lock(owner)

            if time.monotonic() >= deadline:
                raise TransientAuthError("Timed out waiting for another instance to authenticate.")

            logger.debug("Another instance holds the authentication lock; polling the token cache.")
            sleep_with_jitter(self._lock_poll_interval)

            cached = self.current_token()
            if cached is not None:
                return cached

    def _release_lock(self, owner: str) -> None:
        try:
            self._store.compare_and_delete(self._lock_key, owner)
        except StoreUnavailableError as e:
            logger.warning(
                f"⚠️ Could not release the authentication lock ({e.message}); "
                f"it expires on its own in {self._lock_ttl:.0f}s."
            )

    # -------------------------------------------------------------------------
    # Upstream authentication
    # -------------------------------------------------------------------------

    def _fetch_and_cache(self) -> TokenInfo:
        """
        Request a new token and publish it to the cache.

        The cache TTL is `floor(expires_at - now - safety_margin)` in whole
        seconds, so the entry disappears before the token enters the margin.
        A TTL below one second is rejected rather than cached.

        Raises:
            AuthenticationError: If the computed TTL is below one second.
        """
        token = self._request_token()

        ttl = math.floor(token.expires_at - time.time() - self._safety_margin)
        if ttl < 1:
            logger.error(
                f"❌ Upstream issued a token expiring at {token.expires_at:.0f}, "
                f"inside the {self._safety_margin:.0f}s safety margin. Refusing to use it."
            )
            raise AuthenticationError(
                "Upstream issued a token that expires within the safety margin."
            )

        self._store.set(self._cache_key, token.to_json(), ttl=ttl)
        logger.info(f"✅ Authenticated with upstream. Token cached for {ttl}s.")
        return token

    def _request_token(self) -> TokenInfo:
        """
        Exchange the static credential for a bearer token.

        Raises:
            AuthenticationError: On HTTP 401/403 or an unusable response body.
            TransientAuthError: On any other HTTP error, network error or timeout.
        """
        logger.info("🔐 Authenticating with upstream...")
        try:
            response = requests.post(
                self._token_url,
                json={},
                headers={"token": self._access_token, "Content-Type": "application/json"},
                timeout=self._request_timeout,
            )
            response.raise_for_status()

            data = response.json()
            access_token = data["token"]
            if not isinstance(access_token, str) or not access_token:
                raise AuthenticationError("Invalid token response: empty 'token' field")

            return TokenInfo(access_token=access_token, expires_at=parse_expiry(data["expiresIn"]))

        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            if status in (401, 403):
                logger.error(f"❌ Upstream rejected the static credential (HTTP {status}).")
                raise AuthenticationError(
                    f"Upstream rejected the static credential (HTTP {status}).",
                    cause=e,
                ) from e
            logger.warning(f"⚠️ Authentication request failed (HTTP {status}).")
            raise TransientAuthError(f"Authentication request failed (HTTP {status}).", cause=e) from e
        except requests.JSONDecodeError as e:
            raise AuthenticationError("Invalid token response: body is not JSON", cause=e) from e
        except requests.RequestException as e:
            logger.warning(f"⚠️ Authentication request failed: {type(e).__name__}")
            raise TransientAuthError(f"Authentication request failed: {type(e).__name__}", cause=e) from e
        except KeyError as e:
            raise AuthenticationError(f"Invalid token response: missing {e} field", cause=e) from e
        except (TypeError, ValueError) as e:
            raise AuthenticationError(f"Invalid token response: {e}", cause=e) from e


# =============================================================================
# Helper Functions
# =============================================================================


def create_credential_manager(store: StateStore, config: AuthConfig | None = None) -> CredentialManager:
    """
    Create a CredentialManager from configuration.

    Args:
        store: Shared state store for the token cache and lock.
        config: Auth settings. If None, uses ENROLLGATE.config.auth.

    Raises:
        ValueError: If no static credential is configured.
    """
    if config is None:
        from enrollgate._config import ENROLLGATE

        config = ENROLLGATE.config.auth

    if not config.has_credentials():
        raise ValueError(
            "Upstream credential not configured. "
            "Set it via ENROLLGATE.configure(auth={'access_token': ...}) "
            "or the ENROLLGATE_AUTH_ACCESS_TOKEN environment variable."
        )

    return CredentialManager(
        access_token=config.access_token,  # type: ignore[arg-type]
        store=store,
        base_url=config.base_url,
        token_path=config.token_path,
        request_timeout=config.request_timeout,
        safety_margin=config.safety_margin,
        cache_key=config.cache_key,
        lock_key=config.lock_key,
        lock_ttl=config.lock_ttl,
        lock_poll_interval=config.lock_poll_interval,
    )
