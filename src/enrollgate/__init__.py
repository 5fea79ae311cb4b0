"""
enrollgate: a rate-limited, authenticated gateway to an enrollment API.

Sits between many untrusted callers and a single upstream academic
enrollment API, sharing one upstream credential safely across concurrent
requests and service instances.

Quick Start:
    >>> from enrollgate import ENROLLGATE, EnrollmentLookupService
    >>> ENROLLGATE.configure(auth={"access_token": "static-credential"})
    >>> service = EnrollmentLookupService.from_config()
    >>> service.warm_up()
    >>> records = service.verify("12345", client_key="10.0.0.1")
    >>> print(records[0].name)

Global Configuration:
    >>> from enrollgate import ENROLLGATE
    >>>
    >>> # Pre-loaded with defaults + env vars
    >>> window = ENROLLGATE.config.rate_limit.technical_time_window
    >>>
    >>> # Custom configuration
    >>> ENROLLGATE.configure(
    ...     auth={"access_token": "x", "safety_margin": 300},
    ...     rate_limit={"technical_max_requests": 10, "business_max_requests": 1000},
    ...     store={"backend": "redis", "redis_url": "redis://localhost:6379/0"},
    ... )

Service:
    - EnrollmentLookupService: verify / status / warm_up entry points.
    - EnrollmentRecord: One active enrollment.
    - ServiceStatus: Read-only limiter and token snapshot.
    - ErrorResponse: Sanitized error returned to end callers.
    - describe_error: Maps any service exception to an ErrorResponse.
    - InvalidSearchTermError: Exception raised for blank or oversized terms.

Gateway:
    - RequestGateway: Limiter -> token -> upstream call pipeline.
    - UpstreamRequest: A business call relative to the upstream base URL.
    - UpstreamError: Exception raised when a business call fails.
    - UpstreamAuthError: Exception raised after a second HTTP 401.

Authentication:
    - CredentialManager: Shared, single-flight token lifecycle.
    - TokenInfo: A cached bearer token with its expiry.
    - AuthenticationError: Exception raised when the credential is rejected.
    - TransientAuthError: Exception raised when authentication may succeed later.
    - create_credential_manager: Helper to create the manager from config.

Rate Limiting:
    - RateLimiter: Technical (per-client) plus business (global) tiers.
    - FixedWindowRateLimiter: Counter-per-window limiter over a StateStore.
    - TokenBucketRateLimiter: Process-local token bucket limiter.
    - Decision: Outcome of a limiter check.
    - RateLimitExceededError: Exception raised when a tier denies a call.
    - create_rate_limiter: Helper to create the limiter from config.

State Store:
    - StateStore: Abstract shared key-value store with expiry.
    - InMemoryStateStore: Single-process store.
    - RedisStateStore: Store shared across instances.
    - StoreUnavailableError: Exception raised when the store cannot be reached.
    - create_state_store: Helper to create the store from config.

Configuration:
    - ENROLLGATE: Global singleton for configuration.
    - EnrollGateConfig: Root configuration dataclass.
    - AuthConfig, UpstreamConfig, RateLimitConfig, StoreConfig: Sections.
    - ConfigEnvVarError: Exception raised when env var parsing fails.
    - ConfigValidationError: Exception raised when config validation fails.

HTTP Client:
    - HttpClient: Abstract base class for HTTP transports.
    - RequestsHttpClient: Transport on top of requests. Default.

Retry:
    - Retrying: Context manager for retry with exponential backoff.
    - RetryableError: Base class for exceptions that trigger automatic retry.
    - MaxRetriesExceededError: Exception raised when all retry attempts are exhausted.
"""

from importlib.metadata import version as _get_version

__version__ = _get_version("enrollgate")

from enrollgate._auth import (
    AuthenticationError,
    CredentialManager,
    TokenInfo,
    TransientAuthError,
    create_credential_manager,
)
from enrollgate._config import (
    ENROLLGATE,
    AuthConfig,
    ConfigEntry,
    ConfigEnvVarError,
    ConfigValidationError,
    EnrollGateConfig,
    RateLimitConfig,
    RateLimitStrategy,
    StoreBackend,
    StoreConfig,
    UpstreamConfig,
)
from enrollgate._gateway import (
    RequestGateway,
    UpstreamAuthError,
    UpstreamError,
    UpstreamRequest,
)
from enrollgate._http import (
    HttpClient,
    RequestsHttpClient,
)
from enrollgate._rate_limit import (
    Decision,
    FixedWindowRateLimiter,
    RateLimiter,
    RateLimitExceededError,
    TokenBucketRateLimiter,
    create_rate_limiter,
)
from enrollgate._retry import (
    MaxRetriesExceededError,
    RetryableError,
    Retrying,
)
from enrollgate._service import (
    EnrollmentLookupService,
    EnrollmentRecord,
    ErrorResponse,
    InvalidSearchTermError,
    ServiceStatus,
    describe_error,
)
from enrollgate._store import (
    InMemoryStateStore,
    RedisStateStore,
    StateStore,
    StoreUnavailableError,
    create_state_store,
)

__all__ = [
    "__version__",
    # Configuration
    "ENROLLGATE",
    "EnrollGateConfig",
    "ConfigEntry",
    "ConfigEnvVarError",
    "ConfigValidationError",
    "AuthConfig",
    "UpstreamConfig",
    "RateLimitConfig",
    "RateLimitStrategy",
    "StoreConfig",
    "StoreBackend",
    # Service
    "EnrollmentLookupService",
    "EnrollmentRecord",
    "ServiceStatus",
    "ErrorResponse",
    "describe_error",
    "InvalidSearchTermError",
    # Gateway
    "RequestGateway",
    "UpstreamRequest",
    "UpstreamError",
    "UpstreamAuthError",
    # Authentication
    "CredentialManager",
    "TokenInfo",
    "AuthenticationError",
    "TransientAuthError",
    "create_credential_manager",
    # Rate Limiting
    "RateLimiter",
    "FixedWindowRateLimiter",
    "TokenBucketRateLimiter",
    "Decision",
    "RateLimitExceededError",
    "create_rate_limiter",
    # State Store
    "StateStore",
    "InMemoryStateStore",
    "RedisStateStore",
    "StoreUnavailableError",
    "create_state_store",
    # HTTP Client
    "HttpClient",
    "RequestsHttpClient",
    # Retry
    "Retrying",
    "RetryableError",
    "MaxRetriesExceededError",
]
