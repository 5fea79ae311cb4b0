"""
Global configuration for enrollgate.

Convention over configuration: every setting has a working default, can be
overridden by an ENROLLGATE_* environment variable, and can be overridden
again at startup through ENROLLGATE.configure().

Hierarchy of precedence (highest to lowest):
1. Values set via ENROLLGATE.configure()
2. Environment variables (ENROLLGATE_*) - when allow_env_override=True
3. Hardcoded defaults (in dataclass fields)

Example:
    >>> from enrollgate import ENROLLGATE
    >>>
    >>> ENROLLGATE.config.rate_limit.technical_max_requests
    10
    >>> ENROLLGATE.configure(
    ...     auth={"access_token": "static-credential"},
    ...     store={"backend": "redis", "redis_url": "redis://localhost:6379/0"},
    ... )
"""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass, field, fields, replace
from typing import Any, Literal, Self

RateLimitStrategy = Literal["fixed_window", "token_bucket"]
StoreBackend = Literal["memory", "redis"]

_SECTIONS = ("auth", "upstream", "rate_limit", "store")
_SENSITIVE_FIELDS = ("access_token",)

DEFAULT_BASE_URL = "https://fsh-developer.jacad.com.br/api/v1"


# =============================================================================
# Exceptions
# =============================================================================


class ConfigEnvVarError(ValueError):
    """Raised when an environment variable has an invalid value."""

    def __init__(
        self,
        env_var: str,
        value: str,
        expected_type: str,
        cause: Exception | None = None,
    ):
        self.env_var = env_var
        self.value = value
        self.expected_type = expected_type
        super().__init__(f"Invalid value for {env_var}: '{value}' (expected {expected_type})")
        self.__cause__ = cause


class ConfigValidationError(ValueError):
    """Raised when a configuration value fails validation."""

    def __init__(
        self,
        field: str,
        value: Any,
        message: str,
        section: str | None = None,
    ):
        self.field = field
        self.value = value
        self.section = section
        prefix = f"[{section}] " if section else ""
        shown = "********" if field in _SENSITIVE_FIELDS else repr(value)
        super().__init__(f"{prefix}Invalid value for '{field}': {shown}. {message}")


# =============================================================================
# Environment Variables
# =============================================================================


class EnvVars:
    """
    Reads environment variables with type conversion.

    Example:
        >>> EnvVars.get("ENROLLGATE_AUTH_REQUEST_TIMEOUT", type_hint=float)
        10.0
        >>> EnvVars.get("UNDEFINED_VAR")
        None
    """

    @staticmethod
    def get(
        var_name: str,
        type_hint: Any = str,
        converter: Callable[[str], Any] | None = None,
    ) -> Any:
        """
        Read an environment variable, converting it to the field's type.

        Returns None when the variable is unset or empty.

        Raises:
            ConfigEnvVarError: If the value cannot be converted.
        """
        raw_value = os.environ.get(var_name)
        if not raw_value:
            return None

        actual_converter = converter or EnvVars._infer_converter(type_hint)
        try:
            return actual_converter(raw_value)
        except (ValueError, TypeError) as e:
            raise ConfigEnvVarError(
                env_var=var_name,
                value=raw_value,
                expected_type=type_hint.__name__ if hasattr(type_hint, "__name__") else str(type_hint),
                cause=e,
            ) from e

    @staticmethod
    def _infer_converter(type_hint: Any) -> Callable[[str], Any]:
        # annotations are strings here (from __future__ import annotations)
        type_str = str(type_hint)

        if type_hint is int or type_str == "int":
            return int
        if type_hint is float or type_str == "float":
            return float
        if type_hint is bool or type_str == "bool":
            return lambda v: v.lower() in ("true", "1", "yes")
        return str


# =============================================================================
# Base Class
# =============================================================================


@dataclass(frozen=True)
class OverridableConfig:
    """
    Base class for the immutable configuration sections.

    Example:
        >>> config = UpstreamConfig()
        >>> config.with_overrides({"request_timeout": 5.0}).request_timeout
        5.0
    """

    def with_overrides(self, overrides: dict[str, Any]) -> Self:
        """
        Return a copy with the given fields replaced. None values are ignored.

        Raises:
            ValueError: If overrides contains unknown field names.
        """
        if not overrides:
            return self

        valid_fields = {f.name for f in fields(self)}
        invalid_fields = set(overrides.keys()) - valid_fields
        if invalid_fields:
            raise ValueError(
                f"Unknown config fields: {invalid_fields}. "
                f"Valid fields are: {valid_fields}"
            )

        filtered = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **filtered) if filtered else self

    def with_env_vars(self) -> Self:
        """
        Return a copy with the env vars declared in field metadata applied.

        Raises:
            ConfigEnvVarError: If an env var has an invalid value.
        """
        overrides: dict[str, Any] = {}
        for f in fields(self):
            env_var = f.metadata.get("env")
            if env_var:
                value = EnvVars.get(var_name=env_var, type_hint=f.type)
                if value is not None:
                    overrides[f.name] = value
        return self.with_overrides(overrides)


def _require_http_url(value: str, field_name: str, section: str) -> None:
    if not (value.startswith("http://") or value.startswith("https://")):
        raise ConfigValidationError(
            field_name, value,
            "Must start with 'http://' or 'https://'.", section=section
        )


def _require_positive(value: float, field_name: str, section: str) -> None:
    if value <= 0:
        raise ConfigValidationError(
            field_name, value,
            "Must be greater than 0.", section=section
        )


# =============================================================================
# Configuration Dataclasses
# =============================================================================


@dataclass(frozen=True)
class AuthConfig(OverridableConfig):
    """
    Credential manager settings.

    Attributes:
        access_token: Static pre-shared credential sent to the token endpoint.
            Env var: ENROLLGATE_AUTH_ACCESS_TOKEN

        base_url: Base URL of the upstream authentication API.
            Env var: ENROLLGATE_AUTH_BASE_URL

        token_path: Path of the token endpoint.
            Env var: ENROLLGATE_AUTH_TOKEN_PATH

        request_timeout: Timeout in seconds for the authentication call.
            Env var: ENROLLGATE_AUTH_REQUEST_TIMEOUT

        safety_margin: Seconds subtracted from the upstream expiry before a
            token is cached. A token is never served past (expiry - margin).
            Env var: ENROLLGATE_AUTH_SAFETY_MARGIN

        cache_key: Store key of the cached token.
            Env var: ENROLLGATE_AUTH_CACHE_KEY

        lock_key: Store key of the cluster-wide authentication lock.
            Env var: ENROLLGATE_AUTH_LOCK_KEY

        lock_ttl: Seconds the authentication lock lives if never released.
            Also the longest time a caller waits on another instance.
            Env var: ENROLLGATE_AUTH_LOCK_TTL

        lock_poll_interval: Seconds between cache polls while another
            instance authenticates.
            Env var: ENROLLGATE_AUTH_LOCK_POLL_INTERVAL

        startup_max_retries: Retries of transient failures during warm-up.
            Env var: ENROLLGATE_AUTH_STARTUP_MAX_RETRIES
    """

    access_token: str | None = field(default=None, repr=False, metadata={"env": "ENROLLGATE_AUTH_ACCESS_TOKEN"})
    base_url: str = field(default=DEFAULT_BASE_URL, metadata={"env": "ENROLLGATE_AUTH_BASE_URL"})
    token_path: str = field(default="/auth/token", metadata={"env": "ENROLLGATE_AUTH_TOKEN_PATH"})
    request_timeout: float = field(default=10.0, metadata={"env": "ENROLLGATE_AUTH_REQUEST_TIMEOUT"})
    safety_margin: float = field(default=300.0, metadata={"env": "ENROLLGATE_AUTH_SAFETY_MARGIN"})
    cache_key: str = field(default="enrollgate:auth:token", metadata={"env": "ENROLLGATE_AUTH_CACHE_KEY"})
    lock_key: str = field(default="enrollgate:auth:lock", metadata={"env": "ENROLLGATE_AUTH_LOCK_KEY"})
    lock_ttl: float = field(default=15.0, metadata={"env": "ENROLLGATE_AUTH_LOCK_TTL"})
    lock_poll_interval: float = field(default=0.2, metadata={"env": "ENROLLGATE_AUTH_LOCK_POLL_INTERVAL"})
    startup_max_retries: int = field(default=3, metadata={"env": "ENROLLGATE_AUTH_STARTUP_MAX_RETRIES"})

    def has_credentials(self) -> bool:
        return bool(self.access_token)

    def validate(self) -> Self:
        if self.access_token is not None and self.access_token == "":
            raise ConfigValidationError(
                "access_token", self.access_token,
                "Must not be empty string.", section="auth"
            )
        _require_http_url(self.base_url, "base_url", "auth")
        if not self.token_path.startswith("/"):
            raise ConfigValidationError(
                "token_path", self.token_path,
                "Must start with '/'.", section="auth"
            )
        _require_positive(self.request_timeout, "request_timeout", "auth")
        if self.safety_margin < 0:
            raise ConfigValidationError(
                "safety_margin", self.safety_margin,
                "Must be >= 0.", section="auth"
            )
        if not self.cache_key or not self.lock_key:
            raise ConfigValidationError(
                "cache_key/lock_key", (self.cache_key, self.lock_key),
                "Must not be empty.", section="auth"
            )
        if self.lock_ttl <= self.request_timeout:
            raise ConfigValidationError(
                "lock_ttl", self.lock_ttl,
                f"Must be greater than request_timeout ({self.request_timeout}).", section="auth"
            )
        _require_positive(self.lock_poll_interval, "lock_poll_interval", "auth")
        if self.startup_max_retries < 0:
            raise ConfigValidationError(
                "startup_max_retries", self.startup_max_retries,
                "Must be >= 0.", section="auth"
            )
        return self


@dataclass(frozen=True)
class UpstreamConfig(OverridableConfig):
    """
    Settings of the upstream enrollment (business) API.

    Attributes:
        base_url: Base URL of the enrollment API.
            Env var: ENROLLGATE_UPSTREAM_BASE_URL

        search_path: Path of the enrollment search endpoint.
            Env var: ENROLLGATE_UPSTREAM_SEARCH_PATH

        request_timeout: Timeout in seconds for business calls.
            Env var: ENROLLGATE_UPSTREAM_REQUEST_TIMEOUT

        page_size: Page size requested from the search endpoint.
            Env var: ENROLLGATE_UPSTREAM_PAGE_SIZE

        max_search_term_length: Longest accepted search term.
            Env var: ENROLLGATE_UPSTREAM_MAX_SEARCH_TERM_LENGTH
    """

    base_url: str = field(default=DEFAULT_BASE_URL, metadata={"env": "ENROLLGATE_UPSTREAM_BASE_URL"})
    search_path: str = field(
        default="/controle-acesso/matriculas-entrada-saida",
        metadata={"env": "ENROLLGATE_UPSTREAM_SEARCH_PATH"},
    )
    request_timeout: float = field(default=15.0, metadata={"env": "ENROLLGATE_UPSTREAM_REQUEST_TIMEOUT"})
    page_size: int = field(default=500, metadata={"env": "ENROLLGATE_UPSTREAM_PAGE_SIZE"})
    max_search_term_length: int = field(default=100, metadata={"env": "ENROLLGATE_UPSTREAM_MAX_SEARCH_TERM_LENGTH"})

    def validate(self) -> Self:
        _require_http_url(self.base_url, "base_url", "upstream")
        if not self.search_path.startswith("/"):
            raise ConfigValidationError(
                "search_path", self.search_path,
                "Must start with '/'.", section="upstream"
            )
        _require_positive(self.request_timeout, "request_timeout", "upstream")
        _require_positive(self.page_size, "page_size", "upstream")
        _require_positive(self.max_search_term_length, "max_search_term_length", "upstream")
        return self


@dataclass(frozen=True)
class RateLimitConfig(OverridableConfig):
    """
    Dual-tier rate limiting.

    Available strategies:
        - "fixed_window": Counters in the shared state store. Correct with
            several service instances. Default.
        - "token_bucket": Process-local buckets. Single instance only.

    Attributes:
        strategy: Env var: ENROLLGATE_RATE_LIMIT_STRATEGY

        technical_max_requests: Per-client requests per window.
            Env var: ENROLLGATE_RATE_LIMIT_TECHNICAL_MAX_REQUESTS

        technical_time_window: Per-client window in seconds.
            Env var: ENROLLGATE_RATE_LIMIT_TECHNICAL_TIME_WINDOW

        business_max_requests: Global requests per window.
            Env var: ENROLLGATE_RATE_LIMIT_BUSINESS_MAX_REQUESTS

        business_time_window: Global window in seconds.
            Env var: ENROLLGATE_RATE_LIMIT_BUSINESS_TIME_WINDOW

        key_prefix: Namespace of the counters in the store.
            Env var: ENROLLGATE_RATE_LIMIT_KEY_PREFIX
    """

    strategy: RateLimitStrategy = field(default="fixed_window", metadata={"env": "ENROLLGATE_RATE_LIMIT_STRATEGY"})
    technical_max_requests: int = field(default=10, metadata={"env": "ENROLLGATE_RATE_LIMIT_TECHNICAL_MAX_REQUESTS"})
    technical_time_window: float = field(default=1.0, metadata={"env": "ENROLLGATE_RATE_LIMIT_TECHNICAL_TIME_WINDOW"})
    business_max_requests: int = field(default=1000, metadata={"env": "ENROLLGATE_RATE_LIMIT_BUSINESS_MAX_REQUESTS"})
    business_time_window: float = field(default=3600.0, metadata={"env": "ENROLLGATE_RATE_LIMIT_BUSINESS_TIME_WINDOW"})
    key_prefix: str = field(default="enrollgate:ratelimit", metadata={"env": "ENROLLGATE_RATE_LIMIT_KEY_PREFIX"})

    def validate(self) -> Self:
        valid_strategies = ("fixed_window", "token_bucket")
        if self.strategy not in valid_strategies:
            raise ConfigValidationError(
                "strategy", self.strategy,
                f"Must be one of: {valid_strategies}.", section="rate_limit"
            )
        _require_positive(self.technical_max_requests, "technical_max_requests", "rate_limit")
        _require_positive(self.technical_time_window, "technical_time_window", "rate_limit")
        _require_positive(self.business_max_requests, "business_max_requests", "rate_limit")
        _require_positive(self.business_time_window, "business_time_window", "rate_limit")
        if not self.key_prefix:
            raise ConfigValidationError(
                "key_prefix", self.key_prefix,
                "Must not be empty.", section="rate_limit"
            )
        return self


@dataclass(frozen=True)
class StoreConfig(OverridableConfig):
    """
    Shared state store backend.

    Attributes:
        backend: "memory" (single instance) or "redis" (shared).
            Env var: ENROLLGATE_STORE_BACKEND

        redis_url: Redis connection URL, required for the redis backend.
            Env var: ENROLLGATE_STORE_REDIS_URL

        socket_timeout: Redis connect/read timeout in seconds.
            Env var: ENROLLGATE_STORE_SOCKET_TIMEOUT
    """

    backend: StoreBackend = field(default="memory", metadata={"env": "ENROLLGATE_STORE_BACKEND"})
    redis_url: str | None = field(default=None, metadata={"env": "ENROLLGATE_STORE_REDIS_URL"})
    socket_timeout: float = field(default=5.0, metadata={"env": "ENROLLGATE_STORE_SOCKET_TIMEOUT"})

    def validate(self) -> Self:
        valid_backends = ("memory", "redis")
        if self.backend not in valid_backends:
            raise ConfigValidationError(
                "backend", self.backend,
                f"Must be one of: {valid_backends}.", section="store"
            )
        if self.backend == "redis" and not self.redis_url:
            raise ConfigValidationError(
                "redis_url", self.redis_url,
                "Required when backend is 'redis'.", section="store"
            )
        _require_positive(self.socket_timeout, "socket_timeout", "store")
        return self


@dataclass(frozen=True)
class ConfigEntry:
    """
    A configuration field with its resolved value and where it came from.

    Attributes:
        name: Field name.
        value: Resolved value.
        source: "default", "env:VAR_NAME" or "configure".
    """

    name: str
    value: Any
    source: str

    @property
    def formatted_value(self) -> str:
        """
        Value formatted for display: credentials masked, long values cut.

        Examples:
            >>> ConfigEntry("access_token", "super-secret-key", "configure").formatted_value
            'supe********-key'
        """
        if self.name in _SENSITIVE_FIELDS and self.value is not None:
            secret = str(self.value)
            if len(secret) >= 12:
                return f"{secret[:4]}********{secret[-4:]}"
            return "********"

        if self.value is None:
            return "None"

        str_value = str(self.value)
        max_length = 50
        if len(str_value) > max_length:
            return str_value[: max_length - 3] + "..."
        return str_value


@dataclass(frozen=True)
class EnrollGateConfig:
    """
    Aggregates every configuration section.

    Attributes:
        auth: Credential manager settings.
        upstream: Enrollment API settings.
        rate_limit: Dual-tier rate limiting.
        store: Shared state store backend.
    """

    auth: AuthConfig = field(default_factory=AuthConfig)
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    # {"section": {"field": "source"}}
    sources: dict[str, dict[str, str]] = field(default_factory=dict, repr=False, compare=False)

    def with_env_vars(self) -> EnrollGateConfig:
        """Return a new config with ENROLLGATE_* environment variables applied."""
        sources = {s: dict(f) for s, f in self.sources.items()}
        for section_name in _SECTIONS:
            for f in fields(getattr(self, section_name)):
                env_var = f.metadata.get("env")
                if env_var and os.environ.get(env_var):
                    sources.setdefault(section_name, {})[f.name] = f"env:{env_var}"

        return EnrollGateConfig(
            auth=self.auth.with_env_vars(),
            upstream=self.upstream.with_env_vars(),
            rate_limit=self.rate_limit.with_env_vars(),
            store=self.store.with_env_vars(),
            sources=sources,
        )

    def with_section_overrides(
        self,
        *,
        auth: dict[str, Any] | None = None,
        upstream: dict[str, Any] | None = None,
        rate_limit: dict[str, Any] | None = None,
        store: dict[str, Any] | None = None,
    ) -> EnrollGateConfig:
        """
        Return a new config with per-section overrides merged in.

        Example:
            >>> EnrollGateConfig().with_section_overrides(
            ...     upstream={"request_timeout": 5.0},
            ... )
        """
        overrides = {"auth": auth, "upstream": upstream, "rate_limit": rate_limit, "store": store}
        sources = {s: dict(f) for s, f in self.sources.items()}
        for section_name, section_overrides in overrides.items():
            for name in section_overrides or {}:
                sources.setdefault(section_name, {})[name] = "configure"

        return EnrollGateConfig(
            auth=self.auth.with_overrides(auth or {}),
            upstream=self.upstream.with_overrides(upstream or {}),
            rate_limit=self.rate_limit.with_overrides(rate_limit or {}),
            store=self.store.with_overrides(store or {}),
            sources=sources,
        )

    def explain_data(self) -> dict[str, list[ConfigEntry]]:
        """Return every section's fields with their values and sources."""
        result: dict[str, list[ConfigEntry]] = {}
        for section_name in _SECTIONS:
            section_config = getattr(self, section_name)
            section_sources = self.sources.get(section_name, {})
            result[section_name] = [
                ConfigEntry(
                    name=f.name,
                    value=getattr(section_config, f.name),
                    source=section_sources.get(f.name, "default"),
                )
                for f in fields(section_config)
            ]
        return result


# =============================================================================
# Global Configuration Singleton
# =============================================================================


class _EnrollGate:
    """
    Singleton holding the active configuration.

    Use `ENROLLGATE.configure()` at startup and `ENROLLGATE.config` to read.
    """

    def __init__(self) -> None:
        self._config: EnrollGateConfig = EnrollGateConfig().with_env_vars()

    def configure(
        self,
        *,
        auth: dict[str, Any] | None = None,
        upstream: dict[str, Any] | None = None,
        rate_limit: dict[str, Any] | None = None,
        store: dict[str, Any] | None = None,
        allow_env_override: bool = True,
    ) -> EnrollGateConfig:
        """
        Replace the active configuration.

        Args:
            auth: AuthConfig overrides.
            upstream: UpstreamConfig overrides.
            rate_limit: RateLimitConfig overrides.
            store: StoreConfig overrides.
            allow_env_override: If True (default), env vars fill in the
                fields not given here. If False, env vars are ignored.

        Returns:
            The validated configuration.

        Raises:
            ValueError: If a dict contains unknown field names.
            ConfigValidationError: If a value fails validation.
        """
        base = EnrollGateConfig()
        if allow_env_override:
            base = base.with_env_vars()

        self._config = base.with_section_overrides(
            auth=auth,
            upstream=upstream,
            rate_limit=rate_limit,
            store=store,
        )
        return self.validate()

    @property
    def config(self) -> EnrollGateConfig:
        return self._config

    def reset(self) -> EnrollGateConfig:
        """Back to defaults + env vars. Mostly for tests."""
        self._config = EnrollGateConfig().with_env_vars()
        return self.validate()

    def validate(self) -> EnrollGateConfig:
        """
        Validate every section of the active configuration.

        Raises:
            ConfigValidationError: If any value is invalid.
        """
        self._config.auth.validate()
        self._config.upstream.validate()
        self._config.rate_limit.validate()
        self._config.store.validate()
        return self._config

    def explain(self, output: Callable[[str], None] = print) -> None:
        """
        Print the active configuration and where each value came from.

        Args:
            output: Line sink, `print` by default. `logger.info` works too.

        Example:
            >>> ENROLLGATE.explain()
            enrollgate Configuration:
            ...
        """
        name_width = 25
        value_width = 50
        total_width = 2 + name_width + 2 + (value_width + 2) + 1 + 8

        output("enrollgate Configuration:")
        output("=" * total_width)
        output(f"  {'Field':<{name_width}} │ {'Value':<{value_width}} │ Source")
        output(f"--{'-' * name_width}-+{'-' * (value_width + 2)}+--------")

        for section_name, entries in self._config.explain_data().items():
            output(f"[{section_name}]")
            for entry in entries:
                dots = "." * (name_width - len(entry.name))
                value_padded = entry.formatted_value.ljust(value_width)
                marker = "✎" if entry.source != "default" else " "
                output(f"  {entry.name} {dots} {value_padded} {marker} {entry.source}")

        output("=" * total_width)

    def __repr__(self) -> str:
        return f"ENROLLGATE(config={self._config!r})"


ENROLLGATE: _EnrollGate = _EnrollGate()
ENROLLGATE.validate()
