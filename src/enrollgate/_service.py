"""
Service-facing surface of enrollgate.

`EnrollmentLookupService` is what an HTTP layer (or any other front end)
calls:

- `verify(search_term, client_key)`: look up active enrollments.
- `status(client_key)`: report limiter headroom and token presence without
  consuming quota.
- `warm_up()`: authenticate once before serving traffic.

`describe_error()` turns any exception raised by the service into a
categorized, sanitized response: internal details are logged, never
returned to the end caller.

Example:
    >>> from enrollgate import ENROLLGATE, EnrollmentLookupService
    >>> ENROLLGATE.configure(auth={"access_token": "static-credential"})
    >>> service = EnrollmentLookupService.from_config()
    >>> service.warm_up()
    >>> records = service.verify("12345", client_key="10.0.0.1")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from enrollgate._auth import (
    AuthenticationError,
    CredentialManager,
    TransientAuthError,
    create_credential_manager,
)
from enrollgate._gateway import RequestGateway, UpstreamAuthError, UpstreamError, UpstreamRequest
from enrollgate._rate_limit import Decision, RateLimiter, RateLimitExceededError, create_rate_limiter
from enrollgate._retry import MaxRetriesExceededError, Retrying
from enrollgate._store import StoreUnavailableError, create_state_store

if TYPE_CHECKING:
    from enrollgate._config import EnrollGateConfig, UpstreamConfig
    from enrollgate._http import HttpClient

logger = logging.getLogger(__name__)


# =============================================================================
# Exceptions
# =============================================================================


class InvalidSearchTermError(ValueError):
    """Raised when a search term is blank or longer than allowed."""

    pass


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class EnrollmentRecord:
    """
    One active enrollment, as returned by `verify()`.

    Attributes:
        name: Student name.
        ra: Academic registry number.
        course: Base course.
        turma: Class/group.
        active: Always True: the search endpoint only returns active enrollments.
    """

    name: str
    ra: str
    course: str
    turma: str
    active: bool = True

    @classmethod
    def from_upstream(cls, element: dict[str, Any]) -> EnrollmentRecord:
        return cls(
            name=element.get("nome") or "Name unavailable",
            ra=str(element.get("ra") or "RA unavailable"),
            course=element.get("cursoBase") or "Course unavailable",
            turma=element.get("turma") or "Class unavailable",
        )


@dataclass(frozen=True)
class ServiceStatus:
    """
    Read-only snapshot returned by `status()`.

    Attributes:
        technical: Technical tier headroom for the asking client.
        business: Global tier headroom.
        token_present: Whether a usable token is cached.
        token_expires_at: Upstream expiry of that token (unix time), if any.
    """

    technical: Decision
    business: Decision
    token_present: bool
    token_expires_at: float | None = None


@dataclass(frozen=True)
class ErrorResponse:
    """
    What the end caller is allowed to see about a failure.

    Attributes:
        status_code: Suggested HTTP status.
        category: Stable machine-readable category.
        message: Generic human-readable message.
        retry_after_seconds: Only set for throttling.
    """

    status_code: int
    category: str
    message: str
    retry_after_seconds: int | None = None


def describe_error(exc: BaseException) -> ErrorResponse:
    """
    Map an exception raised by the service to a sanitized ErrorResponse.

    The full exception is logged here; the returned message is generic.

    Example:
        >>> describe_error(RateLimitExceededError("technical", 1))
        ErrorResponse(status_code=429, category='rate_limited', message='Too many requests. Try again later.', retry_after_seconds=1)
    """
    if isinstance(exc, InvalidSearchTermError):
        return ErrorResponse(400, "invalid_request", str(exc))

    if isinstance(exc, RateLimitExceededError):
        return ErrorResponse(
            429, "rate_limited",
            "Too many requests. Try again later.",
            retry_after_seconds=exc.retry_after_seconds,
        )

    logger.error(f"💥 Lookup failed: {type(exc).__name__}: {exc}", exc_info=logger.isEnabledFor(logging.DEBUG))

    if isinstance(exc, MaxRetriesExceededError) and exc.last_exception is not None:
        return describe_error(exc.last_exception)
    if isinstance(exc, AuthenticationError):
        return ErrorResponse(502, "authentication_failed", "The enrollment system refused our credentials.")
    if isinstance(exc, UpstreamAuthError):
        return ErrorResponse(502, "upstream_auth_rejected", "The enrollment system rejected the request.")
    if isinstance(exc, UpstreamError) and exc.timed_out:
        return ErrorResponse(504, "upstream_timeout", "The enrollment system took too long to respond.")
    if isinstance(exc, (UpstreamError, TransientAuthError)):
        return ErrorResponse(502, "upstream_unavailable", "The enrollment system is temporarily unavailable.")
    if isinstance(exc, StoreUnavailableError):
        return ErrorResponse(503, "store_unavailable", "The service is temporarily unavailable.")
    return ErrorResponse(500, "internal_error", "Internal server error.")


# =============================================================================
# Service
# =============================================================================


class EnrollmentLookupService:
    """
    Enrollment lookups through the rate-limited, authenticated gateway.

    Args:
        gateway: Pipeline used for every upstream call.
        rate_limiter: Same limiter the gateway uses; read by `status()`.
        credentials: Same manager the gateway uses; read by `status()`.
        upstream: Search endpoint settings.
        startup_max_retries: Default retry budget of `warm_up()`.
    """

    def __init__(
        self,
        gateway: RequestGateway,
        rate_limiter: RateLimiter,
        credentials: CredentialManager,
        upstream: UpstreamConfig,
        startup_max_retries: int = 3,
    ):
        assert startup_max_retries >= 0, "startup_max_retries must be non-negative."
        self._gateway = gateway
        self._rate_limiter = rate_limiter
        self._credentials = credentials
        self._upstream = upstream
        self._startup_max_retries = startup_max_retries

    @classmethod
    def from_config(
        cls,
        config: EnrollGateConfig | None = None,
        http_client: HttpClient | None = None,
    ) -> EnrollmentLookupService:
        """
        Wire store, limiter, credentials and gateway from configuration.

        Args:
            config: If None, uses ENROLLGATE.config.
            http_client: Transport for business calls. Defaults to requests.

        Raises:
            ValueError: If the upstream credential is not configured.
        """
        if config is None:
            from enrollgate._config import ENROLLGATE

            config = ENROLLGATE.config

        store = create_state_store(config.store)
        rate_limiter = create_rate_limiter(store, config.rate_limit)
        credentials = create_credential_manager(store, config.auth)
        gateway = RequestGateway(
            credentials=credentials,
            rate_limiter=rate_limiter,
            base_url=config.upstream.base_url,
            http_client=http_client,
            request_timeout=config.upstream.request_timeout,
        )
        return cls(
            gateway,
            rate_limiter,
            credentials,
            config.upstream,
            startup_max_retries=config.auth.startup_max_retries,
        )

    def _validated(self, search_term: str) -> str:
        term = (search_term or "").strip()
        if not term:
            raise InvalidSearchTermError("A registration number (RA) or student name is required.")
        if len(term) > self._upstream.max_search_term_length:
            raise InvalidSearchTermError(
                f"Search term must be at most {self._upstream.max_search_term_length} characters."
            )
        return term

    def verify(self, search_term: str, client_key: str) -> list[EnrollmentRecord]:
        """
        Look up active enrollments matching a registration number or name.

        Returns:
            Matching records, empty when nothing matches.

        Raises:
            InvalidSearchTermError: If the term is blank or too long.
            RateLimitExceededError: If a rate-limit tier denies the call.
            AuthenticationError, TransientAuthError, StoreUnavailableError,
            UpstreamAuthError, UpstreamError: See RequestGateway.execute().
        """
        term = self._validated(search_term)
        logger.info(f"🔍 Enrollment lookup requested by '{client_key}'.")

        payload = self._gateway.execute(
            UpstreamRequest(
                path=self._upstream.search_path,
                params={"pageSize": self._upstream.page_size, "descricao": term},
            ),
            client_key=client_key,
        )

        elements = payload.get("elements") if isinstance(payload, dict) else None
        if not elements:
            logger.info("No enrollment found.")
            return []

        records = [EnrollmentRecord.from_upstream(e) for e in elements if isinstance(e, dict)]
        logger.info(f"✅ {len(records)} enrollment(s) found.")
        return records

    def status(self, client_key: str) -> ServiceStatus:
        """Report limiter headroom and token presence. Consumes no quota."""
        try:
            token = self._credentials.current_token()
        except StoreUnavailableError as e:
            logger.warning(f"⚠️ Token cache unavailable while reporting status: {e.message}")
            token = None

        return ServiceStatus(
            technical=self._rate_limiter.peek_technical(client_key),
            business=self._rate_limiter.peek_business(),
            token_present=token is not None,
            token_expires_at=token.expires_at if token is not None else None,
        )

    def warm_up(self, max_retries: int | None = None) -> None:
        """
        Authenticate before serving traffic.

        Transient failures are retried with backoff. A rejected credential
        is not: it means the deployment is misconfigured.

        Args:
            max_retries: Retries of transient failures. If None, uses the
                `startup_max_retries` the service was built with.

        Raises:
            AuthenticationError: If the upstream rejects the credential.
            MaxRetriesExceededError: If every attempt failed transiently.
            StoreUnavailableError: If the state store cannot be used.
        """
        for attempt in Retrying(
            max_retries=self._startup_max_retries if max_retries is None else max_retries,
            skip_retry_on_exceptions=(AuthenticationError, StoreUnavailableError),
            logger_prefix="warm-up",
        ):
            with attempt:
                self._credentials.get_valid_token()
                logger.info("🚀 Upstream authentication ready.")
                return
