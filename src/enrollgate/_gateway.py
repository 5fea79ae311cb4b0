"""
Request gateway: the one path every upstream business call takes.

For each call, in order, short-circuiting on the first denial or error:

1. technical rate limit for the client,
2. business (global) rate limit,
3. a valid bearer token from the CredentialManager,
4. the upstream call with `Authorization: Bearer <token>`,
5. on HTTP 401: invalidate that token, authenticate once, retry once.
   A second 401 raises UpstreamAuthError.

Every other upstream failure (network error, timeout, non-2xx, body that is
not JSON) raises UpstreamError straight away, without retrying.

Example:
    >>> gateway = RequestGateway(credentials, rate_limiter, base_url="https://api.example.com/v1")
    >>> payload = gateway.execute(
    ...     UpstreamRequest(path="/records", params={"pageSize": 10}),
    ...     client_key="10.0.0.1",
    ... )
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Literal

import requests

from enrollgate._auth import CredentialManager
from enrollgate._http import HttpClient, RequestsHttpClient
from enrollgate._rate_limit import RateLimiter, RateLimitExceededError
from enrollgate._utils import is_timeout_exception

logger = logging.getLogger(__name__)


# =============================================================================
# Exceptions
# =============================================================================


class UpstreamError(Exception):
    """
    Raised when a business call fails for any reason other than throttling.

    The cause is kept for diagnostics; the message never includes tokens or
    raw payloads.

    Attributes:
        message: Description of the failure.
        status_code: Upstream HTTP status, when there was a response.
        cause: The underlying exception, if any.
        timed_out: Whether the failure was a timeout.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        cause: Exception | None = None,
        timed_out: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.cause = cause
        self.timed_out = timed_out


class UpstreamAuthError(UpstreamError):
    """Raised when the upstream rejects the call both before and after a forced token renewal."""

    pass


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class UpstreamRequest:
    """
    A business call, relative to the gateway's base URL.

    Attributes:
        path: Endpoint path, starting with "/".
        method: "GET" (query params) or "POST" (JSON body).
        params: Query string parameters.
        data: JSON body for POST.
        headers: Extra headers. Authorization is always set by the gateway.
    """

    path: str
    method: Literal["GET", "POST"] = "GET"
    params: dict[str, Any] = field(default_factory=dict)
    data: dict[str, Any] | None = None
    headers: dict[str, str] = field(default_factory=dict)


# =============================================================================
# Gateway
# =============================================================================


class RequestGateway:
    """
    Runs the limiter -> token -> upstream call pipeline.

    Args:
        credentials: Source of bearer tokens.
        rate_limiter: Dual-tier admission control.
        base_url: Base URL of the upstream business API.
        http_client: Transport. Defaults to RequestsHttpClient.
        request_timeout: Timeout of each business call, in seconds.
    """

    def __init__(
        self,
        credentials: CredentialManager,
        rate_limiter: RateLimiter,
        base_url: str,
        http_client: HttpClient | None = None,
        request_timeout: float = 15.0,
    ):
        assert credentials is not None, "credentials is required."
        assert rate_limiter is not None, "rate_limiter is required."
        assert base_url, "base_url cannot be empty."
        assert request_timeout > 0, "request_timeout must be greater than 0."

        self._credentials = credentials
        self._rate_limiter = rate_limiter
        self._base_url = base_url.rstrip("/")
        self._http = http_client or RequestsHttpClient()
        self._request_timeout = request_timeout

    def execute(self, request: UpstreamRequest, client_key: str) -> Any:
        """
        Execute one business call on behalf of `client_key`.

        Returns:
            The decoded JSON body of the upstream response.

        Raises:
            RateLimitExceededError: If either tier denies the call.
            AuthenticationError: If a token cannot be obtained permanently.
            TransientAuthError: If a token cannot be obtained right now.
            StoreUnavailableError: If the token cache is unreachable.
            UpstreamAuthError: If the call is rejected twice with HTTP 401.
            UpstreamError: On any other upstream failure.
        """
        technical = self._rate_limiter.check_technical(client_key)
        if not technical.allowed:
            logger.warning(f"⏳ Technical rate limit exceeded for client '{client_key}'.")
            raise RateLimitExceededError("technical", technical.retry_after_seconds)

        business = self._rate_limiter.check_business()
        if not business.allowed:
            logger.warning("⏳ Business rate limit exceeded.")
            raise RateLimitExceededError("business", business.retry_after_seconds)

        token = self._credentials.get_valid_token()
        response = self._send(request, token)

        if response.status_code == 401:
            logger.warning(f"🔄 Upstream rejected the bearer token for {request.path}; re-authenticating once.")
            self._credentials.invalidate(token)
            token = self._credentials.authenticate()
            response = self._send(request, token)

            if response.status_code == 401:
                logger.error(f"❌ Upstream rejected a freshly issued token for {request.path}.")
                raise UpstreamAuthError(
                    "Upstream rejected the request after token renewal (HTTP 401).",
                    status_code=401,
                )

        return self._decode(request, response)

    def _send(self, request: UpstreamRequest, token: str) -> requests.Response:
        url = f"{self._base_url}{request.path}"
        headers = {
            **request.headers,
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        try:
            if request.method == "POST":
                return self._http.post(url, data=request.data, headers=headers, timeout=self._request_timeout)
            return self._http.get(url, params=request.params, headers=headers, timeout=self._request_timeout)
        except requests.RequestException as e:
            timed_out = is_timeout_exception(e)
            reason = "timed out" if timed_out else f"failed ({type(e).__name__})"
            logger.error(f"❌ Upstream call to {request.path} {reason}.", exc_info=logger.isEnabledFor(logging.DEBUG))
            raise UpstreamError(f"Upstream call {reason}.", cause=e, timed_out=timed_out) from e

    def _decode(self, request: UpstreamRequest, response: requests.Response) -> Any:
        try:
            response.raise_for_status()
        except requests.HTTPError as e:
            status = response.status_code
            logger.error(f"❌ Upstream call to {request.path} returned HTTP {status}.")
            raise UpstreamError(
                f"Upstream returned HTTP {status}.",
                status_code=status,
                cause=e,
                timed_out=status in (408, 504),
            ) from e

        try:
            return response.json()
        except ValueError as e:
            logger.error(f"❌ Upstream call to {request.path} returned a body that is not JSON.")
            raise UpstreamError(
                "Upstream returned a malformed payload.",
                status_code=response.status_code,
                cause=e,
            ) from e
