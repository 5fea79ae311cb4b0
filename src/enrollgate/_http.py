"""
HTTP client abstraction used for upstream business calls.

The gateway talks to the enrollment API through `HttpClient`, so tests (or a
caller with special transport needs) can swap the transport without touching
the gateway's authentication and retry protocol.

Available implementations:
    - RequestsHttpClient: Plain `requests` calls. Default.

Example:
    >>> client = RequestsHttpClient()
    >>> response = client.get(
    ...     "https://api.example.com/v1/records",
    ...     params={"pageSize": 10},
    ...     headers={"Authorization": "Bearer abc"},
    ...     timeout=15,
    ... )
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, override

import requests

logger = logging.getLogger(__name__)


# =============================================================================
# Abstract Base Class
# =============================================================================


class HttpClient(ABC):
    """
    Minimal HTTP transport.

    Implementations do not authenticate and do not retry: the caller attaches
    the bearer header and decides what a given status code means.
    """

    @abstractmethod
    def get(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float = 30,
    ) -> requests.Response:
        """
        Execute a GET request.

        Raises:
            requests.RequestException: If the request could not be completed.
        """
        pass

    @abstractmethod
    def post(
        self,
        url: str,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float = 30,
    ) -> requests.Response:
        """
        Execute a POST request with a JSON body.

        Raises:
            requests.RequestException: If the request could not be completed.
        """
        pass


# =============================================================================
# Implementations
# =============================================================================


class RequestsHttpClient(HttpClient):
    """HttpClient on top of `requests`, one call per request."""

    @override
    def get(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float = 30,
    ) -> requests.Response:
        assert url, "URL cannot be empty."
        assert timeout is not None and timeout > 0, "Timeout must be greater than 0."

        logger.debug(f"🌐 GET {url}")
        return requests.get(url, params=params, headers=headers, timeout=timeout)

    @override
    def post(
        self,
        url: str,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float = 30,
    ) -> requests.Response:
        assert url, "URL cannot be empty."
        assert timeout is not None and timeout > 0, "Timeout must be greater than 0."

        logger.debug(f"🌐 POST {url}")
        return requests.post(url, json=data, headers=headers, timeout=timeout)
