"""
Retry loop with exponential backoff.

Modelled on Tenacity's `Retrying`: iterate over attempts and run each one
inside a `with` block. Failures that are worth retrying are swallowed by
the block and the loop moves on after a backoff; anything else propagates.

Nothing inside the credential manager or the gateway retries on its own.
This helper exists for callers that decide to retry on their own cadence,
such as the startup authentication in `EnrollmentLookupService.warm_up()`.

Example:
    >>> for attempt in Retrying(max_retries=3, backoff_factor=0.5):
    ...     with attempt:
    ...         token = credentials.authenticate()
"""

from __future__ import annotations

import logging
from collections.abc import Generator
from dataclasses import dataclass

import requests

from enrollgate._utils import sleep_with_jitter

logger = logging.getLogger(__name__)


class RetryableError(Exception):
    """
    Marker base class for failures that are safe to retry.

    `Retrying` retries subclasses automatically, so new transient errors only
    need to extend this class to opt in.
    """

    pass


class MaxRetriesExceededError(Exception):
    """
    Raised when every attempt failed with a retryable error.

    Attributes:
        last_exception: The failure of the final attempt.
    """

    def __init__(self, message: str, last_exception: Exception | None = None):
        super().__init__(message)
        self.last_exception = last_exception


@dataclass(frozen=True)
class RetryAttempt:
    """
    Metadata about the attempt currently running.

    Attributes:
        attempt_number: Zero-based attempt index.
        max_retries: Retries configured on the owning `Retrying`.
    """

    attempt_number: int
    max_retries: int

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt_number >= self.max_retries


class Retrying:
    """
    Iterable of attempt contexts with exponential backoff between them.

    Args:
        max_retries: Retries after the first attempt. 0 disables retrying.
        backoff_factor: Sleep before retry n is `backoff_factor * 2 ** n`.
        retry_on_exceptions: Extra exception types worth retrying, on top of
            `RetryableError` subclasses. Defaults to network-level
            `requests` failures.
        skip_retry_on_exceptions: Types that are never retried. Checked
            first, so they win over everything else.
        logger_prefix: Prepended to log lines (e.g. "warm-up").

    Raises:
        MaxRetriesExceededError: When the last attempt fails with a
            retryable error.
    """

    def __init__(
        self,
        max_retries: int = 3,
        backoff_factor: float = 0.5,
        retry_on_exceptions: tuple[type[Exception], ...] = (
            requests.Timeout,
            requests.ConnectionError,
        ),
        skip_retry_on_exceptions: tuple[type[Exception], ...] = (),
        logger_prefix: str = "",
    ):
        assert max_retries >= 0, f"max_retries must be >= 0, got {max_retries}"
        assert backoff_factor > 0, f"backoff_factor must be > 0, got {backoff_factor}"

        self.max_retries = max_retries
        self.backoff_factor = backoff_factor
        self.retry_on_exceptions = retry_on_exceptions
        self.skip_retry_on_exceptions = skip_retry_on_exceptions
        self.logger_prefix = logger_prefix

        self._current_attempt = 0

    def __iter__(self) -> Generator[_RetryContext, None, None]:
        for attempt in range(self.max_retries + 1):
            self._current_attempt = attempt
            yield _RetryContext(self, attempt)

    def _should_retry(self, exception: Exception) -> bool:
        if isinstance(exception, self.skip_retry_on_exceptions):
            return False
        if isinstance(exception, RetryableError):
            return True
        return isinstance(exception, self.retry_on_exceptions)

    def _prefix(self) -> str:
        return f"{self.logger_prefix} | " if self.logger_prefix else ""

    def _handle_retry(self, exception: Exception) -> None:
        sleep_time = self.backoff_factor * (2 ** self._current_attempt)
        logger.warning(
            f"{self._prefix()}Attempt {self._current_attempt + 1}/{self.max_retries + 1} failed: {exception}. "
            f"Retrying in {sleep_time:.1f}s..."
        )
        sleep_with_jitter(sleep_time)

    def _handle_exhausted(self, exception: Exception) -> None:
        logger.error(f"{self._prefix()}Max retries ({self.max_retries}) exceeded. Last error: {exception}")
        raise MaxRetriesExceededError(
            f"Max retries exceeded. Last error: {exception}",
            last_exception=exception,
        ) from exception


class _RetryContext:
    """Context manager for one attempt; decides whether a failure is swallowed."""

    def __init__(self, retrying: Retrying, attempt: int):
        self._retrying = retrying
        self.attempt = attempt

    def __enter__(self) -> RetryAttempt:
        return RetryAttempt(attempt_number=self.attempt, max_retries=self._retrying.max_retries)

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> bool:
        if exc_val is None or not isinstance(exc_val, Exception):
            return False

        if not self._retrying._should_retry(exc_val):
            return False

        # retries disabled: surface the original error untouched
        if self._retrying.max_retries == 0:
            return False

        if self.attempt >= self._retrying.max_retries:
            self._retrying._handle_exhausted(exc_val)
            return False

        self._retrying._handle_retry(exc_val)
        return True
