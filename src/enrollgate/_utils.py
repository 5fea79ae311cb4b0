"""
Internal helpers shared by the enrollgate modules.

Nothing in here is part of the public API.
"""

from __future__ import annotations

import random
import time


def sleep_with_jitter(seconds: float, jitter_factor: float = 0.1) -> None:
    """
    Sleep for roughly `seconds`, randomized by +/- `jitter_factor`.

    Used wherever several workers may wake up at the same moment (retries,
    waiting on a peer instance that is authenticating) so they don't hit the
    store or the upstream in lockstep.

    Example:
        >>> sleep_with_jitter(1.0)  # sleeps between 0.9 and 1.1 seconds
    """
    jitter = random.uniform(-jitter_factor, jitter_factor)
    time.sleep(max(0.0, seconds * (1 + jitter)))


def is_timeout_exception(exc: BaseException) -> bool:
    """
    Tell whether an exception means "the other side took too long".

    Looks through the `cause` chain our own exceptions carry, so an
    UpstreamError or TransientAuthError wrapping a `requests.Timeout` is
    still recognized as a timeout.

    Args:
        exc: The exception to inspect.

    Returns:
        True for `requests.Timeout`, the builtin `TimeoutError`, or any
        wrapper whose cause is one of those.
    """
    import requests

    if isinstance(exc, (requests.Timeout, TimeoutError)):
        return True

    cause = getattr(exc, "cause", None) or exc.__cause__
    if cause is not None and cause is not exc:
        return is_timeout_exception(cause)

    return False
