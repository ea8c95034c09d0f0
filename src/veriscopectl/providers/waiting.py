"""Bounded polling for service readiness."""
from __future__ import annotations

import time
from collections.abc import Callable

from ..errors import ServiceTimeoutError


def wait_until(
    probe: Callable[[], bool],
    *,
    timeout: float,
    interval: float,
    what: str,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> float:
    """Poll *probe* every *interval* seconds until it succeeds.

    Returns the seconds waited. Raises :class:`ServiceTimeoutError` once
    *timeout* has elapsed without success.
    """
    started = clock()
    while True:
        if probe():
            return clock() - started
        elapsed = clock() - started
        if elapsed >= timeout:
            raise ServiceTimeoutError(
                f"Timed out after {timeout:g}s waiting for {what}",
                remediation=f"Check that {what} is healthy, then retry.",
            )
        sleep(min(interval, max(timeout - elapsed, 0.0)))


__all__ = ["wait_until"]
