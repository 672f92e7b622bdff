"""Bounded waits with exponential backoff.

Used wherever the plugin has to wait on external state: an attached ENI
showing up as a host link, a device-index collision, an ENI that is still
in use right after detach.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delays(interval: float, max_interval: float, factor: float = 2.0):
    """Yield interval, interval*factor, ... capped at max_interval."""
    delay = interval
    while True:
        yield delay
        delay = min(delay * factor, max_interval)


def poll_until(
    probe: Callable[[], T | None],
    timeout: float,
    interval: float = 0.5,
    max_interval: float = 5.0,
    description: str = "condition",
    sleep: Callable[[float], None] = time.sleep,
) -> T | None:
    """Call `probe` until it returns a truthy value or `timeout` elapses.

    Returns:
        The probe's truthy value, or None on timeout
    """
    deadline = time.monotonic() + timeout
    for delay in backoff_delays(interval, max_interval):
        value = probe()
        if value:
            return value
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            logger.warning(f"Timed out after {timeout}s waiting for {description}")
            return None
        sleep(min(delay, remaining))
    return None


def retry(
    operation: Callable[[int], T],
    should_retry: Callable[[Exception], bool],
    attempts: int,
    interval: float = 0.5,
    max_interval: float = 5.0,
    description: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run `operation(attempt)` up to `attempts` times.

    Exceptions for which `should_retry` returns False, and the exception from
    the final attempt, propagate unchanged.
    """
    delays = backoff_delays(interval, max_interval)
    for attempt in range(attempts):
        try:
            return operation(attempt)
        except Exception as e:
            if attempt + 1 >= attempts or not should_retry(e):
                raise
            delay = next(delays)
            logger.info(
                f"{description} failed (attempt {attempt + 1}/{attempts}): {e}; "
                f"retrying in {delay:.1f}s"
            )
            sleep(delay)
    raise ValueError("attempts must be at least 1")
