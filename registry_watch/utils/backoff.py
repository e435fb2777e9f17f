"""
Retry backoff used when forwarding a change (or reconnecting the feed) fails.
"""

import logging
import threading
from typing import Optional

logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, exponent: float, cap_ms: float) -> float:
    """
    Milliseconds to wait before retrying after failed attempt ``attempt``.

    ``attempt`` is 0 for the first failure. No jitter:

        >>> backoff_delay(0, 2, 30000)
        1000
        >>> backoff_delay(9, 2, 30000)
        30000
    """
    if attempt < 0:
        raise ValueError("attempt must be non-negative")
    if exponent <= 0:
        raise ValueError("exponent must be positive")
    if cap_ms <= 0:
        raise ValueError("cap_ms must be positive")
    return min((attempt + 1) ** exponent * 1000, cap_ms)


def wait(seconds: float, stop_event: Optional[threading.Event] = None) -> bool:
    """
    Sleep for ``seconds``, waking early if ``stop_event`` is set.

    Returns:
        True if the full wait elapsed, False if it was interrupted
    """
    if stop_event is None:
        stop_event = threading.Event()
    return not stop_event.wait(seconds)


def backoff(
    attempt: int,
    exponent: float,
    cap_ms: float,
    stop_event: Optional[threading.Event] = None
) -> bool:
    """Wait out the backoff for ``attempt``; False if interrupted by ``stop_event``."""
    delay_ms = backoff_delay(attempt, exponent, cap_ms)
    logger.info(
        f"Retrying ({attempt}), waiting for {delay_ms}ms",
        extra={"attempt": attempt, "delay_ms": delay_ms}
    )
    return wait(delay_ms / 1000, stop_event)
