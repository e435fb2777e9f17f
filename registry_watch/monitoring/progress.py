"""
Progress reporting for the change consumer.

Every processed change publishes the current and head sequence as gauges
and logs a line such as:

    [progress] Synced 50/200 changes (25.00%) (150 remaining) (3 in queue)
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .metrics import MetricsSink
from ..connectors.changes.models import Cursor, cursor_position

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Progress:
    """Snapshot of how far the consumer is behind the feed head."""
    current: int
    total: int
    percent: str
    remaining: int


def compute_progress(current: int, total: int) -> Progress:
    """
    Percent is ``max(current, 1) / total * 100`` with two decimals.

    Until the head sequence is known (``total`` <= 0) the percent is
    reported as ``"0.00"``.
    """
    if total > 0:
        percent = f"{max(current, 1) / total * 100:.2f}"
    else:
        percent = "0.00"
    return Progress(current=current, total=total, percent=percent, remaining=total - current)


class ProgressReporter:
    """
    Publishes gauges and a progress log line per processed change.

    Args:
        metrics: Sink receiving ``sequence.total`` and ``sequence.current``
        total_sequence: Returns the cached feed head position
        queue_length: Returns the forwarding queue backlog
    """

    def __init__(
        self,
        metrics: MetricsSink,
        total_sequence: Callable[[], int],
        queue_length: Optional[Callable[[], int]] = None,
    ):
        self.metrics = metrics
        self.total_sequence = total_sequence
        self.queue_length = queue_length

    def report(self, cursor: Cursor) -> Optional[Progress]:
        """
        Publish progress for ``cursor``.

        Never raises: progress is informational and must not disturb
        change processing. Returns None when reporting failed.
        """
        try:
            return self._report(cursor)
        except Exception as e:
            logger.warning(f"Progress report failed: {e}", extra={"cursor": cursor})
            return None

    def _report(self, cursor: Cursor) -> Progress:
        current = cursor_position(cursor) or 0
        queue_length = self.queue_length() if self.queue_length is not None else 0
        progress = compute_progress(current, self.total_sequence())

        self.metrics.gauge("sequence.total", progress.total)
        self.metrics.gauge("sequence.current", progress.current)

        logger.info(
            "[progress] Synced %d/%d changes (%s%%) (%s remaining) (%s in queue)",
            progress.current,
            progress.total,
            progress.percent,
            progress.remaining,
            queue_length,
        )
        return progress
