"""
Drives one change into the forwarding queue, retrying until it is accepted.
"""

import logging
import threading
from typing import Any, Callable, Dict, Optional

from prometheus_client import Counter

from .queue_store import ForwardingQueue
from ..connectors.changes.models import ChangeEvent, ForwardCancelled
from ..monitoring.error_reporting import ErrorReporter
from ..utils.backoff import backoff_delay, wait as interruptible_wait
from ..utils.logging import CorrelationContext

logger = logging.getLogger(__name__)

forward_attempts_total = Counter(
    'registry_watch_forward_attempts_total',
    'Attempts to write a change to the forwarding queue',
    ['outcome']
)

# (seconds, stop_event) -> True if the full wait elapsed
WaitFn = Callable[[float, Optional[threading.Event]], bool]


class RetryingForwarder:
    """
    Writes changes to the forwarding queue with unbounded retries.

    Any exception from the queue counts as a failed attempt. Each failure is
    reported and followed by ``backoff_delay(attempt, backoff_pow,
    backoff_max_ms)``; there is no retry ceiling. The only way out of a
    failing forward is the stop event passed to `forward()`, checked during
    the backoff wait.

    The queued record always carries ``retries: 0``. That field is the
    queue-drain indexer's own reprocessing counter, not a count of the
    attempts made here.
    """

    def __init__(
        self,
        queue: ForwardingQueue,
        error_reporter: ErrorReporter,
        backoff_pow: float = 2.0,
        backoff_max_ms: float = 30000,
        wait: WaitFn = interruptible_wait,
    ):
        if backoff_pow <= 0:
            raise ValueError("backoff_pow must be positive")
        if backoff_max_ms <= 0:
            raise ValueError("backoff_max_ms must be positive")
        self.queue = queue
        self.error_reporter = error_reporter
        self.backoff_pow = backoff_pow
        self.backoff_max_ms = backoff_max_ms
        self.wait = wait

    @staticmethod
    def build_record(change: ChangeEvent) -> Dict[str, Any]:
        return {"objectID": change.id, "retries": 0, "change": change.payload}

    def forward(self, change: ChangeEvent, stop_event: Optional[threading.Event] = None) -> int:
        """
        Block until ``change`` is accepted by the queue.

        Returns:
            Number of attempts made (failures + 1)

        Raises:
            ForwardCancelled: If ``stop_event`` was set during a backoff wait
        """
        attempt = 0
        with CorrelationContext(change.id):
            while True:
                try:
                    self.queue.save_object(self.build_record(change))
                except Exception as e:
                    forward_attempts_total.labels(outcome="failure").inc()
                    delay_ms = backoff_delay(attempt, self.backoff_pow, self.backoff_max_ms)

                    logger.error(
                        "Error adding a change to the queue.",
                        extra={
                            "id": change.id,
                            "cursor": change.cursor,
                            "attempt": attempt,
                            "delay_ms": delay_ms,
                            "error": str(e),
                        }
                    )
                    self.error_reporter.report(
                        e,
                        {"kind": "forward_failed", "id": change.id, "cursor": change.cursor, "attempt": attempt}
                    )

                    if not self.wait(delay_ms / 1000, stop_event):
                        logger.warning(
                            "Forward abandoned, stop requested",
                            extra={"id": change.id, "cursor": change.cursor, "attempt": attempt}
                        )
                        raise ForwardCancelled(f"Forward of {change.id} cancelled after {attempt + 1} attempts") from e

                    attempt += 1
                    continue

                forward_attempts_total.labels(outcome="success").inc()
                if attempt:
                    logger.info(
                        f"Queued change after {attempt + 1} attempts",
                        extra={"id": change.id, "cursor": change.cursor}
                    )
                return attempt + 1
