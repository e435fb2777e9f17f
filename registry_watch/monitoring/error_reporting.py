"""
Error-reporting sink for failures the consumer survives.
"""

import logging
from typing import Any, Dict, Optional, Protocol

from prometheus_client import Counter

logger = logging.getLogger(__name__)

errors_total = Counter(
    'registry_watch_errors_total',
    'Errors reported by the change consumer',
    ['kind']
)


class ErrorReporter(Protocol):
    def report(self, error: BaseException, context: Optional[Dict[str, Any]] = None) -> None:
        ...


class LoggingErrorReporter:
    """
    Logs reported errors with their traceback and counts them by kind.

    ``kind`` is taken from ``context["kind"]`` when present, otherwise the
    exception class name.
    """

    def report(self, error: BaseException, context: Optional[Dict[str, Any]] = None) -> None:
        context = dict(context or {})
        kind = str(context.pop("kind", type(error).__name__))
        errors_total.labels(kind=kind).inc()
        logger.error(
            f"{kind}: {error}",
            exc_info=(type(error), error, error.__traceback__),
            extra={"error_kind": kind, "context": context}
        )
