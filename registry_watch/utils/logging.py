"""
JSON log output for Registry Watch.

Every line carries the id of the registry entry being forwarded (when
there is one), so all lines about one change can be grouped.
"""

import json
import logging
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

_entry_id: ContextVar[Optional[str]] = ContextVar('entry_id', default=None)

# Attributes every LogRecord carries; anything else came in through `extra`
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord('', 0, '', 0, '', None, None)).keys()
) | {'message', 'asctime'}


def get_correlation_id() -> Optional[str]:
    """Registry entry id of the change being handled on this thread, if any."""
    return _entry_id.get()


class JSONFormatter(logging.Formatter):
    """One JSON object per record, including `extra=` fields."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'location': f"{record.module}.{record.funcName}:{record.lineno}",
        }

        entry_id = _entry_id.get()
        if entry_id:
            log_data['correlation_id'] = entry_id

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        for key, value in vars(record).items():
            if key not in _RESERVED_ATTRS and key not in log_data:
                log_data[key] = value

        return json.dumps(log_data, default=str)


def get_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """Logger writing JSON lines to stderr; the handler is attached only once."""
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
    return logger


class CorrelationContext:
    """
    Tags log lines emitted inside the block with a registry entry id.

    Example:
        >>> with CorrelationContext("lodash"):
        ...     logger.info("queued")  # carries correlation_id="lodash"
    """

    def __init__(self, correlation_id: str):
        self.correlation_id = correlation_id
        self._token = None

    def __enter__(self) -> str:
        self._token = _entry_id.set(self.correlation_id)
        return self.correlation_id

    def __exit__(self, exc_type, exc_val, exc_tb):
        _entry_id.reset(self._token)
        self._token = None
