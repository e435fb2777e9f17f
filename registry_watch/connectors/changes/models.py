"""
Data model of the registry change feed.

A cursor is the feed's `seq` value. CouchDB-style feeds hand out either
integers or opaque strings such as ``"1234-g1AAAA..."``, so cursors are
kept as strings and never assumed to be numeric.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

Cursor = str

_LEADING_NUMBER = re.compile(r"^\s*(\d+)")


class WatchError(Exception):
    """Base exception for change consumer errors."""
    pass


class FeedTransportError(WatchError):
    """The change feed could not be read."""
    pass


class CheckpointError(WatchError):
    """Error saving/loading checkpoint."""
    pass


class ForwardingError(WatchError):
    """The forwarding queue rejected a change."""
    pass


class ForwardCancelled(WatchError):
    """A forward was abandoned because the consumer is stopping."""
    pass


class ShutdownError(WatchError):
    """One or more owned components failed to stop."""

    def __init__(self, failures: Dict[str, BaseException]):
        self.failures = failures
        names = ", ".join(sorted(failures))
        super().__init__(f"Failed to stop: {names}")


def to_cursor(value: Union[str, int, None]) -> Cursor:
    """Normalise a `seq` value from the feed or the checkpoint store."""
    if value is None:
        raise ValueError("cursor cannot be None")
    return str(value)


def cursor_position(cursor: Optional[Cursor]) -> Optional[int]:
    """
    Numeric position of a cursor, for progress display only.

    Returns None when the cursor carries no leading number.
    """
    if cursor is None:
        return None
    match = _LEADING_NUMBER.match(str(cursor))
    if not match:
        return None
    return int(match.group(1))


@dataclass(frozen=True)
class ChangeEvent:
    """One row of the change feed."""
    id: str
    cursor: Cursor
    payload: Dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ChangeEvent":
        """Build from a `_changes` result row (`{"id", "seq", "changes", ...}`)."""
        if "seq" not in row:
            raise ValueError("change row has no seq")
        return cls(
            id=row.get("id") or "",
            cursor=to_cursor(row["seq"]),
            payload=row,
        )


@dataclass(frozen=True)
class ErrorEvent:
    """A transport failure reported by the feed source."""
    error: BaseException
    since: Cursor
    # Set when the reader gave up and will deliver nothing further
    terminal: bool = False


@dataclass
class Checkpoint:
    """Persisted consumer position and coarse stage marker."""
    cursor: Cursor = "0"
    stage: Optional[str] = None
