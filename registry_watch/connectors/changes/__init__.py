"""
Change feed consumption: feed source, checkpoint persistence and head tracking.
"""

from .models import (
    ChangeEvent,
    Checkpoint,
    CheckpointError,
    Cursor,
    ErrorEvent,
    FeedTransportError,
    ForwardCancelled,
    ForwardingError,
    ShutdownError,
    WatchError,
    cursor_position,
    to_cursor,
)
from .feed_source import ChangesFeedSource
from .checkpoint_store import CheckpointStore, WatchCheckpoint
from .sequence_tracker import SequenceTracker

__all__ = [
    "ChangeEvent",
    "Checkpoint",
    "CheckpointError",
    "Cursor",
    "ErrorEvent",
    "FeedTransportError",
    "ForwardCancelled",
    "ForwardingError",
    "ShutdownError",
    "WatchError",
    "cursor_position",
    "to_cursor",
    "ChangesFeedSource",
    "CheckpointStore",
    "WatchCheckpoint",
    "SequenceTracker",
]
