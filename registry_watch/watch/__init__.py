"""
The watch: supervisor of the change consumer and its downstream indexers.
"""

from .indexers import BackgroundIndexer, DownstreamIndexers, QueueLengthSource
from .supervisor import WATCH_STAGE, Watch, WatchState

__all__ = [
    "BackgroundIndexer",
    "DownstreamIndexers",
    "QueueLengthSource",
    "WATCH_STAGE",
    "Watch",
    "WatchState",
]
