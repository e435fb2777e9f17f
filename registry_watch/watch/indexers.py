"""
Lifecycle contract of the downstream indexers the watch supervises.

The indexers write search documents; the watch only starts them, stops
them and asks the main one for its backlog.
"""

from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol, Tuple, runtime_checkable


@runtime_checkable
class BackgroundIndexer(Protocol):
    def run(self) -> None:
        """Start work in the background and return immediately."""
        ...


@runtime_checkable
class QueueLengthSource(Protocol):
    def fetch_queue_length(self) -> int:
        ...


@dataclass
class DownstreamIndexers:
    """
    The three indexers started alongside the watch.

    one_time: bulk indexer that backfills data once per entry
    periodic: re-indexer refreshing periodically changing data
    main: drains the forwarding queue into the search index
    """
    one_time: BackgroundIndexer
    periodic: BackgroundIndexer
    main: BackgroundIndexer

    def items(self) -> List[Tuple[str, BackgroundIndexer]]:
        """Indexers in start/stop order."""
        return [("one_time", self.one_time), ("periodic", self.periodic), ("main", self.main)]

    def stopper(self, name: str) -> Optional[Callable[[], None]]:
        """The indexer's optional ``stop()``."""
        return getattr(dict(self.items())[name], "stop", None)

    def queue_length_source(self) -> Optional[QueueLengthSource]:
        if isinstance(self.main, QueueLengthSource):
            return self.main
        return None
