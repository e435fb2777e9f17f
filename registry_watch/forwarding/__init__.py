"""
Forwarding of changes to the search-indexing queue.
"""

from .queue_store import ForwardingQueue, QueuedChange, SQLForwardingQueue
from .forwarder import RetryingForwarder

__all__ = [
    "ForwardingQueue",
    "QueuedChange",
    "SQLForwardingQueue",
    "RetryingForwarder",
]
