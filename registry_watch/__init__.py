"""
Registry Watch: resumable consumer of a package registry's change feed.

Follows the registry's `_changes` feed, forwards every change to the
search-indexing queue and keeps a durable checkpoint of its position.
"""

__version__ = "0.1.0"
