"""Cache layer for kubemirror.

Submodules:
    store -- Thread-safe keyed table holding the last-known state of one collection.
"""

from kubemirror.cache.store import ObjectStore, StoreDelta

__all__ = ["ObjectStore", "StoreDelta"]
