"""Core data structures for kubemirror."""

from kubemirror.models.config import MirrorConfig
from kubemirror.models.resources import (
    CollectionKey,
    EventType,
    Resource,
    ResourceType,
    WatchState,
)

__all__ = [
    "CollectionKey",
    "EventType",
    "MirrorConfig",
    "Resource",
    "ResourceType",
    "WatchState",
]
