"""Kubernetes watch/cache engine.

Submodules:
    resolver  -- Kind name -> resource type resolution via API discovery.
    client    -- Collection handle: list, watch, and status updates.
    reflector -- List-then-watch loop feeding one local store.
    watcher   -- Watch registry: lifecycle, query, and write-through API.
"""

from kubemirror.k8s.client import CollectionClient, make_client_factory
from kubemirror.k8s.reflector import Reflector
from kubemirror.k8s.resolver import DiscoveryResolver, ResourceTypeResolver
from kubemirror.k8s.watcher import WatchEntry, WatchRegistry

__all__ = [
    "CollectionClient",
    "DiscoveryResolver",
    "Reflector",
    "ResourceTypeResolver",
    "WatchEntry",
    "WatchRegistry",
    "make_client_factory",
]
