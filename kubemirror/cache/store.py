"""Thread-safe in-memory store of the last-known state of one collection.

Objects are keyed by ``namespace/name`` (``name`` for cluster-scoped
resources).  Everything that goes in or comes out is deep-copied, so callers
can mutate what they read without affecting the store.

The store itself never talks to the network and never invokes callbacks;
the reflector that owns it decides when a mutation is worth announcing.
"""

from __future__ import annotations

import copy
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field

from kubemirror.models.resources import Resource


@dataclass
class StoreDelta:
    """Keys touched by a bulk :meth:`ObjectStore.replace`."""

    added: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.modified or self.deleted)


class ObjectStore:
    """Keyed table of :class:`Resource` objects guarded by a re-entrant lock."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._items: dict[str, Resource] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._items

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, key: str) -> Resource | None:
        with self._lock:
            obj = self._items.get(key)
            return copy.deepcopy(obj) if obj is not None else None

    def resource_version(self, key: str) -> str | None:
        """Stored resourceVersion for *key*, or None if the key is absent."""
        with self._lock:
            obj = self._items.get(key)
            return obj.resource_version if obj is not None else None

    def list(self) -> list[Resource]:
        with self._lock:
            return [copy.deepcopy(obj) for obj in self._items.values()]

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._items)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert(self, obj: Resource) -> Resource | None:
        """Insert or overwrite *obj*; return the previous value, if any."""
        stored = _own(obj)
        with self._lock:
            previous = self._items.get(stored.key)
            self._items[stored.key] = stored
            return previous

    def delete(self, obj: Resource) -> Resource | None:
        """Remove the entry for *obj*'s key; return the removed value, if any."""
        with self._lock:
            return self._items.pop(Resource(obj).key, None)

    def replace(self, objs: Iterable[Resource]) -> StoreDelta:
        """Atomically swap the whole contents for *objs*.

        Keys whose stored resourceVersion equals the incoming one are not
        reported as modified.
        """
        incoming = {}
        for obj in objs:
            stored = _own(obj)
            incoming[stored.key] = stored

        delta = StoreDelta()
        with self._lock:
            for key, obj in incoming.items():
                previous = self._items.get(key)
                if previous is None:
                    delta.added.append(key)
                elif previous.resource_version != obj.resource_version:
                    delta.modified.append(key)
            delta.deleted = [key for key in self._items if key not in incoming]
            self._items = incoming
        return delta


def _own(obj: Resource | dict) -> Resource:
    return Resource(copy.deepcopy(dict(obj)))
