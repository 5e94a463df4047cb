"""Shared fixtures for kubemirror integration tests.

Provides an in-memory API server (:class:`FakeCluster`) that speaks the same
list/watch/update_status surface as ``CollectionClient``, so the watch
registry can be exercised end to end without a real Kubernetes cluster.

The fake keeps an event log, so a watch opened at resourceVersion N replays
every matching event newer than N before streaming live ones, the same way
the API server does.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Callable
from typing import Any

import pytest

from kubemirror.errors import RemoteRejected, UnknownKind
from kubemirror.k8s.watcher import WatchRegistry
from kubemirror.models.resources import EventType, Resource, ResourceType

# ---------------------------------------------------------------------------
# Resource types
# ---------------------------------------------------------------------------

PODS = ResourceType(
    group="",
    version="v1",
    name="pods",
    kind="Pod",
    namespaced=True,
    singular_name="pod",
    short_names=("po",),
)
WIDGETS = ResourceType(
    group="example.com",
    version="v1",
    name="widgets",
    kind="Widget",
    namespaced=False,
    singular_name="widget",
)
SERVICES = ResourceType(
    group="",
    version="v1",
    name="services",
    kind="Service",
    namespaced=True,
    singular_name="service",
    short_names=("svc",),
)


# ---------------------------------------------------------------------------
# Object factory helpers
# ---------------------------------------------------------------------------


def make_object(rtype: ResourceType, name: str, namespace: str = "", **fields: Any) -> dict[str, Any]:
    """Build a minimal wire object for *rtype*."""
    metadata: dict[str, Any] = {"name": name}
    if rtype.namespaced:
        metadata["namespace"] = namespace or "default"
    obj: dict[str, Any] = {"apiVersion": rtype.api_version, "kind": rtype.kind, "metadata": metadata}
    obj.update(fields)
    return obj


def names(resources: list[Resource]) -> set[str]:
    return {r.name for r in resources}


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll *predicate* until it holds, failing the test after *timeout*."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


# ---------------------------------------------------------------------------
# Fake API server
# ---------------------------------------------------------------------------


class FakeResolver:
    """Resolves names against a fixed set of resource types."""

    def __init__(self, *types: ResourceType) -> None:
        self.types = types
        self.calls: list[str] = []

    async def resolve(self, name: str) -> ResourceType:
        self.calls.append(name)
        for rtype in self.types:
            if rtype.matches(name):
                return rtype
        raise UnknownKind(name)


class FakeCluster:
    """In-memory stand-in for the API server."""

    def __init__(self) -> None:
        self._rv = 100
        self._objects: dict[str, dict[str, dict[str, Any]]] = {}
        self._log: list[tuple[int, ResourceType, EventType, dict[str, Any]]] = []
        self._streams: list[tuple[FakeClient, asyncio.Queue[Any]]] = []

        self.list_calls: dict[str, int] = {}
        self.list_errors: list[Exception] = []
        self.status_error: Exception | None = None
        self.list_delay: float = 0.0

    @property
    def resource_version(self) -> str:
        return str(self._rv)

    def _bump(self) -> str:
        self._rv += 1
        return str(self._rv)

    @staticmethod
    def _key(obj: dict[str, Any]) -> str:
        return Resource(obj).key

    # -- server-side mutations --------------------------------------------

    def put(self, rtype: ResourceType, obj: dict[str, Any], notify: bool = True) -> dict[str, Any]:
        """Create or replace *obj*, emitting ADDED or MODIFIED."""
        obj = copy.deepcopy(obj)
        obj["metadata"]["resourceVersion"] = self._bump()
        bucket = self._objects.setdefault(rtype.name, {})
        event = EventType.MODIFIED if self._key(obj) in bucket else EventType.ADDED
        bucket[self._key(obj)] = obj
        if notify:
            self._emit(rtype, event, obj)
        return copy.deepcopy(obj)

    def remove(self, rtype: ResourceType, name: str, namespace: str = "", notify: bool = True) -> None:
        """Delete an object, emitting DELETED."""
        key = f"{namespace}/{name}" if namespace else name
        obj = self._objects.get(rtype.name, {}).pop(key)
        obj["metadata"]["resourceVersion"] = self._bump()
        if notify:
            self._emit(rtype, EventType.DELETED, obj)

    def end_streams(self) -> None:
        """Close every open watch stream, as a server-side timeout would."""
        for _, queue in list(self._streams):
            queue.put_nowait(None)

    def fail_streams(self, exc: Exception) -> None:
        for _, queue in list(self._streams):
            queue.put_nowait(exc)

    def open_streams(self, rtype: ResourceType) -> int:
        return sum(1 for client, _ in self._streams if client.rtype == rtype)

    def _emit(self, rtype: ResourceType, event: EventType, obj: dict[str, Any]) -> None:
        rv = int(obj["metadata"]["resourceVersion"])
        self._log.append((rv, rtype, event, copy.deepcopy(obj)))
        for client, queue in self._streams:
            if client.selects(rtype, obj):
                queue.put_nowait((event, Resource(copy.deepcopy(obj))))

    # -- client-side surface ----------------------------------------------

    def client(self, rtype: ResourceType, namespace: str) -> FakeClient:
        return FakeClient(self, rtype, namespace)

    def subscribe(self, client: FakeClient, resource_version: str) -> asyncio.Queue[Any]:
        queue: asyncio.Queue[Any] = asyncio.Queue()
        since = int(resource_version or 0)
        for rv, rtype, event, obj in self._log:
            if rv > since and client.selects(rtype, obj):
                queue.put_nowait((event, Resource(copy.deepcopy(obj))))
        self._streams.append((client, queue))
        return queue

    def unsubscribe(self, queue: asyncio.Queue[Any]) -> None:
        self._streams = [(c, q) for c, q in self._streams if q is not queue]

    def items(self, client: FakeClient) -> list[Resource]:
        bucket = self._objects.get(client.rtype.name, {})
        return [Resource(copy.deepcopy(o)) for o in bucket.values() if client.selects(client.rtype, o)]

    def update_status(self, rtype: ResourceType, resource: Resource) -> Resource:
        bucket = self._objects.get(rtype.name, {})
        if resource.key not in bucket:
            raise RemoteRejected(404, f"{rtype.name} {resource.name!r} not found", reason="Not Found")
        stored = copy.deepcopy(bucket[resource.key])
        stored["status"] = copy.deepcopy(resource.get("status", {}))
        return Resource(self.put(rtype, stored))


class FakeClient:
    """Collection handle backed by a :class:`FakeCluster`."""

    def __init__(self, cluster: FakeCluster, rtype: ResourceType, namespace: str) -> None:
        self.cluster = cluster
        self.rtype = rtype
        self.namespace = namespace
        self.watch_calls: list[str] = []

    def selects(self, rtype: ResourceType, obj: dict[str, Any]) -> bool:
        if rtype != self.rtype:
            return False
        return not self.namespace or Resource(obj).namespace == self.namespace

    async def list(self) -> tuple[list[Resource], str]:
        name = self.rtype.name
        self.cluster.list_calls[name] = self.cluster.list_calls.get(name, 0) + 1
        if self.cluster.list_delay:
            await asyncio.sleep(self.cluster.list_delay)
        if self.cluster.list_errors:
            raise self.cluster.list_errors.pop(0)
        return self.cluster.items(self), self.cluster.resource_version

    async def watch(self, resource_version: str = "", timeout_seconds: int | None = None):  # type: ignore[no-untyped-def]
        self.watch_calls.append(resource_version)
        queue = self.cluster.subscribe(self, resource_version)
        try:
            while True:
                item = await queue.get()
                if item is None:
                    return
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            self.cluster.unsubscribe(queue)

    async def update_status(self, resource: Resource) -> Resource:
        if self.cluster.status_error is not None:
            raise self.cluster.status_error
        return self.cluster.update_status(self.rtype, resource)


class ListenerRecorder:
    """Listener recording what it observed on each invocation."""

    def __init__(self, kind: str) -> None:
        self.kind = kind
        self.snapshots: list[set[str]] = []

    def __call__(self, registry: WatchRegistry) -> None:
        self.snapshots.append(names(registry.list(self.kind)))

    @property
    def calls(self) -> int:
        return len(self.snapshots)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture()
def resolver() -> FakeResolver:
    return FakeResolver(PODS, WIDGETS, SERVICES)


@pytest.fixture()
async def registry(cluster: FakeCluster, resolver: FakeResolver):  # type: ignore[no-untyped-def]
    reg = WatchRegistry(resolver, cluster.client, resync_period=300.0)
    yield reg
    await reg.stop()
