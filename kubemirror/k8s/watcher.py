"""Watch registry: the live, query-able mirror of selected collections.

Usage::

    registry = WatchRegistry(resolver, make_client_factory(api_client))
    await registry.watch("pods", on_change)
    await registry.watch_namespace("team-a", "configmaps", on_change)
    await registry.start()          # returns once every watch is synced

    registry.list("pods")
    registry.get("pods", "web-0.default")
    await registry.update_status(pod)

Listeners receive the registry itself, not a delta: the protocol is
"something changed, re-read what you need".  Every store mutation and every
listener invocation happens under one registry-wide lock, so listeners never
run concurrently with each other and always see fully-updated stores.

Reads (``list``/``get``/``exists``) never touch the network or the lock.
"""

from __future__ import annotations

import asyncio
import builtins
import copy
import inspect
from collections.abc import Callable
from dataclasses import dataclass, field
from functools import partial
from typing import Any

from kubemirror.cache.store import ObjectStore
from kubemirror.errors import ConnectionFailure, NoSuchWatch, UnknownKind
from kubemirror.k8s.client import ClientFactory
from kubemirror.k8s.reflector import DEFAULT_RESYNC_PERIOD_S, Reflector
from kubemirror.k8s.resolver import ResourceTypeResolver
from kubemirror.models.resources import (
    CollectionKey,
    Resource,
    ResourceType,
    WatchState,
    default_qname,
)
from kubemirror.observability.logging import get_logger
from kubemirror.observability.metrics import (
    listener_errors_total,
    listener_invocations_total,
    registry_synced,
)

Listener = Callable[["WatchRegistry"], Any]


@dataclass
class WatchEntry:
    """One registered (collection, namespace) watch."""

    key: CollectionKey
    rtype: ResourceType
    client: Any
    store: ObjectStore
    reflector: Reflector
    listeners: list[Listener] = field(default_factory=list)


class WatchRegistry:
    """Owns one reflector + store per collection key and their lifecycle.

    States: UNSTARTED -> STARTING -> RUNNING -> STOPPED (terminal).
    """

    def __init__(
        self,
        resolver: ResourceTypeResolver,
        client_factory: ClientFactory,
        resync_period: float = DEFAULT_RESYNC_PERIOD_S,
    ) -> None:
        self._resolver = resolver
        self._client_factory = client_factory
        self._resync_period = resync_period
        self._log = get_logger("k8s.watcher")

        self._entries: dict[CollectionKey, WatchEntry] = {}
        self._lock = asyncio.Lock()
        self._state = WatchState.UNSTARTED
        self._synced = False
        self._start_done = asyncio.Event()
        self._start_error: BaseException | None = None
        self._tasks: list[asyncio.Task[None]] = []

        # Task currently running listeners; it already holds self._lock.
        self._notifying: asyncio.Task[Any] | None = None

    @property
    def state(self) -> WatchState:
        return self._state

    @property
    def synced(self) -> bool:
        """True once every registered watch has completed its initial list."""
        return self._synced

    def keys(self) -> builtins.list[CollectionKey]:
        return builtins.list(self._entries)

    def count(self, key: CollectionKey) -> int:
        """Number of objects mirrored for *key* (0 if not registered)."""
        entry = self._entries.get(key)
        return len(entry.store) if entry is not None else 0

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def watch(self, kind: str, listener: Listener) -> CollectionKey:
        """Watch *kind* across all namespaces."""
        return await self.watch_namespace("", kind, listener)

    async def watch_namespace(self, namespace: str, kind: str, listener: Listener) -> CollectionKey:
        """Watch *kind* in *namespace* ("" for all namespaces).

        Registering the same collection key twice adds the listener to the
        existing watch.

        Raises:
            UnknownKind: the resolver cannot map *kind*.
            RuntimeError: the registry has already been started.
        """
        if self._state is not WatchState.UNSTARTED:
            raise RuntimeError(f"cannot register {kind!r}: watch registry is {self._state}")

        rtype = await self._resolver.resolve(kind)
        key = CollectionKey.for_type(rtype, namespace)

        entry = self._entries.get(key)
        if entry is not None:
            entry.listeners.append(listener)
            self._log.debug("watch_listener_added", collection=str(key), listeners=len(entry.listeners))
            return key

        client = self._client_factory(rtype, key.namespace)
        store = ObjectStore()
        reflector = Reflector(
            key,
            client,
            store,
            self._lock,
            on_change=partial(self._notify, key),
            resync_period=self._resync_period,
        )
        self._entries[key] = WatchEntry(key, rtype, client, store, reflector, [listener])
        self._log.info("watch_registered", collection=str(key), kind=rtype.kind, namespaced=rtype.namespaced)
        return key

    async def canonical(self, name: str) -> str:
        """Canonical form of ``TYPE`` or ``TYPE/NAME[.NAMESPACE]``.

        TYPE becomes the plural resource name; a bare NAME of a namespaced
        type gets ``.default``.  Returns ``""`` for malformed or unknown input.
        """
        parts = name.split("/")
        if len(parts) == 1:
            kind, obj_name = parts[0], ""
        elif len(parts) == 2:
            kind, obj_name = parts
        else:
            return ""

        try:
            rtype = await self._resolver.resolve(kind)
        except UnknownKind:
            return ""

        if not obj_name:
            return rtype.name
        if rtype.namespaced and obj_name.count(".") > 1:
            return ""
        return f"{rtype.name}/{default_qname(obj_name, rtype.namespaced)}"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, timeout: float | None = None) -> None:
        """Start every reflector and wait until all are synced.

        Idempotent: later calls wait for the first one to finish and share
        its outcome.  Once synced, every listener is invoked once.

        Args:
            timeout: Readiness deadline in seconds; None waits forever.

        Raises:
            ConnectionFailure: a watch failed its initial list fatally, or
                the deadline elapsed.  The registry is stopped.
        """
        if self._state is not WatchState.UNSTARTED:
            if self._state is WatchState.STARTING:
                await self._start_done.wait()
            if self._start_error is not None:
                raise self._start_error
            return

        self._state = WatchState.STARTING
        self._log.info("watch_registry_starting", watches=len(self._entries))
        try:
            for entry in self._entries.values():
                self._tasks.append(entry.reflector.start())
            await self._wait_for_sync(timeout)
        except ConnectionFailure as exc:
            self._start_error = exc
            self._log.error("watch_registry_sync_failed", error=str(exc))
            await self.stop()
            self._start_done.set()
            raise
        except BaseException:
            self._start_error = ConnectionFailure("start interrupted before watches synced")
            self._start_done.set()
            raise

        async with self._lock:
            if self._state is WatchState.STOPPED:
                self._start_error = ConnectionFailure("stopped before watches synced")
                self._start_done.set()
                raise self._start_error
            self._synced = True
            self._state = WatchState.RUNNING
            registry_synced.set(1)
            self._log.info("watch_registry_synced", watches=len(self._entries))
            for entry in self._entries.values():
                await self._invoke(entry)
        self._start_done.set()

    async def _wait_for_sync(self, timeout: float | None) -> None:
        if not self._entries:
            return
        waiters = {
            asyncio.create_task(entry.reflector.wait_synced(), name=f"sync:{key}"): key
            for key, entry in self._entries.items()
        }
        try:
            done, pending = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_EXCEPTION)
        finally:
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()

        errors = [w.exception() for w in done if not w.cancelled() and w.exception() is not None]
        if errors:
            raise errors[0]  # type: ignore[misc]
        if pending:
            unsynced = ", ".join(sorted(str(waiters[w]) for w in pending))
            raise ConnectionFailure(f"watches not synced within {timeout}s: {unsynced}")

    async def stop(self) -> None:
        """Stop every reflector and return once all have exited."""
        if self._state is WatchState.STOPPED:
            return
        self._state = WatchState.STOPPED
        self._log.info("watch_registry_stopping", watches=len(self._entries))
        await asyncio.gather(*(entry.reflector.stop() for entry in self._entries.values()))
        registry_synced.set(0)
        self._log.info("watch_registry_stopped")

    async def wait(self) -> None:
        """Start, then block until every reflector has exited."""
        await self.start()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Notification
    # ------------------------------------------------------------------

    async def _notify(self, key: CollectionKey) -> None:
        """Reflector change callback; runs with self._lock held."""
        # Before the barrier, changes are covered by the post-sync invocation.
        if not self._synced or self._state is not WatchState.RUNNING:
            return
        await self._invoke(self._entries[key])

    async def _invoke(self, entry: WatchEntry) -> None:
        self._notifying = asyncio.current_task()
        try:
            for listener in entry.listeners:
                listener_invocations_total.inc()
                try:
                    result = listener(self)
                    if inspect.isawaitable(result):
                        await result
                except Exception as exc:
                    listener_errors_total.inc()
                    self._log.error("listener_failed", collection=str(entry.key), error=str(exc), exc_info=True)
        finally:
            self._notifying = None

    # ------------------------------------------------------------------
    # Query API
    # ------------------------------------------------------------------

    def _entries_for(self, kind: str, namespace: str | None = None) -> builtins.list[WatchEntry]:
        return [
            entry
            for entry in self._entries.values()
            if entry.rtype.matches(kind) and (namespace is None or entry.key.namespace == namespace)
        ]

    def list(self, kind: str, namespace: str | None = None) -> builtins.list[Resource]:
        """Snapshot of every mirrored object of *kind*.

        Spans every watch registered for the kind unless *namespace* selects
        the watch registered for that namespace.  Unregistered kinds yield an
        empty list.
        """
        results: builtins.list[Resource] = []
        seen: set[tuple[str, str]] = set()
        for entry in self._entries_for(kind, namespace):
            for obj in entry.store.list():
                ident = (entry.rtype.group, obj.key)
                if ident in seen:
                    continue
                seen.add(ident)
                results.append(obj)
        return results

    def get(self, kind: str, qname: str) -> Resource:
        """Object of *kind* whose qualified name matches *qname*, case-insensitively.

        A bare name of a namespaced kind is looked up in ``default``.
        Returns an empty :class:`Resource` when absent.
        """
        entries = self._entries_for(kind)
        if not entries:
            return Resource()
        target = default_qname(qname, entries[0].rtype.namespaced).lower()
        for obj in self.list(kind):
            if obj.qname.lower() == target:
                return obj
        return Resource()

    def exists(self, kind: str, qname: str) -> bool:
        return not self.get(kind, qname).is_empty()

    # ------------------------------------------------------------------
    # Write-through status update
    # ------------------------------------------------------------------

    async def update_status(self, resource: Resource | dict[str, Any]) -> Resource:
        """Replace *resource*'s status on the server and mirror the result.

        The returned object, with its new resourceVersion, is written into
        every store that holds the object, so the echoing MODIFIED event is
        suppressed.  Nothing is retried and nothing is stored on failure.

        Raises:
            NoSuchWatch: no watch covers the resource's kind and namespace.
            RemoteRejected: the server refused the update.
        """
        resource = Resource(resource)
        entries = self._entries_for_update(resource)

        result = await entries[0].client.update_status(resource)

        if self._notifying is not None and self._notifying is asyncio.current_task():
            # Called from a listener: the lock is already ours.
            self._write_through(entries, result)
        else:
            async with self._lock:
                self._write_through(entries, result)
        self._log.debug("status_updated", key=result.key, resource_version=result.resource_version)
        return copy.deepcopy(result)

    def _entries_for_update(self, resource: Resource) -> builtins.list[WatchEntry]:
        candidates = [
            entry
            for entry in self._entries_for(resource.kind)
            if not resource.api_version or entry.rtype.api_version == resource.api_version
        ]
        exact = [e for e in candidates if e.key.namespace == resource.namespace]
        cluster_wide = [e for e in candidates if e.key.namespace == "" and e not in exact]
        entries = exact + cluster_wide
        if not entries:
            raise NoSuchWatch(f"{resource.kind or '<no kind>'} in namespace {resource.namespace!r}")
        return entries

    @staticmethod
    def _write_through(entries: builtins.list[WatchEntry], result: Resource) -> None:
        for entry in entries:
            entry.store.upsert(result)
