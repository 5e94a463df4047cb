"""List-then-watch loop keeping one local store in step with one collection.

Lifecycle of a reflector task::

    initial list ──► synced ──► watch ──► stream end / error / resync due
         ▲ retry                  ▲                       │
         └── backoff              └──────── relist ◄──────┘

- The initial list is retried with capped exponential backoff.  401, 403 and
  404 are fatal: they are reported through :meth:`Reflector.wait_synced` and
  the task exits.
- Every stream end, stream error, or forced resync relists from scratch.
  Stream disconnects are steady-state events and are never surfaced.
- A relist replaces the store contents and announces a change only when
  something actually differs.
- ``MODIFIED`` events whose resourceVersion equals the stored one are echoes
  of our own status writes and are dropped without notifying.

Store mutation and change callbacks happen while holding the lock shared by
every reflector of the owning registry.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from contextlib import aclosing
from typing import Any

from kubemirror.cache.store import ObjectStore
from kubemirror.errors import ConnectionFailure, RemoteRejected
from kubemirror.models.resources import CollectionKey, EventType, Resource
from kubemirror.observability.logging import get_logger
from kubemirror.observability.metrics import (
    relists_total,
    store_objects,
    watch_echoes_suppressed_total,
    watch_events_total,
    watch_reconnects_total,
)

_INITIAL_BACKOFF_S: float = 1.0
_MAX_BACKOFF_S: float = 30.0
_MIN_STREAM_S: float = 1.0
_FATAL_LIST_STATUSES = frozenset({401, 403, 404})
_EXPIRED_STATUS = 410

DEFAULT_RESYNC_PERIOD_S: float = 300.0

ChangeCallback = Callable[[], Awaitable[None]]


class Reflector:
    """Feeds one :class:`ObjectStore` from one collection handle.

    Args:
        key:            Collection key, used for logging and metrics.
        client:         Collection handle exposing ``list()``, ``watch()``.
        store:          Store to keep in step with the server.
        lock:           Lock shared by all reflectors of one registry.
        on_change:      Awaited, with *lock* held, after every store change
                        worth announcing.  Never called for the initial list.
        resync_period:  Upper bound in seconds between two full lists.
    """

    def __init__(
        self,
        key: CollectionKey,
        client: Any,
        store: ObjectStore,
        lock: asyncio.Lock,
        on_change: ChangeCallback,
        resync_period: float = DEFAULT_RESYNC_PERIOD_S,
    ) -> None:
        self._key = key
        self._client = client
        self._store = store
        self._lock = lock
        self._on_change = on_change
        self._resync_period = resync_period
        self._log = get_logger("k8s.reflector", collection=str(key))

        self._resource_version = ""
        self._last_list_at = 0.0
        self._running = False
        self._consecutive_failures = 0
        self._backoff_s = _INITIAL_BACKOFF_S
        self._task: asyncio.Task[None] | None = None

        self._synced = False
        self._sync_done = asyncio.Event()
        self._sync_error: BaseException | None = None

    @property
    def key(self) -> CollectionKey:
        return self._key

    @property
    def has_synced(self) -> bool:
        """True once the initial list has been stored.  Never reverts."""
        return self._synced

    @property
    def resource_version(self) -> str:
        return self._resource_version

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> asyncio.Task[None]:
        if self._task is None:
            self._running = True
            self._task = asyncio.create_task(self.run(), name=f"reflector:{self._key}")
        return self._task

    async def stop(self) -> None:
        self._running = False
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        # A task cancelled before its first step never enters run().
        if not self._sync_done.is_set():
            self._sync_error = ConnectionFailure("stopped before initial list completed")
            self._sync_done.set()

    async def wait_synced(self) -> None:
        """Block until the initial list is stored.

        Raises:
            ConnectionFailure: the initial list failed fatally, or the
                reflector was stopped before it completed.
        """
        await self._sync_done.wait()
        if self._sync_error is not None:
            raise ConnectionFailure(f"{self._key}: initial list failed: {self._sync_error}") from self._sync_error

    async def run(self) -> None:
        """Task body: initial list, then watch/relist until stopped."""
        self._running = True
        try:
            if await self._initial_list():
                await self._watch_loop()
        except asyncio.CancelledError:
            self._log.debug("reflector_cancelled")
        finally:
            self._running = False
            if not self._sync_done.is_set():
                self._sync_error = ConnectionFailure("stopped before initial list completed")
                self._sync_done.set()
            self._log.debug("reflector_exited")

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    async def _initial_list(self) -> bool:
        while self._running:
            try:
                await self._list(reason="initial")
            except RemoteRejected as exc:
                if exc.status in _FATAL_LIST_STATUSES:
                    self._log.error("initial_list_rejected", status=exc.status, error=str(exc))
                    self._sync_error = exc
                    self._sync_done.set()
                    return False
                await self._list_failed("initial", exc)
            except Exception as exc:
                await self._list_failed("initial", exc)
            else:
                self._synced = True
                self._sync_done.set()
                self._log.info("reflector_synced", objects=len(self._store), resource_version=self._resource_version)
                return True
        return False

    async def _relist(self, reason: str) -> None:
        while self._running:
            try:
                await self._list(reason=reason)
                return
            except Exception as exc:
                await self._list_failed(reason, exc)

    async def _list(self, reason: str) -> None:
        items, resource_version = await self._client.list()
        async with self._lock:
            delta = self._store.replace(items)
            self._resource_version = resource_version
            self._last_list_at = time.monotonic()
            store_objects.labels(collection=str(self._key)).set(len(self._store))
            if reason != "initial" and delta.changed:
                await self._on_change()

        relists_total.labels(resource=self._key.resource, reason=reason).inc()
        self._reset_backoff()
        if not resource_version:
            self._log.warning("list_no_rv", reason=reason)
        self._log.debug(
            "collection_listed",
            reason=reason,
            count=len(items),
            added=len(delta.added),
            modified=len(delta.modified),
            deleted=len(delta.deleted),
            resource_version=resource_version,
        )

    async def _list_failed(self, reason: str, exc: Exception) -> None:
        self._consecutive_failures += 1
        self._log.warning(
            "list_failed",
            reason=reason,
            error=str(exc),
            consecutive_failures=self._consecutive_failures,
        )
        await self._backoff("list_failed")

    # ------------------------------------------------------------------
    # Watching
    # ------------------------------------------------------------------

    async def _watch_loop(self) -> None:
        while self._running:
            opened_at = time.monotonic()
            try:
                outcome = await self._run_watch()
            except Exception as exc:
                if not self._running:
                    return
                reason = await self._handle_stream_error(exc)
            else:
                if outcome == "stopped" or not self._running:
                    return
                reason = outcome
                if outcome == "stream_end" and time.monotonic() - opened_at < _MIN_STREAM_S:
                    await self._backoff("short_stream")
            await self._relist(reason)

    async def _run_watch(self) -> str:
        """Consume one watch stream.

        Returns ``"stream_end"`` when the server closed it, ``"resync"`` when
        the resync period elapsed, ``"stopped"`` when :meth:`stop` was called.
        """
        remaining = self._resync_period - (time.monotonic() - self._last_list_at)
        events = self._client.watch(
            resource_version=self._resource_version,
            timeout_seconds=max(1, int(remaining)),
        )
        async with aclosing(events):
            async for event_type, obj in events:
                if not self._running:
                    return "stopped"
                if event_type == EventType.BOOKMARK:
                    self._resource_version = obj.resource_version or self._resource_version
                else:
                    await self._handle_event(event_type, obj)
                if self._resync_due():
                    return "resync"
        self._log.debug("watch_stream_ended")
        return "stream_end"

    async def _handle_event(self, event_type: EventType, obj: Resource) -> None:
        watch_events_total.labels(resource=self._key.resource, type=event_type.value).inc()
        if obj.resource_version:
            self._resource_version = obj.resource_version

        async with self._lock:
            if event_type == EventType.MODIFIED and self._store.resource_version(obj.key) == obj.resource_version:
                watch_echoes_suppressed_total.labels(resource=self._key.resource).inc()
                self._log.debug("echo_suppressed", key=obj.key, resource_version=obj.resource_version)
                return
            if event_type == EventType.DELETED:
                self._store.delete(obj)
            else:
                self._store.upsert(obj)
            store_objects.labels(collection=str(self._key)).set(len(self._store))
            await self._on_change()

    async def _handle_stream_error(self, exc: Exception) -> str:
        """Record a failed stream and back off; return the relist reason."""
        if isinstance(exc, RemoteRejected) and exc.status == _EXPIRED_STATUS:
            self._log.debug("watch_expired", resource_version=self._resource_version)
            return "expired"

        self._consecutive_failures += 1
        watch_reconnects_total.labels(resource=self._key.resource).inc()
        self._log.warning(
            "watch_stream_error",
            error=str(exc),
            error_type=type(exc).__name__,
            consecutive_failures=self._consecutive_failures,
        )
        await self._backoff("stream_error")
        return "stream_error"

    def _resync_due(self) -> bool:
        return time.monotonic() - self._last_list_at >= self._resync_period

    # ------------------------------------------------------------------
    # Backoff
    # ------------------------------------------------------------------

    async def _backoff(self, reason: str) -> None:
        delay = self._backoff_s
        self._log.debug("reflector_backoff", reason=reason, delay_s=delay)
        await asyncio.sleep(delay)
        self._backoff_s = min(self._backoff_s * 2, _MAX_BACKOFF_S)

    def _reset_backoff(self) -> None:
        self._backoff_s = _INITIAL_BACKOFF_S
        self._consecutive_failures = 0
