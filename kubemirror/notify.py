"""Coalescing change feed between the watch registry and its consumers.

A :class:`ChangeFeed` is registered as a registry listener.  Each invocation
means "something changed"; since consumers re-read the registry anyway, only
one pending notice is ever needed, so a full queue simply absorbs the new
one.  The listener never blocks the task that holds the registry lock.

Example::

    feed = ChangeFeed()
    await registry.watch("services", feed)
    await registry.start()

    async for sequence in feed:
        publish(registry.list("services"))
"""

from __future__ import annotations

import asyncio
from typing import Any

from kubemirror.observability.logging import get_logger


class ChangeFeed:
    """Registry listener turning change signals into an async iterator of sequence numbers."""

    def __init__(self, maxsize: int = 1) -> None:
        self._queue: asyncio.Queue[int | None] = asyncio.Queue(maxsize=max(1, maxsize))
        self._sequence = 0
        self._coalesced = 0
        self._closed = False
        self._log = get_logger("notify.feed")

    @property
    def sequence(self) -> int:
        """Number of change signals received so far."""
        return self._sequence

    @property
    def coalesced(self) -> int:
        """Signals absorbed by an already-pending notice."""
        return self._coalesced

    @property
    def closed(self) -> bool:
        return self._closed

    def __call__(self, registry: Any) -> None:
        if self._closed:
            return
        self._sequence += 1
        try:
            self._queue.put_nowait(self._sequence)
        except asyncio.QueueFull:
            self._coalesced += 1

    async def get(self) -> int | None:
        """Next notice, or None once the feed is closed."""
        item = await self._queue.get()
        if item is None:
            # Leave the sentinel for any other consumer.
            self._queue.put_nowait(None)
        return item

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(None)
        self._log.debug("change_feed_closed", sequence=self._sequence, coalesced=self._coalesced)

    def __aiter__(self) -> ChangeFeed:
        return self

    async def __anext__(self) -> int:
        item = await self.get()
        if item is None:
            raise StopAsyncIteration
        return item
