"""Error taxonomy for kubemirror.

UnknownKind       -- the resolver cannot map a kind name (registration time).
ConnectionFailure -- a listing or watch stream cannot be established and the
                     readiness barrier could not be satisfied.
NoSuchWatch       -- an update targets a collection that was never registered.
RemoteRejected    -- the API server refused a status update.

Stream disconnects and forced resyncs are not errors; reflectors absorb them
by relisting.
"""

from __future__ import annotations


class MirrorError(Exception):
    """Base class for all kubemirror errors."""


class UnknownKind(MirrorError):
    """Raised when a kind name does not match any API resource."""

    def __init__(self, kind: str) -> None:
        super().__init__(f"unknown resource kind: {kind!r}")
        self.kind = kind


class ConnectionFailure(MirrorError):
    """Raised when a collection cannot be listed or watched."""


class NoSuchWatch(MirrorError):
    """Raised when no watch is registered for the targeted collection."""

    def __init__(self, key: object) -> None:
        super().__init__(f"no watch: {key}")
        self.key = key


class RemoteRejected(MirrorError):
    """Raised when the API server answers a request with a non-2xx status."""

    def __init__(self, status: int, body: str = "", reason: str = "") -> None:
        msg = f"remote rejected request: HTTP {status}"
        if reason:
            msg += f" {reason}"
        if body:
            msg += f": {body}"
        super().__init__(msg)
        self.status = status
        self.body = body
        self.reason = reason
