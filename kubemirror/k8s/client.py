"""Collection handle: list, watch, and status-update one resource collection.

A :class:`CollectionClient` is bound to one resolved resource type and,
optionally, one namespace.  It talks to the API server through the shared
``kubernetes_asyncio`` ``ApiClient`` using raw JSON, since mirrored kinds are
not known until runtime and may be custom resources without generated models.

Paths follow the usual layout:

    /api/{version}[/namespaces/{ns}]/{plural}            core group
    /apis/{group}/{version}[/namespaces/{ns}]/{plural}   everything else
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Callable
from typing import Any

from kubernetes_asyncio import watch
from kubernetes_asyncio.client.exceptions import ApiException

from kubemirror.errors import RemoteRejected
from kubemirror.models.resources import EventType, Resource, ResourceType

_AUTH_SETTINGS = ["BearerToken"]
_JSON_HEADERS = {"Accept": "application/json", "Content-Type": "application/json"}

# Events the reflector acts on; anything else on the stream is ignored.
_STREAM_EVENTS = {EventType.ADDED, EventType.MODIFIED, EventType.DELETED, EventType.BOOKMARK}


async def request_json(
    api_client: Any,
    method: str,
    path: str,
    query: list[tuple[str, str]] | None = None,
    body: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Issue one request and decode the JSON response body.

    Raises:
        RemoteRejected: the server answered with a non-2xx status.
    """
    resp = await api_client.call_api(
        path,
        method,
        query_params=query or [],
        header_params=dict(_JSON_HEADERS),
        body=body,
        auth_settings=_AUTH_SETTINGS,
        _preload_content=False,
    )
    try:
        text = await resp.text()
        if not 200 <= resp.status <= 299:
            raise RemoteRejected(resp.status, text, reason=str(resp.reason or ""))
        return json.loads(text) if text else {}
    finally:
        resp.release()


def api_prefix(group: str, version: str) -> str:
    return f"/apis/{group}/{version}" if group else f"/api/{version}"


class CollectionClient:
    """List/Watch/UpdateStatus against one resource collection."""

    def __init__(
        self,
        api_client: Any,
        rtype: ResourceType,
        namespace: str = "",
        label_selector: str = "",
        field_selector: str = "",
    ) -> None:
        self._api_client = api_client
        self._rtype = rtype
        self._namespace = namespace if rtype.namespaced else ""
        self._label_selector = label_selector
        self._field_selector = field_selector

    @property
    def resource_type(self) -> ResourceType:
        return self._rtype

    @property
    def namespace(self) -> str:
        return self._namespace

    def collection_path(self, namespace: str | None = None) -> str:
        ns = self._namespace if namespace is None else namespace
        path = api_prefix(self._rtype.group, self._rtype.version)
        if self._rtype.namespaced and ns:
            path += f"/namespaces/{ns}"
        return f"{path}/{self._rtype.name}"

    def _selector_query(self) -> list[tuple[str, str]]:
        query: list[tuple[str, str]] = []
        if self._label_selector:
            query.append(("labelSelector", self._label_selector))
        if self._field_selector:
            query.append(("fieldSelector", self._field_selector))
        return query

    def _typed(self, raw: dict[str, Any]) -> Resource:
        # List items and some watch payloads omit kind/apiVersion.
        obj = Resource(raw)
        obj.setdefault("kind", self._rtype.kind)
        obj.setdefault("apiVersion", self._rtype.api_version)
        return obj

    # ------------------------------------------------------------------
    # List
    # ------------------------------------------------------------------

    async def list(self) -> tuple[list[Resource], str]:
        """Return every object in the collection and the list resourceVersion."""
        body = await request_json(self._api_client, "GET", self.collection_path(), self._selector_query())
        items = body.get("items") or []
        metadata = body.get("metadata") or {}
        resource_version = str(metadata.get("resourceVersion") or "")
        return [self._typed(item) for item in items if isinstance(item, dict)], resource_version

    # ------------------------------------------------------------------
    # Watch
    # ------------------------------------------------------------------

    async def _watch_request(self, **kwargs: Any) -> Any:
        """Open the raw watch connection; called by ``kubernetes_asyncio.watch.Watch``."""
        query = self._selector_query()
        query.append(("watch", "true"))
        if kwargs.get("resource_version"):
            query.append(("resourceVersion", str(kwargs["resource_version"])))
        if kwargs.get("timeout_seconds"):
            query.append(("timeoutSeconds", str(int(kwargs["timeout_seconds"]))))
        if kwargs.get("allow_watch_bookmarks"):
            query.append(("allowWatchBookmarks", "true"))

        resp = await self._api_client.call_api(
            self.collection_path(),
            "GET",
            query_params=query,
            header_params=dict(_JSON_HEADERS),
            auth_settings=_AUTH_SETTINGS,
            _preload_content=False,
        )
        if not 200 <= resp.status <= 299:
            try:
                text = await resp.text()
            finally:
                resp.release()
            raise RemoteRejected(resp.status, text, reason=str(resp.reason or ""))
        return resp

    async def watch(
        self,
        resource_version: str = "",
        timeout_seconds: int | None = None,
    ) -> AsyncIterator[tuple[EventType, Resource]]:
        """Yield ``(event_type, object)`` pairs until the server closes the stream.

        ``Watch`` turns ``ERROR`` events into ``ApiException``; they surface
        here as :class:`RemoteRejected` carrying the embedded status code (410
        when the resourceVersion has expired).
        """
        kwargs: dict[str, Any] = {"allow_watch_bookmarks": True}
        if resource_version:
            kwargs["resource_version"] = resource_version
        if timeout_seconds:
            kwargs["timeout_seconds"] = timeout_seconds

        stream = watch.Watch(return_type="object")
        try:
            async for event in stream.stream(self._watch_request, **kwargs):
                if not isinstance(event, dict):
                    continue
                event_type = str(event.get("type", ""))
                raw = event.get("raw_object", event.get("object"))
                if not isinstance(raw, dict):
                    raw = {}
                if event_type not in _STREAM_EVENTS:
                    continue
                yield EventType(event_type), self._typed(raw)
        except ApiException as exc:
            raise RemoteRejected(exc.status or 500, str(exc.body or ""), reason=str(exc.reason or "")) from exc
        finally:
            await stream.close()

    # ------------------------------------------------------------------
    # Status update
    # ------------------------------------------------------------------

    async def update_status(self, resource: Resource) -> Resource:
        """Replace the status of *resource* and return the server's copy.

        The object's own namespace is used, regardless of the namespace the
        handle is watching.
        """
        namespace = resource.namespace if self._rtype.namespaced else ""
        path = f"{self.collection_path(namespace)}/{resource.name}/status"
        body = await request_json(self._api_client, "PUT", path, body=dict(resource))
        return self._typed(body)


ClientFactory = Callable[[ResourceType, str], Any]


def make_client_factory(api_client: Any, label_selector: str = "", field_selector: str = "") -> ClientFactory:
    """Return a factory building :class:`CollectionClient` objects on *api_client*."""

    def factory(rtype: ResourceType, namespace: str) -> CollectionClient:
        return CollectionClient(
            api_client,
            rtype,
            namespace=namespace,
            label_selector=label_selector,
            field_selector=field_selector,
        )

    return factory
