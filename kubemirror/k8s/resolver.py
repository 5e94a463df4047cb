"""Resource-type resolution via API discovery.

Maps a short or fully-qualified kind name (``pods``, ``Pod``, ``po``,
``deployments.apps``, ``ingresses.v1.networking.k8s.io``) to the resolved
:class:`ResourceType` of its collection.

The registry only depends on the :class:`ResourceTypeResolver` protocol;
:class:`DiscoveryResolver` is the production implementation.
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

from kubemirror.errors import ConnectionFailure, UnknownKind
from kubemirror.k8s.client import api_prefix, request_json
from kubemirror.models.resources import ResourceType
from kubemirror.observability.logging import get_logger


class ResourceTypeResolver(Protocol):
    """Anything that can turn a kind name into a :class:`ResourceType`."""

    async def resolve(self, name: str) -> ResourceType:
        """Resolve *name* or raise :class:`UnknownKind`."""
        ...


class DiscoveryResolver:
    """Resolve kind names against the API server's discovery documents.

    Discovery is fetched lazily on first use and refetched once when a name
    does not match, so CRDs installed after startup can still be found.
    Only each group's preferred version is indexed.  A group whose discovery
    document cannot be fetched is skipped until the next refresh; only a
    failure of the core group raises :class:`ConnectionFailure`.
    """

    def __init__(self, api_client: Any) -> None:
        self._api_client = api_client
        self._types: list[ResourceType] | None = None
        self._lock = asyncio.Lock()
        self._log = get_logger("k8s.resolver")

    async def resolve(self, name: str) -> ResourceType:
        types = await self._discovered()
        match = _match(types, name)
        if match is None:
            types = await self._discovered(refresh=True)
            match = _match(types, name)
        if match is None:
            raise UnknownKind(name)
        return match

    async def _discovered(self, refresh: bool = False) -> list[ResourceType]:
        async with self._lock:
            if self._types is None or refresh:
                self._types = await self._discover()
                self._log.debug("discovery_loaded", types=len(self._types))
            return self._types

    async def _discover(self) -> list[ResourceType]:
        # The core group is required; any other group may be unavailable
        # (e.g. an aggregated API whose backing service is down) and is skipped.
        try:
            core = await request_json(self._api_client, "GET", "/api")
            core_versions = [str(v) for v in core.get("versions", [])[:1]]
            types: list[ResourceType] = []
            for version in core_versions:
                doc = await request_json(self._api_client, "GET", api_prefix("", version))
                types.extend(parse_resource_list("", version, doc))
        except Exception as exc:
            raise ConnectionFailure(f"core API discovery failed: {exc}") from exc

        try:
            groups = await request_json(self._api_client, "GET", "/apis")
        except Exception as exc:
            self._log.warning("discovery_groups_failed", error=str(exc))
            return types

        for group_name, version in _preferred_versions(groups):
            try:
                doc = await request_json(self._api_client, "GET", api_prefix(group_name, version))
            except Exception as exc:
                self._log.warning("discovery_group_failed", group=group_name, version=version, error=str(exc))
                continue
            types.extend(parse_resource_list(group_name, version, doc))
        return types


def _preferred_versions(groups: dict[str, Any]) -> list[tuple[str, str]]:
    group_versions = []
    for group in groups.get("groups", []):
        preferred = (group.get("preferredVersion") or {}).get("version")
        if not preferred:
            versions = group.get("versions") or [{}]
            preferred = versions[0].get("version")
        if preferred:
            group_versions.append((str(group.get("name", "")), str(preferred)))
    return group_versions


def parse_resource_list(group: str, version: str, doc: dict[str, Any]) -> list[ResourceType]:
    """Convert one ``APIResourceList`` document into resource types.

    Sub-resources (``pods/status``) are skipped.
    """
    types = []
    for res in doc.get("resources", []):
        name = str(res.get("name", ""))
        if not name or "/" in name:
            continue
        types.append(
            ResourceType(
                group=group,
                version=version,
                name=name,
                kind=str(res.get("kind", "")),
                namespaced=bool(res.get("namespaced", False)),
                singular_name=str(res.get("singularName") or ""),
                short_names=tuple(res.get("shortNames") or ()),
            )
        )
    return types


def _match(types: list[ResourceType], name: str) -> ResourceType | None:
    # Core types win over same-named types in other groups (e.g. "events").
    candidates = [t for t in types if t.matches(name)]
    if not candidates:
        return None
    candidates.sort(key=lambda t: (t.group != "", t.group))
    return candidates[0]
