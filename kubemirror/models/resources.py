"""Resource, resource type, and collection key data structures."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

_DEFAULT_NAMESPACE = "default"


class WatchState(StrEnum):
    """Lifecycle state of a watch registry."""

    UNSTARTED = "unstarted"
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"


class EventType(StrEnum):
    """Watch stream event types."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    BOOKMARK = "BOOKMARK"
    ERROR = "ERROR"


class Resource(dict[str, Any]):
    """A schema-less Kubernetes object as returned on the wire.

    Behaves exactly like the decoded JSON mapping and adds accessors for the
    handful of fields the mirror needs.  An empty ``Resource()`` stands for
    "not found".
    """

    @property
    def metadata(self) -> dict[str, Any]:
        md = self.get("metadata")
        return md if isinstance(md, dict) else {}

    @property
    def kind(self) -> str:
        return str(self.get("kind") or "")

    @property
    def api_version(self) -> str:
        return str(self.get("apiVersion") or "")

    @property
    def name(self) -> str:
        return str(self.metadata.get("name") or "")

    @property
    def namespace(self) -> str:
        return str(self.metadata.get("namespace") or "")

    @property
    def resource_version(self) -> str:
        return str(self.metadata.get("resourceVersion") or "")

    @property
    def qname(self) -> str:
        """Qualified name: ``NAME.NAMESPACE``, or ``NAME`` when cluster-scoped."""
        if self.namespace:
            return f"{self.name}.{self.namespace}"
        return self.name

    @property
    def key(self) -> str:
        """Store key: ``NAMESPACE/NAME``, or ``NAME`` when cluster-scoped."""
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    def is_empty(self) -> bool:
        return not self.name


@dataclass(frozen=True)
class ResourceType:
    """Resolved identity of an API resource collection."""

    group: str
    version: str
    name: str
    kind: str
    namespaced: bool
    singular_name: str = ""
    short_names: tuple[str, ...] = field(default_factory=tuple)

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version

    def aliases(self) -> set[str]:
        """Every lowercase name this type answers to."""
        names = {self.name, self.kind, self.singular_name, *self.short_names}
        names = {n.lower() for n in names if n}
        if self.group:
            names.add(f"{self.name}.{self.group}".lower())
            names.add(f"{self.name}.{self.version}.{self.group}".lower())
            names.add(f"{self.kind}.{self.version}.{self.group}".lower())
        else:
            names.add(f"{self.name}.{self.version}".lower())
        return names

    def matches(self, name: str) -> bool:
        return name.lower() in self.aliases()


@dataclass(frozen=True)
class CollectionKey:
    """(group, version, resource, namespace) identity of one registered watch."""

    group: str
    version: str
    resource: str
    namespace: str = ""

    @classmethod
    def for_type(cls, rtype: ResourceType, namespace: str = "") -> CollectionKey:
        return cls(
            group=rtype.group,
            version=rtype.version,
            resource=rtype.name,
            namespace=namespace if rtype.namespaced else "",
        )

    def __str__(self) -> str:
        gvr = ".".join(p for p in (self.resource, self.version, self.group) if p)
        return f"{gvr}@{self.namespace}" if self.namespace else gvr


def default_qname(qname: str, namespaced: bool) -> str:
    """Append the ``default`` namespace to a bare name of a namespaced kind."""
    if namespaced and "." not in qname:
        return f"{qname}.{_DEFAULT_NAMESPACE}"
    return qname
