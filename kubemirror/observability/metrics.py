"""Prometheus metrics for the watch/cache engine."""

from __future__ import annotations

from prometheus_client import Counter, Gauge

watch_events_total = Counter(
    "kubemirror_watch_events_total",
    "Watch events received, by resource and event type.",
    ["resource", "type"],
)

watch_echoes_suppressed_total = Counter(
    "kubemirror_watch_echoes_suppressed_total",
    "MODIFIED events dropped because the stored resourceVersion already matched.",
    ["resource"],
)

relists_total = Counter(
    "kubemirror_relists_total",
    "Full relists performed, by resource and reason.",
    ["resource", "reason"],
)

watch_reconnects_total = Counter(
    "kubemirror_watch_reconnects_total",
    "Watch streams that ended with an error.",
    ["resource"],
)

store_objects = Gauge(
    "kubemirror_store_objects",
    "Objects currently held in a local store.",
    ["collection"],
)

listener_invocations_total = Counter(
    "kubemirror_listener_invocations_total",
    "Change listener invocations.",
)

listener_errors_total = Counter(
    "kubemirror_listener_errors_total",
    "Change listener invocations that raised.",
)

registry_synced = Gauge(
    "kubemirror_registry_synced",
    "1 once every registered watch has completed its initial listing.",
)
