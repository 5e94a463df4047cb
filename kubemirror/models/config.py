"""Configuration data structures."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class WatchConfig:
    """What to mirror and how often to force a resync."""

    sources: list[str] = field(default_factory=list)
    namespace: str = ""
    label_selector: str = ""
    field_selector: str = ""
    resync_period: int = 300
    sync_timeout: int = 0


@dataclass
class APIConfig:
    """Health/metrics HTTP configuration."""

    port: int = 8080


@dataclass
class LogConfig:
    """Logging configuration."""

    level: str = "info"


@dataclass
class MirrorConfig:
    """Top-level kubemirror configuration."""

    watch: WatchConfig = field(default_factory=WatchConfig)
    api: APIConfig = field(default_factory=APIConfig)
    log: LogConfig = field(default_factory=LogConfig)
