"""Configuration loading from environment variables."""

from __future__ import annotations

import os

from kubemirror.models.config import APIConfig, LogConfig, MirrorConfig, WatchConfig


def _env(key: str, default: str = "") -> str:
    return os.environ.get(f"KUBEMIRROR_{key}", default)


def _env_int(key: str, default: int, min_val: int | None = None, max_val: int | None = None) -> int:
    val = int(_env(key, str(default)))
    if min_val is not None:
        val = max(val, min_val)
    if max_val is not None:
        val = min(val, max_val)
    return val


def _env_list(key: str) -> list[str]:
    return [item.strip() for item in _env(key).split(",") if item.strip()]


def _validate_log_level(value: str) -> str:
    valid = {"debug", "info", "warning", "error"}
    if value.lower() not in valid:
        raise ValueError(f"Invalid log level: {value}. Must be one of {valid}")
    return value.lower()


def load_config() -> MirrorConfig:
    """Load configuration from KUBEMIRROR_* environment variables."""
    return MirrorConfig(
        watch=WatchConfig(
            sources=_env_list("SOURCES"),
            namespace=_env("NAMESPACE", "").strip(),
            label_selector=_env("LABEL_SELECTOR", ""),
            field_selector=_env("FIELD_SELECTOR", ""),
            resync_period=_env_int("RESYNC_PERIOD", 300, min_val=30, max_val=3600),
            sync_timeout=_env_int("SYNC_TIMEOUT", 0, min_val=0),
        ),
        api=APIConfig(
            port=_env_int("API_PORT", 8080, min_val=1024, max_val=65535),
        ),
        log=LogConfig(
            level=_validate_log_level(_env("LOG_LEVEL", "info")),
        ),
    )
