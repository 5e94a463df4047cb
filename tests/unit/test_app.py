"""Tests for MirrorApp startup wiring and shutdown."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from kubemirror.app import MirrorApp, _ComponentError
from kubemirror.errors import ConnectionFailure
from kubemirror.models.config import MirrorConfig, WatchConfig


def _config(*sources: str, namespace: str = "") -> MirrorConfig:
    return MirrorConfig(watch=WatchConfig(sources=list(sources), namespace=namespace, sync_timeout=5))


class TestStartup:
    async def test_no_sources_is_fatal(self) -> None:
        app = MirrorApp(_config())

        with patch.object(app, "_start_k8s_client", new=AsyncMock()):
            with pytest.raises(_ComponentError) as excinfo:
                await app.start()

        assert excinfo.value.component == "registry"

    async def test_registers_every_source_and_waits_for_sync(self) -> None:
        app = MirrorApp(_config("pods", "services", namespace="team-a"))
        registry = MagicMock()
        registry.watch_namespace = AsyncMock()
        registry.start = AsyncMock()
        registry.keys = MagicMock(return_value=[])

        with (
            patch.object(app, "_start_k8s_client", new=AsyncMock()),
            patch.object(app, "_start_rest", new=AsyncMock()),
            patch("kubemirror.k8s.watcher.WatchRegistry", return_value=registry),
            patch("kubemirror.k8s.resolver.DiscoveryResolver"),
        ):
            await app.start()
            try:
                assert app.registry is registry
                namespaces_kinds = [c.args[:2] for c in registry.watch_namespace.await_args_list]
                assert namespaces_kinds == [("team-a", "pods"), ("team-a", "services")]
                registry.start.assert_awaited_once_with(timeout=5)
            finally:
                registry.stop = AsyncMock()
                await app.stop()

        registry.stop.assert_awaited_once()

    async def test_sync_failure_is_a_component_error(self) -> None:
        app = MirrorApp(_config("pods"))
        registry = MagicMock()
        registry.watch_namespace = AsyncMock()
        registry.start = AsyncMock(side_effect=ConnectionFailure("pods.v1: initial list failed"))

        with (
            patch.object(app, "_start_k8s_client", new=AsyncMock()),
            patch("kubemirror.k8s.watcher.WatchRegistry", return_value=registry),
            patch("kubemirror.k8s.resolver.DiscoveryResolver"),
        ):
            with pytest.raises(_ComponentError) as excinfo:
                await app.start()

        assert isinstance(excinfo.value.cause, ConnectionFailure)


class TestShutdown:
    async def test_stop_without_start_is_noop(self) -> None:
        await MirrorApp(_config("pods")).stop()

    async def test_stop_closes_api_client(self) -> None:
        app = MirrorApp(_config("pods"))
        api_client = MagicMock()
        api_client.close = AsyncMock()
        app._api_client = api_client
        app._running = True

        await app.stop()

        api_client.close.assert_awaited_once()
        assert app._api_client is None
