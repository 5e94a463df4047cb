"""Application bootstrap for kubemirror.

Wires all components in dependency order and manages the asyncio lifecycle.
Startup order: config → logging → K8s client → watch registry → change feed
              → REST

Shutdown is graceful: components are stopped in reverse startup order.
Each component's stop error is caught and logged independently so that a
single component failure does not prevent the rest from shutting down.
"""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING, Any

from kubemirror.config import load_config
from kubemirror.models.config import MirrorConfig
from kubemirror.observability.logging import get_logger, setup_logging

if TYPE_CHECKING:
    import structlog

    from kubemirror.k8s.watcher import WatchRegistry
    from kubemirror.notify import ChangeFeed

_SHUTDOWN_GRACE_SECONDS = 15


class _ComponentError(Exception):
    """Raised when a mandatory component fails to start."""

    def __init__(self, component: str, cause: Exception) -> None:
        super().__init__(f"Component '{component}' failed to start: {cause}")
        self.component = component
        self.cause = cause


class MirrorApp:
    """Application root.  Owns every component and coordinates their lifecycle.

    ``stop()`` is safe on an app that was never started or already stopped.
    """

    def __init__(self, config: MirrorConfig | None = None) -> None:
        self.config: MirrorConfig | None = config

        self._api_client: Any = None
        self._registry: WatchRegistry | None = None
        self._feed: ChangeFeed | None = None
        self._rest_server: Any = None

        # Background tasks that must be cancelled on shutdown
        self._background_tasks: list[asyncio.Task[None]] = []

        self._running = False
        self._log: structlog.stdlib.BoundLogger | None = None

    @property
    def registry(self) -> WatchRegistry | None:
        return self._registry

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start all components in dependency order.

        Raises _ComponentError if a mandatory component cannot start.
        The caller (main()) turns this into a non-zero exit.
        """
        # --- 1. Configuration -------------------------------------------
        if self.config is None:
            self.config = load_config()

        # --- 2. Logging -------------------------------------------------
        setup_logging(self.config.log.level)
        self._log = get_logger("app")
        self._log.info(
            "kubemirror starting",
            version=_kubemirror_version(),
            sources=self.config.watch.sources,
            namespace=self.config.watch.namespace or "*",
        )

        # --- 3. Kubernetes client ----------------------------------------
        await self._start_k8s_client()

        # --- 4. Watch registry (blocks until every watch is synced) ------
        await self._start_registry()

        # --- 5. Change feed consumer -------------------------------------
        await self._start_change_feed()

        # --- 6. REST API -------------------------------------------------
        await self._start_rest()

        self._running = True
        self._log.info("kubemirror started", port=self.config.api.port)

    # ------------------------------------------------------------------
    # Component startup helpers
    # ------------------------------------------------------------------

    async def _start_k8s_client(self) -> None:
        """Initialise the kubernetes-asyncio client from in-cluster config or kubeconfig."""
        assert self._log is not None
        self._log.debug("starting k8s client")
        try:
            import kubernetes_asyncio.config as k8s_config  # type: ignore[import-untyped]
            from kubernetes_asyncio import client as k8s_client  # type: ignore[import-untyped]

            try:
                k8s_config.load_incluster_config()
                self._log.info("k8s client configured from in-cluster service account")
            except k8s_config.ConfigException:
                await k8s_config.load_kube_config()
                self._log.info("k8s client configured from kubeconfig")

            self._api_client = k8s_client.ApiClient()
        except Exception as exc:
            raise _ComponentError("k8s_client", exc) from exc

    async def _start_registry(self) -> None:
        """Register every configured source and wait for the initial sync."""
        assert self._log is not None
        assert self.config is not None
        self._log.debug("starting watch registry")

        watch_cfg = self.config.watch
        if not watch_cfg.sources:
            raise _ComponentError("registry", ValueError("no initial sources configured (KUBEMIRROR_SOURCES)"))

        try:
            from kubemirror.k8s.client import make_client_factory
            from kubemirror.k8s.resolver import DiscoveryResolver
            from kubemirror.k8s.watcher import WatchRegistry
            from kubemirror.notify import ChangeFeed

            registry = WatchRegistry(
                DiscoveryResolver(self._api_client),
                make_client_factory(
                    self._api_client,
                    label_selector=watch_cfg.label_selector,
                    field_selector=watch_cfg.field_selector,
                ),
                resync_period=float(watch_cfg.resync_period),
            )
            feed = ChangeFeed()
            for kind in watch_cfg.sources:
                await registry.watch_namespace(watch_cfg.namespace, kind, feed)

            self._registry = registry
            self._feed = feed
            await registry.start(timeout=watch_cfg.sync_timeout or None)
            self._log.info("watch registry started", watches=len(registry.keys()))
        except Exception as exc:
            raise _ComponentError("registry", exc) from exc

    async def _start_change_feed(self) -> None:
        """Consume change notices and log a per-kind summary of the mirror."""
        assert self._log is not None
        assert self.config is not None
        assert self._registry is not None
        assert self._feed is not None

        registry = self._registry
        feed = self._feed
        sources = list(self.config.watch.sources)
        log = get_logger("app.feed")

        async def _consume() -> None:
            async for sequence in feed:
                counts = {kind: len(registry.list(kind)) for kind in sources}
                log.info("mirror changed", sequence=sequence, coalesced=feed.coalesced, counts=counts)

        task = asyncio.create_task(_consume(), name="change-feed")
        self._background_tasks.append(task)
        self._log.info("change feed started")

    async def _start_rest(self) -> None:
        """Start the uvicorn health/metrics server."""
        assert self._log is not None
        assert self.config is not None
        self._log.debug("starting rest api")
        try:
            import uvicorn  # type: ignore[import-untyped]

            from kubemirror.api import create_app

            fastapi_app = create_app(registry=self._registry)
            uv_config = uvicorn.Config(
                app=fastapi_app,
                host="0.0.0.0",
                port=self.config.api.port,
                log_config=None,  # structlog handles all logging
                access_log=False,
            )
            server = uvicorn.Server(uv_config)
            task = asyncio.create_task(server.serve(), name="rest-server")
            self._background_tasks.append(task)
            self._rest_server = server
            self._log.info("rest api started", port=self.config.api.port)
        except Exception as exc:
            raise _ComponentError("rest", exc) from exc

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """Gracefully stop all components in reverse startup order."""
        if not self._running and self._log is None:
            return

        log = self._log or get_logger("app")
        log.info("kubemirror shutting down")

        self._running = False

        if self._rest_server is not None:
            self._rest_server.should_exit = True
        if self._feed is not None:
            self._feed.close()

        for task in reversed(self._background_tasks):
            if not task.done():
                task.cancel()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks.clear()

        await self._stop_component("registry", self._registry)
        await self._stop_k8s_client()

        log.info("kubemirror stopped")

    async def _stop_component(self, name: str, component: object | None) -> None:
        """Call stop() on a component if it has that method, catching all errors."""
        if component is None:
            return
        log = self._log or get_logger("app")
        stop_fn = getattr(component, "stop", None)
        if stop_fn is None:
            return
        try:
            result = stop_fn()
            if asyncio.iscoroutine(result):
                await asyncio.wait_for(result, timeout=_SHUTDOWN_GRACE_SECONDS)
        except TimeoutError:
            log.warning("component stop timed out", component=name, timeout=_SHUTDOWN_GRACE_SECONDS)
        except Exception as exc:
            log.error("component stop raised an error", component=name, error=str(exc))

    async def _stop_k8s_client(self) -> None:
        """Close the kubernetes-asyncio ApiClient connection pool."""
        if self._api_client is None:
            return
        log = self._log or get_logger("app")
        try:
            await self._api_client.close()
        except Exception as exc:
            log.debug("k8s client close raised (non-fatal)", error=str(exc))
        self._api_client = None


def _kubemirror_version() -> str:
    from kubemirror import __version__

    return __version__


# ---------------------------------------------------------------------------
# Async entrypoint
# ---------------------------------------------------------------------------


async def main() -> None:
    """Create the app, register OS signals, run until shutdown is requested."""
    app = MirrorApp()
    loop = asyncio.get_running_loop()

    shutdown_triggered = False

    def _request_shutdown() -> None:
        nonlocal shutdown_triggered
        if shutdown_triggered:
            return
        shutdown_triggered = True
        asyncio.create_task(app.stop(), name="shutdown")

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _request_shutdown)

    try:
        await app.start()
        # Block until shutdown is triggered (reflectors and REST run as tasks)
        while app._running:
            await asyncio.sleep(1)
    except _ComponentError as exc:
        # A mandatory component failed (e.g. watches never synced); exit non-zero
        log = get_logger("app")
        log.critical(
            "fatal startup error",
            component=exc.component,
            error=str(exc.cause),
        )
        await app.stop()
        raise SystemExit(1) from exc
    finally:
        # Ensure stop runs even if start raises or is interrupted
        if app._running:
            await app.stop()
