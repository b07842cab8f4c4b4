"""
Main client orchestrator.

Coordinates all components: backend adapters, session store, query cache,
realtime channels and the organization dashboard view.
Handles lifecycle: startup, shutdown, signal handling.
"""

from __future__ import annotations

import asyncio
import signal
from typing import Any

import structlog

from .backend import BackendClient, HttpIdentityProvider, HttpProfileDirectory, HttpRelationalStore
from .config import ClientConfig
from .dashboard import OrganizationDashboard
from .metrics import MetricsCollector
from .models import Role
from .query_cache import QueryCache
from .realtime import HttpRealtimeClient
from .session import SessionStore
from .session_tokens import TokenStore
from .sinks import HistoryNavigator, LogNotifier, Navigator, Notifier

log = structlog.get_logger()

SHUTDOWN_TIMEOUT = 15.0


class VolunteerHubClient:
    """
    Client process: owns the session, the cache and the mounted view.

    Also acts as the session's Navigator so that routing onto the
    organization dashboard mounts it and routing away unmounts it.
    """

    def __init__(
        self,
        config: ClientConfig,
        navigator: Navigator | None = None,
        notifier: Notifier | None = None,
    ):
        self._config = config
        self.metrics = MetricsCollector()
        self._backend = BackendClient(
            config.backend.url,
            anon_key=config.backend.anon_key or "",
            verify_tls=config.backend.verify_tls,
            request_timeout=config.backend.request_timeout_seconds,
        )
        self._provider = HttpIdentityProvider(self._backend)
        self._store = HttpRelationalStore(self._backend)
        self._profiles = HttpProfileDirectory(self._store)
        self._realtime = HttpRealtimeClient(
            self._backend,
            verify_tls=config.backend.verify_tls,
            reconnect_base=config.realtime.reconnect_base_seconds,
            reconnect_max=config.realtime.reconnect_max_seconds,
        )
        self._tokens = TokenStore(config.state.db_path)
        self._navigator = navigator or HistoryNavigator()
        self.notifier = notifier or LogNotifier()
        self.cache = QueryCache(self.metrics, gc_seconds=config.cache.gc_seconds)
        self.session = SessionStore(
            self._provider,
            self._profiles,
            self._tokens,
            navigator=self,
            notifier=self.notifier,
            routes=config.routes,
            auth=config.auth,
        )
        self.dashboard = OrganizationDashboard(
            self.session,
            self.cache,
            self._store,
            self._profiles,
            self._realtime,
            metrics=self.metrics,
        )
        self.route: str | None = None
        self._running = False
        self._shutdown_event = asyncio.Event()

    # --- Navigator ---

    def navigate(self, path: str) -> None:
        self.route = path
        self._navigator.navigate(path)
        if path == self._config.routes.organization:
            self.dashboard.mount()
        else:
            self.dashboard.unmount()

    # --- Lifecycle ---

    async def start(self) -> None:
        """Open storage and HTTP, start the session worker and restore the session."""
        log.info("client.starting", backend=self._config.backend.url)
        await self._tokens.open()
        await self._backend.open()
        await self.session.start()
        await self.session.restore_session()
        self._running = True
        log.info("client.started", state=self.session.session.state.value)

    async def stop(self) -> None:
        """Graceful shutdown: unmount views, close channels, close connections."""
        if not self._running:
            return
        self._running = False
        log.info("client.stopping")

        self.dashboard.unmount()
        await self.session.stop()
        await self._realtime.close()
        await self._backend.close()
        await self._tokens.close()

        log.info("client.stopped")

    async def sign_in(self, email: str, password: str) -> None:
        await self.session.sign_in(email, password)

    async def sign_up(self, email: str, password: str, role: Role) -> None:
        await self.session.sign_up(email, password, role)

    async def sign_out(self) -> None:
        await self.session.sign_out()

    def status(self) -> dict[str, Any]:
        session = self.session.session
        snapshot = self.dashboard.snapshot()
        return {
            "state": session.state.value,
            "user_id": session.identity.id if session.identity else None,
            "route": self.route,
            "dashboard_mounted": self.dashboard.mounted,
            "stats": {
                "total_events": snapshot.stats.total_events,
                "active_events": snapshot.stats.active_events,
                "completed_events": snapshot.stats.completed_events,
                "total_volunteers": snapshot.stats.total_volunteers,
            },
            "fill_rates": snapshot.fill_rates(),
            "metrics": self.metrics.to_dict(),
        }

    async def run_forever(self) -> None:
        """Run until shutdown signal, logging status periodically."""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: self._shutdown_event.set())

        if not self._running:
            await self.start()

        try:
            while not self._shutdown_event.is_set():
                log.info("client.status", **self.status())
                try:
                    await asyncio.wait_for(
                        self._shutdown_event.wait(),
                        timeout=self._config.status_interval_seconds,
                    )
                except asyncio.TimeoutError:
                    pass
        finally:
            await asyncio.wait_for(self.stop(), timeout=SHUTDOWN_TIMEOUT)
