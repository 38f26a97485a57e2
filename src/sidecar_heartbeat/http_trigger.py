"""Loopback HTTP routes for heartbeats, health and shutdown.

Reachable only from the local machine, so there is no authentication and no
cross-site request protection.
"""

import ipaddress
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from aiohttp import web

from .shutdown import ShutdownCoordinator, ShutdownState
from .tracker import LivenessTracker, ShutdownReason

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class HeartbeatRouteHandler:
    """HTTP handlers backed by the tracker and coordinator."""

    def __init__(
        self,
        tracker: LivenessTracker,
        coordinator: ShutdownCoordinator,
        health_provider: Optional[Callable[[], Dict[str, Any]]] = None,
    ):
        self.tracker = tracker
        self.coordinator = coordinator
        self.health_provider = health_provider

    async def heartbeat(self, request: web.Request) -> web.Response:
        self.tracker.observe_heartbeat()
        return web.json_response({"status": "ok"})

    async def health(self, request: web.Request) -> web.Response:
        if self.health_provider is not None:
            health_data = self.health_provider()
        else:
            health_data = {"tracker": self.tracker.status()}

        health_data["shutdown_state"] = self.coordinator.state.value
        health_data["timestamp"] = _now()
        status = 200 if self.coordinator.state is ShutdownState.AWAITING_HEARTBEATS else 503
        return web.json_response(health_data, status=status)

    async def shutdown(self, request: web.Request) -> web.Response:
        logger.info(f"Shutdown requested over HTTP from {request.remote}")
        self.coordinator.request_shutdown(ShutdownReason.HTTP, f"remote={request.remote}")
        return web.json_response({"status": "shutting_down"}, status=202)


@web.middleware
async def loopback_only_middleware(request: web.Request, handler):
    """Reject anything that did not come from a loopback address."""
    remote = request.remote
    try:
        allowed = remote is not None and ipaddress.ip_address(remote).is_loopback
    except ValueError:
        allowed = False

    if not allowed:
        logger.warning(f"Rejected non-loopback request from {remote}")
        return web.json_response({"status": "forbidden"}, status=403)

    return await handler(request)


def build_app(
    tracker: LivenessTracker,
    coordinator: ShutdownCoordinator,
    heartbeat_path: str = "/heartbeat",
    health_provider: Optional[Callable[[], Dict[str, Any]]] = None,
) -> web.Application:
    app = web.Application(middlewares=[loopback_only_middleware])

    handler = HeartbeatRouteHandler(tracker, coordinator, health_provider)
    app.router.add_get(heartbeat_path, handler.heartbeat)
    app.router.add_post(heartbeat_path, handler.heartbeat)
    app.router.add_get('/health', handler.health)
    app.router.add_post('/shutdown', handler.shutdown)

    return app


class HttpTriggerServer:
    """aiohttp server hosting the loopback routes."""

    def __init__(
        self,
        tracker: LivenessTracker,
        coordinator: ShutdownCoordinator,
        host: str = "127.0.0.1",
        port: int = 4001,
        heartbeat_path: str = "/heartbeat",
        health_provider: Optional[Callable[[], Dict[str, Any]]] = None,
    ):
        self.tracker = tracker
        self.coordinator = coordinator
        self.host = host
        self.port = port
        self.heartbeat_path = heartbeat_path
        self.health_provider = health_provider
        self.app: Optional[web.Application] = None
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None

    async def start(self):
        logger.info(f"Starting HTTP heartbeat trigger on {self.host}:{self.port}")

        self.app = build_app(self.tracker, self.coordinator, self.heartbeat_path, self.health_provider)

        self.runner = web.AppRunner(self.app, access_log=None)
        await self.runner.setup()

        self.site = web.TCPSite(self.runner, self.host, self.port)
        await self.site.start()

        logger.info(f"HTTP heartbeat trigger listening on http://{self.host}:{self.port}{self.heartbeat_path}")

    async def stop(self):
        if self.runner is None:
            return

        logger.info("Stopping HTTP heartbeat trigger")
        await self.runner.cleanup()
        self.runner = None
        self.site = None
