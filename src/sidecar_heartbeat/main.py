"""Sidecar service - heartbeat liveness monitor with graceful shutdown."""

import asyncio
import logging
import os
import signal
import sys
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .channel import EndpointBindError, HeartbeatChannel
from .config.settings import SidecarSettings, load_settings
from .http_trigger import HttpTriggerServer
from .shutdown import ShutdownCoordinator, ShutdownState, TeardownHook
from .supervisor import ParentProcessWatcher
from .tracker import LivenessTracker, ShutdownReason
from .utils.logging import setup_logging


logger = logging.getLogger(__name__)


class SidecarService:
    """
    Owns the heartbeat channel, liveness tracker and shutdown coordinator.

    ``start()`` is the only place a fatal error can surface: a failure to
    bind the heartbeat socket raises :class:`EndpointBindError`. After that,
    every error is contained and logged, and the service always ends with
    ``exit_callback(0)``.
    """

    def __init__(
        self,
        settings: SidecarSettings,
        exit_callback: Optional[Callable[[int], None]] = None,
    ):
        self.settings = settings
        self.endpoint_path = settings.endpoint_path
        self._exit_callback = exit_callback
        self._signals: List[signal.Signals] = []
        self._started_at: Optional[datetime] = None

        self.coordinator = ShutdownCoordinator(
            grace_delay=settings.shutdown.grace_delay,
            exit_callback=self._on_exit,
        )
        self.tracker = LivenessTracker(
            heartbeat_interval=settings.heartbeat.interval,
            heartbeat_timeout=settings.heartbeat.timeout,
        )
        self.coordinator.attach(self.tracker)

        self.channel = HeartbeatChannel(
            self.endpoint_path,
            on_heartbeat=self.tracker.observe_heartbeat,
            accept_timeout=settings.heartbeat.accept_timeout,
            read_chunk_size=settings.heartbeat.read_chunk_size,
        )

        self.http_server: Optional[HttpTriggerServer] = None
        if settings.http.enabled:
            self.http_server = HttpTriggerServer(
                self.tracker,
                self.coordinator,
                host=settings.http.host,
                port=settings.http.port,
                heartbeat_path=settings.http.heartbeat_path,
                health_provider=self.health_check,
            )

        self.parent_watcher: Optional[ParentProcessWatcher] = None
        if settings.supervisor.watch_parent:
            self.parent_watcher = ParentProcessWatcher(
                self.request_exit,
                poll_interval=settings.supervisor.poll_interval,
            )

        logger.info(f"Sidecar service initialized for {settings.app_name!r}")

    async def start(self) -> None:
        """Bind the heartbeat socket and start monitoring."""
        logger.info(f"Starting sidecar service, heartbeat socket {self.endpoint_path}")

        # The one fatal startup condition
        self.channel.bind()

        # Hooks go in before any handler can start a teardown
        self.coordinator.add_teardown_hook(self.channel.close, "heartbeat-channel")
        if self.http_server is not None:
            self.coordinator.add_teardown_hook(self.http_server.stop, "http-trigger")
        if self.parent_watcher is not None:
            self.coordinator.add_teardown_hook(self.parent_watcher.stop, "parent-watcher")
        self.coordinator.add_teardown_hook(self.tracker.stop, "liveness-tracker")

        # From here on a signal removes the socket instead of killing the process
        self._setup_signal_handlers()

        self.tracker.start()
        await self.channel.start()

        if self.http_server is not None:
            try:
                await self.http_server.start()
            except OSError as e:
                logger.error(f"HTTP heartbeat trigger unavailable: {e}")
                await self.http_server.stop()
                self.http_server = None

        if self.parent_watcher is not None and self.coordinator.state is ShutdownState.AWAITING_HEARTBEATS:
            await self.parent_watcher.start()

        self._started_at = datetime.now(timezone.utc)

        logger.info("Sidecar service started, awaiting heartbeats")

    async def run(self) -> int:
        """Start, then block until the shutdown sequence completes."""
        await self.start()
        return await self.coordinator.wait_terminated()

    def add_teardown_hook(self, hook: TeardownHook, name: Optional[str] = None) -> None:
        """Register cleanup to run during shutdown, before the grace delay."""
        self.coordinator.add_teardown_hook(hook, name)

    def observe_heartbeat(self) -> None:
        """Count an in-process event as a heartbeat."""
        self.tracker.observe_heartbeat()

    def request_exit(self, detail: Optional[str] = None) -> None:
        """Supervisor-driven exit notification."""
        self.coordinator.request_shutdown(ShutdownReason.SUPERVISOR, detail)

    def health_check(self) -> Dict[str, Any]:
        return {
            "service": self.settings.service_name,
            "app_name": self.settings.app_name,
            "endpoint": str(self.endpoint_path),
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "tracker": self.tracker.status(),
            "channel": {
                "listening": self.channel.listening,
                "active_connections": self.channel.active_connections,
            },
        }

    def _setup_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for name in self.settings.shutdown.signals:
            sig = getattr(signal, name)
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError, ValueError) as e:
                # Not on the main thread, or the platform has no such hook
                logger.warning(f"Cannot handle {name} in this process: {e}")
                continue
            self._signals.append(sig)

    def _remove_signal_handlers(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        for sig in self._signals:
            loop.remove_signal_handler(sig)
        self._signals.clear()

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info(f"Received {sig.name}, requesting shutdown")
        self.coordinator.request_shutdown(ShutdownReason.SIGNAL, sig.name)

    def _on_exit(self, status: int) -> None:
        self._remove_signal_handlers()
        if self._exit_callback is not None:
            self._exit_callback(status)


async def main() -> int:
    """Main entry point."""
    config_file = os.getenv("CONFIG_FILE")
    settings = load_settings(config_file)
    setup_logging(settings.logging, settings.service_name)

    if config_file:
        logger.info(f"Loaded configuration from: {config_file}")

    service = SidecarService(settings)
    try:
        return await service.run()
    except EndpointBindError as e:
        logger.error(f"Sidecar failed to start: {e}")
        return 1


def cli():
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
