"""Frontend-side heartbeat sender.

Runs in the process that supervises the sidecar: it keeps a connection to
the heartbeat socket open and writes a byte every interval.
"""

import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Optional, Union

from .utils.retry import exponential_backoff

logger = logging.getLogger(__name__)


class HeartbeatSender:
    """Write a heartbeat to the sidecar socket every ``interval`` seconds."""

    def __init__(
        self,
        path: Union[str, Path],
        interval: float = 0.1,
        payload: bytes = b".",
        connect_attempts: int = 5,
    ):
        if not payload:
            raise ValueError("payload must be at least one byte")
        self.path = Path(path)
        self.interval = interval
        self.payload = payload
        self.connect_attempts = connect_attempts

        self.sent = 0
        self._writer: Optional[asyncio.StreamWriter] = None

    @property
    def connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    async def connect(self) -> None:
        async def _open():
            return await asyncio.open_unix_connection(str(self.path))

        _, self._writer = await exponential_backoff(
            _open,
            max_attempts=self.connect_attempts,
            initial_delay=self.interval,
            max_delay=max(self.interval * 10, 1.0),
            exceptions=(OSError,),
        )
        logger.debug(f"Connected to heartbeat socket {self.path}")

    async def send(self) -> None:
        if not self.connected:
            await self.connect()
        self._writer.write(self.payload)
        await self._writer.drain()
        self.sent += 1

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Send heartbeats until *stop_event* is set, reconnecting on errors.

        A failed send or reconnect is logged and retried on the next tick,
        so the sender also survives a sidecar that is not up yet.
        """
        stop_event = stop_event or asyncio.Event()
        try:
            while not stop_event.is_set():
                try:
                    await self.send()
                except OSError as e:
                    logger.warning(f"Heartbeat send failed: {e}")
                    await self.close()

                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.close()

    async def close(self) -> None:
        if self._writer is None:
            return
        writer, self._writer = self._writer, None
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass


async def wait_for_endpoint(
    path: Union[str, Path],
    timeout: float = 10.0,
    poll_interval: float = 0.2,
) -> bool:
    """Poll until the sidecar accepts connections on *path*. Returns False on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout

    while True:
        try:
            _, writer = await asyncio.open_unix_connection(str(path))
        except OSError:
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(poll_interval)
            continue

        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True


async def main():
    """Send heartbeats to the sidecar configured by CONFIG_FILE until interrupted."""
    from .config.settings import load_settings
    from .utils.logging import setup_logging

    settings = load_settings(os.getenv("CONFIG_FILE"))
    setup_logging(settings.logging, f"{settings.service_name}-sender")

    path = settings.endpoint_path
    if not await wait_for_endpoint(path, timeout=float(os.getenv("WAIT_TIMEOUT", "10"))):
        logger.error(f"Sidecar heartbeat socket not available at {path}")
        return 1

    sender = HeartbeatSender(path, interval=settings.heartbeat.interval)
    logger.info(f"Sending heartbeats to {path} every {settings.heartbeat.interval_ms}ms")
    await sender.run()
    return 0


def cli():
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\nShutdown requested by user")


if __name__ == "__main__":
    cli()
