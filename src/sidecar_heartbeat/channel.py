"""Unix socket heartbeat channel.

Any bytes received on any connection count as one heartbeat. Payload
content is never inspected and nothing is ever written back.
"""

import asyncio
import logging
import os
import socket
import stat
from pathlib import Path
from typing import Callable, Optional, Set, Union

logger = logging.getLogger(__name__)


class SidecarError(Exception):
    """Base error for the sidecar."""


class EndpointBindError(SidecarError):
    """The heartbeat socket could not be bound. Fatal at startup."""


class HeartbeatChannel:
    """Listening endpoint, accept loop and per-connection handlers."""

    def __init__(
        self,
        path: Union[str, Path],
        on_heartbeat: Callable[[], None],
        accept_timeout: float = 0.5,
        read_chunk_size: int = 4096,
        backlog: int = 16,
    ):
        self.path = Path(path)
        self.on_heartbeat = on_heartbeat
        self.accept_timeout = accept_timeout
        self.read_chunk_size = read_chunk_size
        self.backlog = backlog

        self._sock: Optional[socket.socket] = None
        self._accept_task: Optional[asyncio.Task] = None
        self._handlers: Set[asyncio.Task] = set()
        self._closing = False
        self._closed = False

    @property
    def active_connections(self) -> int:
        return len(self._handlers)

    @property
    def listening(self) -> bool:
        return self._sock is not None and not self._closing

    def bind(self) -> None:
        """Bind and listen, replacing any artifact left by an unclean exit."""
        if self._sock is not None:
            raise RuntimeError("HeartbeatChannel already bound")

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._remove_stale_artifact()

            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            try:
                sock.bind(str(self.path))
                os.chmod(self.path, 0o600)
                sock.listen(self.backlog)
                sock.setblocking(False)
            except BaseException:
                sock.close()
                raise
        except OSError as e:
            raise EndpointBindError(f"Cannot bind heartbeat endpoint at {self.path}: {e}") from e

        self._sock = sock
        logger.info(f"Heartbeat channel bound at {self.path}")

    async def start(self) -> None:
        """Bind if needed and start the accept loop."""
        if self._sock is None:
            self.bind()
        self._accept_task = asyncio.get_running_loop().create_task(
            self._accept_loop(), name="heartbeat-accept"
        )

    async def close(self) -> None:
        """Stop accepting and remove the socket file. Safe to call twice."""
        if self._closed:
            return
        self._closing = True
        self._closed = True

        if self._accept_task is not None:
            self._accept_task.cancel()
            try:
                await self._accept_task
            except asyncio.CancelledError:
                pass
            self._accept_task = None

        if self._sock is not None:
            self._sock.close()
            self._sock = None

        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove heartbeat socket {self.path}: {e}")

        logger.info("Heartbeat channel closed")

    def _remove_stale_artifact(self) -> None:
        try:
            mode = os.lstat(self.path).st_mode
        except FileNotFoundError:
            return

        # Only ever delete a socket; anything else belongs to someone else
        if not stat.S_ISSOCK(mode):
            raise FileExistsError(f"{self.path} exists and is not a socket")

        logger.info(f"Removing stale heartbeat socket at {self.path}")
        self.path.unlink(missing_ok=True)

    async def _accept_loop(self) -> None:
        loop = asyncio.get_running_loop()
        logger.debug(f"Accept loop running on {self.path}")

        # A pending accept is kept across timeouts, never cancelled mid-accept
        pending: Optional[asyncio.Future] = None
        try:
            while not self._closing:
                if pending is None:
                    pending = asyncio.ensure_future(loop.sock_accept(self._sock))
                done, _ = await asyncio.wait({pending}, timeout=self.accept_timeout)
                if not done:
                    continue

                accepted, pending = pending, None
                try:
                    conn, _ = accepted.result()
                except OSError as e:
                    if self._closing:
                        break
                    logger.warning(f"Accept failed on heartbeat channel: {e}")
                    await asyncio.sleep(min(self.accept_timeout, 0.05))
                    continue

                task = loop.create_task(self._handle_connection(conn))
                self._handlers.add(task)
                task.add_done_callback(self._handlers.discard)
        finally:
            if pending is not None:
                self._discard_pending_accept(pending)

        logger.debug("Accept loop exited")

    @staticmethod
    def _discard_pending_accept(pending: asyncio.Future) -> None:
        if pending.cancel():
            return
        # Completed before it could be cancelled
        if not pending.cancelled() and pending.exception() is None:
            conn, _ = pending.result()
            conn.close()

    async def _handle_connection(self, conn: socket.socket) -> None:
        loop = asyncio.get_running_loop()
        conn.setblocking(False)
        try:
            while True:
                data = await loop.sock_recv(conn, self.read_chunk_size)
                if not data:
                    break
                self.on_heartbeat()
        except OSError as e:
            logger.debug(f"Heartbeat connection dropped: {e}")
        except Exception:
            logger.exception("Heartbeat connection handler failed")
        finally:
            conn.close()
