"""Liveness tracker for the frontend heartbeat.

All heartbeat state lives in a single asyncio task that consumes a mailbox of
tagged messages. Connection handlers, the HTTP route, signal handlers and the
periodic timer only ever post messages; nothing else touches the state.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class ShutdownReason(str, Enum):
    """Sources that may request a shutdown."""
    TIMEOUT = "heartbeat_timeout"
    SIGNAL = "signal"
    SUPERVISOR = "supervisor"
    HTTP = "http_request"


@dataclass
class HeartbeatState:
    """Mutable liveness state, owned by the tracker's mailbox task."""
    last_heartbeat: float
    shutdown_initiated: bool = False
    heartbeats: int = 0

    def record(self, at: float) -> None:
        # Monotonic instants may arrive out of order, keep the latest
        if at > self.last_heartbeat:
            self.last_heartbeat = at
        self.heartbeats += 1

    def mark_shutdown(self) -> bool:
        """Flip ``shutdown_initiated``; return True only for the first caller."""
        if self.shutdown_initiated:
            return False
        self.shutdown_initiated = True
        return True


@dataclass(frozen=True)
class HeartbeatObserved:
    at: float


@dataclass(frozen=True)
class CheckDue:
    pass


@dataclass(frozen=True)
class ShutdownRequested:
    reason: ShutdownReason
    detail: Optional[str] = None


@dataclass(frozen=True)
class Stop:
    pass


ShutdownCallback = Callable[[ShutdownReason, Optional[str]], None]


class LivenessTracker:
    """
    Tracks the last observed heartbeat and detects silence.

    A check runs every ``heartbeat_interval`` seconds. When more than
    ``heartbeat_timeout`` seconds have elapsed since the last heartbeat the
    tracker requests a shutdown and stops rescheduling itself.
    """

    def __init__(
        self,
        heartbeat_interval: float = 0.1,
        heartbeat_timeout: float = 0.3,
        on_shutdown: Optional[ShutdownCallback] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if heartbeat_interval <= 0:
            raise ValueError("heartbeat_interval must be positive")
        if heartbeat_timeout <= heartbeat_interval:
            raise ValueError("heartbeat_timeout must be greater than heartbeat_interval")

        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_timeout = heartbeat_timeout
        self.on_shutdown = on_shutdown
        self._clock = clock

        self.state: Optional[HeartbeatState] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._mailbox: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Initialise state and schedule the first check. Needs a running loop."""
        if self._task is not None:
            raise RuntimeError("LivenessTracker already started")

        self._loop = asyncio.get_running_loop()
        self.state = HeartbeatState(last_heartbeat=self._clock())
        self._mailbox = asyncio.Queue()
        self._task = self._loop.create_task(self._run(), name="liveness-tracker")
        self._schedule_check()

        logger.info(
            f"Liveness tracker started: interval={self.heartbeat_interval * 1000:.0f}ms, "
            f"timeout={self.heartbeat_timeout * 1000:.0f}ms"
        )

    def observe_heartbeat(self) -> None:
        """Record that a heartbeat happened now. Safe from any thread."""
        if self._mailbox is None:
            return
        self._post(HeartbeatObserved(self._clock()))

    def request_shutdown(self, reason: ShutdownReason, detail: Optional[str] = None) -> None:
        """Ask for shutdown; only the first request across all sources wins."""
        self._post(ShutdownRequested(reason, detail))

    def check_due(self) -> None:
        """Run the liveness check now instead of waiting for the timer."""
        self._post(CheckDue())

    async def flush(self) -> None:
        """Wait until every message posted so far has been processed."""
        # Let call_soon_threadsafe deliveries land in the queue first
        await asyncio.sleep(0)
        if self._mailbox is not None and self.running:
            await self._mailbox.join()

    async def stop(self) -> None:
        """Cancel the timer and stop the mailbox task."""
        self._cancel_timer()
        if not self.running:
            return
        self._mailbox.put_nowait(Stop())
        await self._task
        logger.debug("Liveness tracker stopped")

    def status(self) -> Dict[str, Any]:
        if self.state is None:
            return {"status": "stopped"}
        since_last = self._clock() - self.state.last_heartbeat
        return {
            "status": "shutting_down" if self.state.shutdown_initiated else "monitoring",
            "seconds_since_heartbeat": round(since_last, 3),
            "heartbeat_interval": self.heartbeat_interval,
            "heartbeat_timeout": self.heartbeat_timeout,
            "heartbeats": self.state.heartbeats,
            "shutdown_initiated": self.state.shutdown_initiated,
        }

    def _post(self, message) -> None:
        if self._loop is None or self._mailbox is None:
            raise RuntimeError("LivenessTracker not started")
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None

        if current is self._loop:
            self._mailbox.put_nowait(message)
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._mailbox.put_nowait, message)

    def _schedule_check(self) -> None:
        self._cancel_timer()
        self._timer = self._loop.call_later(self.heartbeat_interval, self._post, CheckDue())

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def _run(self) -> None:
        while True:
            message = await self._mailbox.get()
            try:
                if isinstance(message, Stop):
                    return
                self._handle(message)
            except Exception:
                logger.exception(f"Liveness tracker failed to handle {message!r}")
            finally:
                self._mailbox.task_done()

    def _handle(self, message) -> None:
        if isinstance(message, HeartbeatObserved):
            if not self.state.shutdown_initiated:
                self.state.record(message.at)

        elif isinstance(message, CheckDue):
            if self.state.shutdown_initiated:
                return
            elapsed = self._clock() - self.state.last_heartbeat
            if elapsed > self.heartbeat_timeout:
                logger.warning(
                    f"Heartbeat timeout detected: no heartbeat for {elapsed * 1000:.0f}ms "
                    f"(timeout {self.heartbeat_timeout * 1000:.0f}ms)"
                )
                self._begin_shutdown(ShutdownReason.TIMEOUT, f"{elapsed:.3f}s without heartbeat")
            else:
                self._schedule_check()

        elif isinstance(message, ShutdownRequested):
            self._begin_shutdown(message.reason, message.detail)

    def _begin_shutdown(self, reason: ShutdownReason, detail: Optional[str]) -> None:
        if not self.state.mark_shutdown():
            logger.debug(f"Shutdown already initiated, ignoring request from {reason.value}")
            return

        self._cancel_timer()
        if self.on_shutdown is not None:
            self.on_shutdown(reason, detail)
