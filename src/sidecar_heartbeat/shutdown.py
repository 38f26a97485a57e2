"""Graceful, run-once shutdown of the sidecar process."""

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Tuple, Union

from .tracker import LivenessTracker, ShutdownReason
from .utils.logging import log_with_context

logger = logging.getLogger(__name__)

TeardownHook = Callable[[], Union[None, Awaitable[Any]]]


class ShutdownState(str, Enum):
    AWAITING_HEARTBEATS = "awaiting_heartbeats"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


class ShutdownCoordinator:
    """
    Runs the teardown sequence exactly once.

    Shutdown requests from the heartbeat timeout, OS signals and the
    supervisor all go through :meth:`request_shutdown`. When a tracker is
    attached the request is routed through its mailbox, where the
    ``shutdown_initiated`` check-and-set decides the winner.

    Sequence on the first request:
    1. Run teardown hooks in registration order; failures are logged and skipped
    2. Sleep ``grace_delay`` so other cleanup can finish
    3. Mark TERMINATED and call ``exit_callback(0)``
    """

    def __init__(
        self,
        grace_delay: float = 0.1,
        exit_callback: Optional[Callable[[int], None]] = None,
    ):
        self.grace_delay = grace_delay
        self.exit_callback = exit_callback

        self.state = ShutdownState.AWAITING_HEARTBEATS
        self.reason: Optional[ShutdownReason] = None
        self.exit_code: Optional[int] = None

        self._hooks: List[Tuple[str, TeardownHook]] = []
        self._tracker: Optional[LivenessTracker] = None
        self._task: Optional[asyncio.Task] = None
        self._terminated = asyncio.Event()

    def attach(self, tracker: LivenessTracker) -> None:
        """Route shutdown requests through *tracker* and react to its timeout."""
        self._tracker = tracker
        tracker.on_shutdown = self.begin_shutdown

    def add_teardown_hook(self, hook: TeardownHook, name: Optional[str] = None) -> None:
        self._hooks.append((name or getattr(hook, "__qualname__", repr(hook)), hook))

    def request_shutdown(self, reason: ShutdownReason, detail: Optional[str] = None) -> None:
        """Request shutdown from any source. Repeated requests are no-ops."""
        if self._tracker is not None and self._tracker.running:
            self._tracker.request_shutdown(reason, detail)
        else:
            self.begin_shutdown(reason, detail)

    def begin_shutdown(self, reason: ShutdownReason, detail: Optional[str] = None) -> None:
        if self.state is not ShutdownState.AWAITING_HEARTBEATS:
            logger.debug(f"Shutdown already {self.state.value}, ignoring {reason.value}")
            return

        self.state = ShutdownState.SHUTTING_DOWN
        self.reason = reason
        self._task = asyncio.get_running_loop().create_task(
            self._run_sequence(reason, detail), name="sidecar-shutdown"
        )

    async def wait_terminated(self) -> int:
        await self._terminated.wait()
        return self.exit_code

    @property
    def terminated(self) -> bool:
        return self.state is ShutdownState.TERMINATED

    async def _run_sequence(self, reason: ShutdownReason, detail: Optional[str]) -> None:
        suffix = f" ({detail})" if detail else ""
        log_with_context(
            logger, logging.INFO, f"Shutdown sequence begun: reason={reason.value}{suffix}",
            reason=reason.value, detail=detail,
        )

        for name, hook in self._hooks:
            try:
                result = hook()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Teardown hook {name} failed")

        if self.grace_delay > 0:
            await asyncio.sleep(self.grace_delay)

        self.exit_code = 0
        self.state = ShutdownState.TERMINATED
        logger.info("Process terminating with exit status 0")
        self._terminated.set()

        if self.exit_callback is not None:
            self.exit_callback(self.exit_code)
