"""Parent-process supervision.

When the frontend that spawned the sidecar dies, the sidecar is re-parented
(usually to init or a subreaper) and ``getppid()`` changes. That change is
reported as a supervisor exit notification.
"""

import asyncio
import logging
import os
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class ParentProcessWatcher:
    """Poll the parent pid and call *on_parent_exit* once it changes."""

    def __init__(
        self,
        on_parent_exit: Callable[[str], None],
        poll_interval: float = 0.5,
        parent_pid: Optional[int] = None,
        getppid: Callable[[], int] = os.getppid,
    ):
        self.on_parent_exit = on_parent_exit
        self.poll_interval = poll_interval
        self._getppid = getppid
        self.parent_pid = parent_pid if parent_pid is not None else getppid()
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        logger.info(f"Watching parent process {self.parent_pid}")
        self._task = asyncio.get_running_loop().create_task(self._watch(), name="parent-watcher")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _watch(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            current = self._getppid()
            if current != self.parent_pid:
                logger.warning(f"Parent process {self.parent_pid} exited (now parented by {current})")
                self.on_parent_exit(f"parent {self.parent_pid} exited")
                return
