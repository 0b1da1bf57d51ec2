import asyncio
import logging
import os
import shutil
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


def remove_path(path: str) -> None:
    try:
        if os.path.isdir(path):
            shutil.rmtree(path)
            logger.info("removed temp dir %s", path)
        elif os.path.exists(path):
            os.remove(path)
            logger.info("removed temp file %s", path)
    except OSError as e:
        logger.warning("failed to remove temp path %s: %s", path, e)


class CleanupScheduler:
    """Deferred removal of job directories and uploaded files.

    Every scheduled removal is an asyncio task kept in ``_tasks`` so it can be
    cancelled, replaced or forced to run immediately with ``run_now()``.
    An ``on_removed`` callback runs on the loop after the path is gone.
    Must be used from inside the running event loop.
    """

    def __init__(self, default_delay: float = 60.0):
        self.default_delay = default_delay
        self._tasks: Dict[str, asyncio.Task] = {}
        self._callbacks: Dict[str, Callable[[], None]] = {}

    @property
    def pending(self) -> List[str]:
        return [p for p, t in self._tasks.items() if not t.done()]

    def schedule(self, path: str, delay: Optional[float] = None,
                 on_removed: Optional[Callable[[], None]] = None) -> asyncio.Task:
        path = str(path)
        delay = self.default_delay if delay is None else delay
        self.cancel(path)
        task = asyncio.get_running_loop().create_task(self._remove_later(path, delay))
        self._tasks[path] = task
        if on_removed is not None:
            self._callbacks[path] = on_removed
        logger.debug("cleanup of %s scheduled in %.1fs", path, delay)
        return task

    def cancel(self, path: str) -> bool:
        path = str(path)
        self._callbacks.pop(path, None)
        task = self._tasks.pop(path, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def _remove(self, path: str, callback: Optional[Callable[[], None]]) -> None:
        await asyncio.get_running_loop().run_in_executor(None, remove_path, path)
        if callback is not None:
            callback()

    async def _remove_later(self, path: str, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        current = self._tasks.get(path) is asyncio.current_task()
        callback = self._callbacks.pop(path, None) if current else None
        await self._remove(path, callback)
        if self._tasks.get(path) is asyncio.current_task():
            del self._tasks[path]

    async def run_now(self) -> None:
        """Remove everything still pending without waiting for its delay."""
        jobs = [(path, self._callbacks.get(path)) for path in self.pending]
        for path, _ in jobs:
            self.cancel(path)
        for path, callback in jobs:
            await self._remove(path, callback)

    async def wait(self) -> None:
        tasks = [t for t in self._tasks.values() if not t.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
