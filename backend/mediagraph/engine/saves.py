"""Registry of in-flight fire-and-forget save tasks."""
import asyncio
import logging

logger = logging.getLogger(__name__)


class SaveTracker:
    """Keyed set of spawned save tasks that a run can await before settling."""

    def __init__(self):
        self._pending: dict[str, asyncio.Task] = {}

    def track(self, key: str, task: asyncio.Task) -> None:
        self._pending[key] = task

        def _done(t: asyncio.Task, _key: str = key) -> None:
            if self._pending.get(_key) is t:
                del self._pending[_key]

        task.add_done_callback(_done)

    @property
    def pending(self) -> list[str]:
        return list(self._pending)

    async def wait_for_pending(self, timeout: float = 60.0) -> bool:
        """Await all tracked saves. Returns False if the timeout elapsed first."""
        tasks = list(self._pending.values())
        if not tasks:
            return True
        done, not_done = await asyncio.wait(tasks, timeout=timeout)
        if not_done:
            logger.warning("%d save(s) still pending after %.0fs", len(not_done), timeout)
            return False
        return True
