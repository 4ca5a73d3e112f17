"""Cooperative cancellation shared by every dispatch of one workflow run."""
import asyncio
import threading
from enum import Enum
from typing import Any, Awaitable


class CancelReason(str, Enum):
    USER_CANCELLED = "user_cancelled"
    TIMEOUT = "timeout"
    SIBLING_FAILED = "sibling_failed"


class CancellationToken:
    """One-shot cancellation signal with a reason.

    The first cancel() wins; later calls keep the original reason.
    """

    def __init__(self):
        self._reason: CancelReason | None = None
        self._lock = threading.Lock()
        self._event = asyncio.Event()
        self._timer: asyncio.TimerHandle | None = None

    @property
    def cancelled(self) -> bool:
        with self._lock:
            return self._reason is not None

    @property
    def reason(self) -> CancelReason | None:
        with self._lock:
            return self._reason

    def cancel(self, reason: CancelReason = CancelReason.USER_CANCELLED) -> bool:
        """Returns False if the token was already cancelled."""
        with self._lock:
            if self._reason is not None:
                return False
            self._reason = reason
        self._event.set()
        if self._timer is not None:
            self._timer.cancel()
        return True

    def cancel_after(self, delay_s: float) -> None:
        """Cancel with TIMEOUT once `delay_s` elapses. Needs a running loop."""
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay_s, self.cancel, CancelReason.TIMEOUT)

    def cancel_timer(self) -> None:
        """Drop a pending cancel_after() without cancelling the token."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    @property
    def timer_pending(self) -> bool:
        return self._timer is not None and not self._timer.cancelled()

    async def wait(self) -> CancelReason:
        await self._event.wait()
        return self._reason

    def raise_if_cancelled(self) -> None:
        from .errors import ExecutionCancelled

        reason = self.reason
        if reason is not None:
            raise ExecutionCancelled(reason)

    async def guard(self, awaitable: Awaitable[Any]) -> Any:
        """Await `awaitable`, aborting it as soon as the token is cancelled.

        Raises ExecutionCancelled carrying the cancel reason when the token
        fires first; the aborted task is cancelled and reaped.
        """
        from .errors import ExecutionCancelled

        task = asyncio.ensure_future(awaitable)
        if self.cancelled:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise ExecutionCancelled(self.reason)

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise

        if task in done:
            waiter.cancel()
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise ExecutionCancelled(self.reason)
