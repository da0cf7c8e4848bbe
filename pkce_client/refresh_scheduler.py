"""
Pre-emptive refresh timer. At most one pending timer: scheduling again cancels the
previous one. The scheduler never re-arms itself; the due callback decides what next.
"""
import asyncio
import inspect
import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)

DEFAULT_MARGIN_SECONDS = 60


def compute_delay(seconds_until_expiry: float, margin_seconds: float = DEFAULT_MARGIN_SECONDS) -> float:
    """Seconds to wait before refreshing; 0 when already inside the safety margin."""
    return max(0.0, seconds_until_expiry - margin_seconds)


class ScheduledRefresh:
    """Handle for one armed timer."""

    def __init__(self, handle: asyncio.TimerHandle, delay: float, due_at: float):
        self._handle = handle
        self.delay = delay
        self.due_at = due_at
        self.fired = False

    @property
    def cancelled(self) -> bool:
        return self._handle.cancelled()

    @property
    def active(self) -> bool:
        return not self.fired and not self.cancelled

    def cancel(self) -> None:
        if not self.fired:
            self._handle.cancel()


class RefreshScheduler:
    def __init__(
        self,
        margin_seconds: float = DEFAULT_MARGIN_SECONDS,
        loop: asyncio.AbstractEventLoop | None = None,
    ):
        self.margin_seconds = margin_seconds
        self._loop = loop
        self._pending: ScheduledRefresh | None = None
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def pending(self) -> ScheduledRefresh | None:
        """The armed, not yet fired timer, if any."""
        if self._pending is not None and not self._pending.active:
            self._pending = None
        return self._pending

    def schedule(self, seconds_until_expiry: float, on_due: Callable[[], Any]) -> ScheduledRefresh:
        """Arm one call to on_due shortly before expiry, replacing any pending timer."""
        if self._closed:
            raise RuntimeError("RefreshScheduler is closed")
        self.cancel()
        loop = self._loop or asyncio.get_running_loop()
        delay = compute_delay(seconds_until_expiry, self.margin_seconds)
        scheduled: ScheduledRefresh | None = None

        def fire() -> None:
            scheduled.fired = True
            if self._pending is scheduled:
                self._pending = None
            self._run(on_due)

        handle = loop.call_later(delay, fire)
        scheduled = ScheduledRefresh(handle, delay, loop.time() + delay)
        self._pending = scheduled
        logger.debug("Refresh scheduled in %.1fs", delay)
        return scheduled

    def _run(self, on_due: Callable[[], Any]) -> None:
        try:
            result = on_due()
        except Exception:
            logger.exception("Scheduled refresh callback failed")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Scheduled refresh failed: %s", exc, exc_info=exc)

    def cancel(self) -> None:
        """Cancel the pending timer (no effect on a refresh already running)."""
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

    def close(self) -> None:
        """Cancel the timer and any refresh task it started; no further scheduling."""
        self.cancel()
        for task in list(self._tasks):
            task.cancel()
        self._closed = True
