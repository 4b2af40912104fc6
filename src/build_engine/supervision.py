"""Timers of the engine.

Control-flow delays (autosave debounce, auto-advance) are named scheduled
transitions. Liveness timeouts (generation fallback) are watchdogs owned by
``LivenessSupervisor`` so they can be listed and cancelled without touching
control flow.
"""

import asyncio
import time
from typing import Awaitable, Callable, Dict, List, Optional, Set

from src.utils.logger import get_logger

logger = get_logger(__name__)

Callback = Callable[[], Awaitable[None]]


class Scheduler:
    """Named one-shot timers on the running event loop.

    Scheduling a name that is already pending replaces the earlier timer.
    """

    def __init__(self) -> None:
        self._handles: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: Set[asyncio.Task] = set()

    def schedule(self, name: str, delay: float, callback: Callback) -> None:
        """Run callback after delay seconds."""
        self.cancel(name)
        loop = asyncio.get_running_loop()
        self._handles[name] = loop.call_later(delay, self._fire, name, callback)

    def _fire(self, name: str, callback: Callback) -> None:
        self._handles.pop(name, None)
        task = asyncio.get_running_loop().create_task(callback())
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._done(name, t))

    def _done(self, name: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("scheduler.callback_failed", timer=name, error=str(error))

    def cancel(self, name: str) -> bool:
        """Cancel a pending timer. Returns True if one was pending."""
        handle = self._handles.pop(name, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def pending(self, name: str) -> bool:
        return name in self._handles

    def pending_names(self) -> List[str]:
        return sorted(self._handles)

    def cancel_all(self) -> None:
        for name in list(self._handles):
            self.cancel(name)


class LivenessSupervisor:
    """Watchdogs that fire when an expected event never arrives.

    Expiry never cancels the underlying work; it only runs the recovery
    callback and is recorded in ``expired``.
    """

    def __init__(self, scheduler: Optional[Scheduler] = None):
        self._scheduler = scheduler or Scheduler()
        self._deadlines: Dict[str, float] = {}
        self.expired: List[str] = []

    def watch(self, name: str, timeout: float, on_expire: Callback) -> None:
        """Arm (or re-arm) a watchdog."""
        key = f"watchdog:{name}"
        self._deadlines[name] = time.monotonic() + timeout

        async def _expire() -> None:
            self._deadlines.pop(name, None)
            self.expired.append(name)
            logger.warning("supervision.watchdog_expired", watchdog=name, timeout=timeout)
            await on_expire()

        self._scheduler.schedule(key, timeout, _expire)

    def clear(self, name: str) -> bool:
        """Disarm a watchdog because the expected event arrived."""
        self._deadlines.pop(name, None)
        return self._scheduler.cancel(f"watchdog:{name}")

    def watching(self, name: str) -> bool:
        return name in self._deadlines

    def active(self) -> Dict[str, float]:
        """Seconds left per armed watchdog."""
        now = time.monotonic()
        return {name: max(0.0, deadline - now) for name, deadline in self._deadlines.items()}

    def clear_all(self) -> None:
        for name in list(self._deadlines):
            self.clear(name)
