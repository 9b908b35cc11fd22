"""
Keyed registry of cancellable delayed actions.

Each :class:`SchedulerKey` owns at most one pending timer. ``arm`` replaces
whatever is pending for the key and ``cancel`` is a no-op when nothing is.
The registry keeps no durable state; it is rebuilt at startup by the
rehydrator from the persisted entries.

A timer detaches itself from the registry when it fires, before running its
action, so the action can re-arm its own key (retry rescheduling) without
cancelling itself.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict, List

from aegis.datatypes.collaborators import Clock
from aegis.datatypes.moderation_datatypes import SchedulerKey
from aegis.util.clock import system_clock
from aegis.util.logger import get_logger

logger = get_logger("timer_registry")

TimerAction = Callable[[], Awaitable[None]]


class TimerRegistry:
    """
    Map from scheduler key to a single live ``asyncio.Task``.

    Attributes:
        clock: Source of sleeps; tests inject a virtual clock.
    """

    def __init__(self, clock: Clock = system_clock) -> None:
        self.clock = clock
        self._timers: Dict[SchedulerKey, asyncio.Task[None]] = {}
        self._executing: Dict[SchedulerKey, asyncio.Task[None]] = {}

    def arm(self, key: SchedulerKey, delay_seconds: float, action: TimerAction) -> asyncio.Task[None]:
        """
        Schedule ``action`` to run after ``delay_seconds``, replacing any pending timer.

        Args:
            key: Scheduler key that owns the timer.
            delay_seconds: Delay before firing; negative values are clamped to 0
                so past-due entries fire immediately.
            action: Coroutine function invoked when the timer fires.

        Returns:
            asyncio.Task: The task backing the new timer.
        """
        replaced = self.cancel(key)
        delay = max(0.0, float(delay_seconds))

        loop = asyncio.get_running_loop()
        task = loop.create_task(self._fire(key, delay, action), name=f"aegis-timer-{key}")
        self._timers[key] = task
        task.add_done_callback(lambda completed, k=key: self._discard(k, completed))

        logger.debug(
            "[TIMER REGISTRY] Armed %s in %.1fs%s", key, delay, " (replaced pending timer)" if replaced else ""
        )
        return task

    def cancel(self, key: SchedulerKey) -> bool:
        """
        Cancel the pending timer for ``key`` if one exists.

        Returns:
            bool: True if a pending timer was cancelled, False if none existed.
        """
        task = self._timers.pop(key, None)
        if task is None:
            return False
        if not task.done():
            task.cancel()
        logger.debug("[TIMER REGISTRY] Cancelled %s", key)
        return True

    def is_armed(self, key: SchedulerKey) -> bool:
        """True while a timer for ``key`` is waiting to fire."""
        task = self._timers.get(key)
        return task is not None and not task.done()

    def is_active(self, key: SchedulerKey) -> bool:
        """True while ``key`` is either armed or its action is running."""
        return self.is_armed(key) or key in self._executing

    def pending_keys(self) -> List[SchedulerKey]:
        return [key for key, task in self._timers.items() if not task.done()]

    def __len__(self) -> int:
        return len(self.pending_keys())

    async def shutdown(self) -> None:
        """Cancel every pending and executing timer and wait for them to finish."""
        tasks = list(self._timers.values()) + list(self._executing.values())
        self._timers.clear()
        self._executing.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("[TIMER REGISTRY] Shut down (%d timers cancelled)", len(tasks))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _fire(self, key: SchedulerKey, delay: float, action: TimerAction) -> None:
        await self.clock.sleep(delay)

        current = asyncio.current_task()
        if self._timers.get(key) is current:
            del self._timers[key]
        if current is not None:
            self._executing[key] = current

        try:
            await action()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[TIMER REGISTRY] Action for %s failed", key)
        finally:
            if self._executing.get(key) is current:
                del self._executing[key]

    def _discard(self, key: SchedulerKey, task: asyncio.Task[None]) -> None:
        if self._timers.get(key) is task:
            del self._timers[key]
