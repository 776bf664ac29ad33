"""
Scheduler module for the range finder system.

This module provides fixed-interval tasks (retention sweep, status line) and
named one-shot timers (session refresh) on the running asyncio loop.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from .event_logger import EventLogger

Callback = Callable[[], Awaitable[None]]


@dataclass
class ScheduledTask:
    """Represents a periodic task."""

    name: str
    interval_seconds: float
    callback: Callback
    last_run: Optional[float] = None
    enabled: bool = True
    run_count: int = 0
    error_count: int = 0

    def is_due(self, now: float) -> bool:
        if not self.enabled:
            return False
        return self.last_run is None or now - self.last_run >= self.interval_seconds


class Scheduler:
    """
    Interval and one-shot scheduler.

    Interval tasks are driven by `run()`. One-shot timers are armed with
    `call_later()`; re-arming a name cancels the pending timer but never a
    callback that is already running.
    """

    def __init__(
        self,
        logger: Optional[EventLogger] = None,
        clock: Callable[[], float] = time.monotonic,
        tick_seconds: float = 1.0,
    ) -> None:
        """
        Initialize the scheduler.

        Args:
            logger: Optional logger for callback failures
            clock: Monotonic clock used for interval bookkeeping
            tick_seconds: How often `run()` checks for due tasks
        """
        self._logger = logger
        self._clock = clock
        self._tick_seconds = tick_seconds
        self._tasks: dict[str, ScheduledTask] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._timer_due: dict[str, float] = {}
        self._timer_runs: set[asyncio.Task] = set()
        self._running = False

    def schedule(
        self,
        name: str,
        interval_seconds: float,
        callback: Callback,
        run_immediately: bool = False,
    ) -> ScheduledTask:
        """
        Schedule a periodic task.

        Args:
            name: Unique name for the task
            interval_seconds: Seconds between runs
            callback: Async function to call
            run_immediately: Run on the first tick instead of after one interval

        Raises:
            ValueError: If a task with the same name already exists or the interval is not positive
        """
        if name in self._tasks:
            raise ValueError(f"Task '{name}' already exists")
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")

        task = ScheduledTask(
            name=name,
            interval_seconds=interval_seconds,
            callback=callback,
            last_run=None if run_immediately else self._clock(),
        )
        self._tasks[name] = task
        return task

    def unschedule(self, name: str) -> bool:
        """Remove a periodic task. Returns True if it existed."""
        return self._tasks.pop(name, None) is not None

    def get_task(self, name: str) -> Optional[ScheduledTask]:
        return self._tasks.get(name)

    def list_tasks(self) -> list[ScheduledTask]:
        return list(self._tasks.values())

    def enable_task(self, name: str) -> bool:
        """Enable a task. Returns True if task exists."""
        if name in self._tasks:
            self._tasks[name].enabled = True
            return True
        return False

    def disable_task(self, name: str) -> bool:
        """Disable a task. Returns True if task exists."""
        if name in self._tasks:
            self._tasks[name].enabled = False
            return True
        return False

    def call_later(self, name: str, delay_seconds: float, callback: Callback) -> None:
        """
        Arm (or re-arm) the named one-shot timer.

        Must be called from within the running event loop.
        """
        self.cancel_timer(name)
        loop = asyncio.get_running_loop()
        delay = max(0.0, delay_seconds)
        self._timers[name] = loop.call_later(delay, self._fire_timer, name, callback)
        self._timer_due[name] = loop.time() + delay

    def cancel_timer(self, name: str) -> bool:
        """Cancel a pending timer. Returns True if one was pending."""
        handle = self._timers.pop(name, None)
        self._timer_due.pop(name, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def has_timer(self, name: str) -> bool:
        return name in self._timers

    def timer_delay(self, name: str) -> Optional[float]:
        """Seconds until the named timer fires, or None if not armed."""
        due = self._timer_due.get(name)
        if due is None:
            return None
        return max(0.0, due - asyncio.get_running_loop().time())

    def _fire_timer(self, name: str, callback: Callback) -> None:
        self._timers.pop(name, None)
        self._timer_due.pop(name, None)
        task = asyncio.ensure_future(self._run_callback(name, callback))
        self._timer_runs.add(task)
        task.add_done_callback(self._timer_runs.discard)

    async def _run_callback(self, name: str, callback: Callback) -> bool:
        try:
            await callback()
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Log error but continue running other tasks
            if self._logger:
                self._logger.log_error("Scheduler", f"Task '{name}' failed", error=e)
            return False

    async def run_due_tasks(self) -> int:
        """Run every enabled interval task that is due. Returns how many ran."""
        ran = 0
        for task in list(self._tasks.values()):
            now = self._clock()
            if not task.is_due(now):
                continue
            task.last_run = now
            task.run_count += 1
            if not await self._run_callback(task.name, task.callback):
                task.error_count += 1
            ran += 1
        return ran

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """
        Run the interval loop until `stop()` is called or `stop_event` is set.

        Args:
            stop_event: Optional event to signal the scheduler to stop
        """
        self._running = True

        while self._running:
            await self.run_due_tasks()

            if stop_event is not None:
                if stop_event.is_set():
                    break
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self._tick_seconds)
                except asyncio.TimeoutError:
                    pass
            else:
                await asyncio.sleep(self._tick_seconds)

        self._running = False

    def stop(self) -> None:
        """Signal the loop to stop and cancel all pending timers."""
        self._running = False
        for name in list(self._timers):
            self.cancel_timer(name)

    async def shutdown(self) -> None:
        """Stop, then cancel and await timer callbacks still running."""
        self.stop()
        runs = list(self._timer_runs)
        for task in runs:
            task.cancel()
        if runs:
            await asyncio.gather(*runs, return_exceptions=True)

    def is_running(self) -> bool:
        return self._running
