"""
Cron Scheduler for Receipt Insights.

Runs ScheduledTasks from one asyncio loop. Each task keeps its next due
time (computed with croniter); tick() runs every task whose due time has
passed exactly once and then advances it to the next slot after "now", so
missed slots are not replayed.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime

from croniter import croniter

from src.lib.clock import Clock, utc_now
from src.workflows.scheduled_jobs import ScheduledTask

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[None]]


def next_run(cron: str, after: datetime) -> datetime:
    """Next occurrence of ``cron`` strictly after ``after`` (UTC)."""
    return croniter(cron, after).get_next(datetime).replace(tzinfo=UTC)


class Scheduler:
    """
    Args:
        tasks: Tasks to run.
        clock: Returns "now" as an aware UTC datetime.
        poll_interval: Seconds between ticks.
        sleep: Awaitable sleep (tests inject a fake).
    """

    def __init__(
        self,
        tasks: Sequence[ScheduledTask],
        clock: Clock = utc_now,
        poll_interval: float = 30.0,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.tasks = list(tasks)
        self.clock = clock
        self.poll_interval = poll_interval
        self._sleep = sleep
        now = clock()
        self._next_runs: dict[str, datetime] = {task.name: next_run(task.cron, now) for task in self.tasks}
        self._loop_task: asyncio.Task[None] | None = None

    @property
    def next_runs(self) -> dict[str, datetime]:
        return dict(self._next_runs)

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def tick(self) -> list[str]:
        """
        Run every due task once.

        Returns:
            Names of the tasks that ran (failed runs included).
        """
        now = self.clock()
        ran: list[str] = []
        for task in self.tasks:
            if now < self._next_runs[task.name]:
                continue
            # Advance first so a failing task is not retried until its next slot
            self._next_runs[task.name] = next_run(task.cron, now)
            ran.append(task.name)
            try:
                result = await task.run()
                logger.info("Scheduled task %s completed: %s", task.name, result)
            except Exception:  # Intentional catch-all: a failing task must not stop the scheduler
                logger.exception("Scheduled task %s failed", task.name)
        return ran

    async def _run_loop(self) -> None:
        while True:
            await self.tick()
            await self._sleep(self.poll_interval)

    def start(self) -> None:
        if self.is_running:
            return
        self._loop_task = asyncio.create_task(self._run_loop(), name="scheduler")
        logger.info(
            "Scheduler started with %d tasks: %s",
            len(self.tasks),
            ", ".join(f"{name}@{due.isoformat()}" for name, due in self._next_runs.items()),
        )

    async def stop(self) -> None:
        if self._loop_task is None:
            return
        self._loop_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._loop_task
        self._loop_task = None
        logger.info("Scheduler stopped")


__all__ = ["Scheduler", "next_run"]
