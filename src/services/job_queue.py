"""
In-process Job Queue for Receipt Insights.

Background work (insight generation, budget alerts, weekly summaries and
digests) is handed to a JobQueue instead of being awaited inline.

Architecture:

    enqueue(type, payload) -> asyncio.Queue -> worker loop -> handler(payload)

Retry contract:
    A failing handler is retried until ``max_attempts`` total attempts have
    been made, waiting ``backoff_seconds * attempt_number`` before each retry.
    A NotFoundError is not retried: the job is dropped on the first attempt.
    After the last attempt the job is dropped and logged; failures are never
    surfaced to the original caller.

Usage:
    queue = JobQueue(max_attempts=3, backoff_seconds=10)
    queue.register(JobType.SEND_BUDGET_ALERT, notifications.send_budget_alert)
    await queue.start()
    await queue.enqueue(JobType.SEND_BUDGET_ALERT, {"user_id": 1, ...})
    await queue.join()   # wait for queued work and pending retries
    await queue.stop()
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from src.lib.exceptions import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

JobHandler = Callable[[dict[str, Any]], Awaitable[None]]
Sleeper = Callable[[float], Awaitable[None]]


class JobType(StrEnum):
    PROCESS_RECEIPT_INSIGHTS = "process_receipt_insights"
    SEND_BUDGET_ALERT = "send_budget_alert"
    SEND_WEEKLY_DIGEST = "send_weekly_digest"
    SEND_WEEKLY_SUMMARY = "send_weekly_summary"


@dataclass
class Job:
    """A unit of queued work."""

    job_type: str
    payload: dict[str, Any]
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    attempt: int = 1
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class JobQueueStats:
    enqueued: int = 0
    succeeded: int = 0
    retried: int = 0
    dropped: int = 0


class JobQueue:
    """
    asyncio.Queue-backed job queue with a single worker task.

    Args:
        max_attempts: Total attempts per job, including the first (>= 1).
        backoff_seconds: Base delay; retry n waits ``backoff_seconds * n``.
        sleep: Awaitable sleep used for backoff (injectable for tests).
    """

    def __init__(
        self,
        max_attempts: int = 3,
        backoff_seconds: float = 10.0,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._handlers: dict[str, JobHandler] = {}
        self._queue: asyncio.Queue[Job] = asyncio.Queue()
        self._worker_task: asyncio.Task[None] | None = None
        self._retry_tasks: set[asyncio.Task[None]] = set()
        self.stats = JobQueueStats()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, job_type: str, handler: JobHandler) -> None:
        """Register the handler for a job type (replaces any previous one)."""
        self._handlers[str(job_type)] = handler

    def has_handler(self, job_type: str) -> bool:
        return str(job_type) in self._handlers

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        """Spawn the worker task (no-op when already running)."""
        if self.is_running:
            return
        self._worker_task = asyncio.create_task(self._worker_loop(), name="job-queue-worker")
        logger.info(
            "JobQueue started: handlers=%s max_attempts=%d backoff=%.1fs",
            sorted(self._handlers),
            self.max_attempts,
            self.backoff_seconds,
        )

    async def stop(self) -> None:
        """Cancel the worker and any pending retries. Queued jobs are discarded."""
        for task in list(self._retry_tasks):
            task.cancel()
        for task in list(self._retry_tasks):
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._retry_tasks.clear()

        if self._worker_task is not None:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
            self._worker_task = None

        logger.info(
            "JobQueue stopped: enqueued=%d succeeded=%d retried=%d dropped=%d pending=%d",
            self.stats.enqueued,
            self.stats.succeeded,
            self.stats.retried,
            self.stats.dropped,
            self._queue.qsize(),
        )

    async def join(self) -> None:
        """Wait until every queued job, including scheduled retries, is finished."""
        await self._queue.join()

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def enqueue(self, job_type: str, payload: dict[str, Any]) -> Job:
        """
        Submit a job.

        Args:
            job_type: Registered job type.
            payload: JSON-like handler arguments.

        Returns:
            The queued Job.

        Raises:
            ValidationError: If no handler is registered for ``job_type``.
        """
        job_type = str(job_type)
        if job_type not in self._handlers:
            raise ValidationError(f"Unknown job type: {job_type!r}")

        job = Job(job_type=job_type, payload=dict(payload))
        await self._queue.put(job)
        self.stats.enqueued += 1
        logger.debug("Job enqueued: type=%s id=%s depth=%d", job_type, job.job_id, self.depth)
        return job

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    async def _worker_loop(self) -> None:
        while True:
            job = await self._queue.get()
            await self._run_job(job)

    async def _run_job(self, job: Job) -> None:
        handler = self._handlers[job.job_type]
        try:
            await handler(job.payload)
        except asyncio.CancelledError:
            self._queue.task_done()
            raise
        except NotFoundError:
            # The target is gone; retrying cannot succeed
            self.stats.dropped += 1
            logger.warning(
                "Job dropped, target not found: type=%s id=%s attempt=%d",
                job.job_type,
                job.job_id,
                job.attempt,
                exc_info=True,
            )
            self._queue.task_done()
            return
        except Exception:
            if job.attempt < self.max_attempts:
                delay = self.backoff_seconds * job.attempt
                logger.warning(
                    "Job failed, retrying: type=%s id=%s attempt=%d/%d delay=%.1fs",
                    job.job_type,
                    job.job_id,
                    job.attempt,
                    self.max_attempts,
                    delay,
                    exc_info=True,
                )
                self.stats.retried += 1
                task = asyncio.create_task(self._retry_later(job, delay))
                self._retry_tasks.add(task)
                task.add_done_callback(self._retry_tasks.discard)
                # task_done for this attempt happens in _retry_later
                return

            self.stats.dropped += 1
            logger.error(
                "Job dropped after %d attempts: type=%s id=%s",
                job.attempt,
                job.job_type,
                job.job_id,
                exc_info=True,
            )
            self._queue.task_done()
            return

        self.stats.succeeded += 1
        self._queue.task_done()

    async def _retry_later(self, job: Job, delay: float) -> None:
        try:
            await self._sleep(delay)
            job.attempt += 1
            await self._queue.put(job)
        finally:
            self._queue.task_done()


__all__ = ["Job", "JobHandler", "JobQueue", "JobQueueStats", "JobType"]
