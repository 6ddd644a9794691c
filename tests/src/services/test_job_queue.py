"""
Tests for the in-process job queue.

Covers:
- Unknown job types are rejected at enqueue time
- Handlers run in FIFO order
- Failed jobs are retried with linear backoff, then dropped
- NotFoundError drops the job on the first attempt
- join() waits for scheduled retries; stop() is idempotent
"""

from __future__ import annotations

import pytest

from src.lib.exceptions import NotFoundError, ValidationError
from src.services.job_queue import JobQueue, JobType


class FakeSleep:
    """Records requested delays without waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def test_max_attempts_must_be_positive() -> None:
    with pytest.raises(ValueError):
        JobQueue(max_attempts=0)


@pytest.mark.asyncio
async def test_unknown_job_type_rejected() -> None:
    queue = JobQueue()
    with pytest.raises(ValidationError, match="Unknown job type"):
        await queue.enqueue("mystery", {})
    assert queue.depth == 0


@pytest.mark.asyncio
async def test_jobs_run_in_order() -> None:
    seen: list[int] = []

    async def handler(payload: dict) -> None:
        seen.append(payload["n"])

    queue = JobQueue()
    queue.register(JobType.SEND_BUDGET_ALERT, handler)
    for n in range(3):
        await queue.enqueue(JobType.SEND_BUDGET_ALERT, {"n": n})
    assert queue.depth == 3

    await queue.start()
    assert queue.is_running is True
    await queue.join()
    await queue.stop()

    assert seen == [0, 1, 2]
    assert queue.stats.succeeded == 3
    assert queue.is_running is False


@pytest.mark.asyncio
async def test_retry_with_backoff_then_success() -> None:
    attempts: list[int] = []

    async def flaky(payload: dict) -> None:
        attempts.append(len(attempts) + 1)
        if len(attempts) < 3:
            raise RuntimeError("transient")

    sleep = FakeSleep()
    queue = JobQueue(max_attempts=3, backoff_seconds=10, sleep=sleep)
    queue.register(JobType.SEND_WEEKLY_DIGEST, flaky)
    await queue.start()

    await queue.enqueue(JobType.SEND_WEEKLY_DIGEST, {"digest_id": 1})
    await queue.join()
    await queue.stop()

    assert attempts == [1, 2, 3]
    assert sleep.delays == [10, 20]
    assert queue.stats.retried == 2
    assert queue.stats.succeeded == 1
    assert queue.stats.dropped == 0


@pytest.mark.asyncio
async def test_dropped_after_max_attempts() -> None:
    calls = 0

    async def broken(payload: dict) -> None:
        nonlocal calls
        calls += 1
        raise RuntimeError("permanent")

    sleep = FakeSleep()
    queue = JobQueue(max_attempts=2, backoff_seconds=1.5, sleep=sleep)
    queue.register(JobType.PROCESS_RECEIPT_INSIGHTS, broken)
    await queue.start()

    await queue.enqueue(JobType.PROCESS_RECEIPT_INSIGHTS, {"receipt_id": 9})
    await queue.join()
    await queue.stop()

    assert calls == 2
    assert sleep.delays == [1.5]
    assert queue.stats.dropped == 1


@pytest.mark.asyncio
async def test_not_found_is_dropped_without_retry() -> None:
    calls = 0

    async def deleted_receipt(payload: dict) -> None:
        nonlocal calls
        calls += 1
        raise NotFoundError("Receipt", payload["receipt_id"])

    sleep = FakeSleep()
    queue = JobQueue(max_attempts=3, backoff_seconds=10, sleep=sleep)
    queue.register(JobType.PROCESS_RECEIPT_INSIGHTS, deleted_receipt)
    await queue.start()

    await queue.enqueue(JobType.PROCESS_RECEIPT_INSIGHTS, {"user_id": 1, "receipt_id": 404})
    await queue.join()
    await queue.stop()

    assert calls == 1
    assert sleep.delays == []
    assert queue.stats.retried == 0
    assert queue.stats.dropped == 1


@pytest.mark.asyncio
async def test_start_and_stop_are_idempotent() -> None:
    queue = JobQueue()
    await queue.start()
    await queue.start()
    await queue.stop()
    await queue.stop()
    assert queue.is_running is False
