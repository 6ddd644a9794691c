"""
Scheduled Batch Jobs for Receipt Insights.

Each entry point walks the relevant users and isolates failures per user,
so one broken account never stops the batch.

Schedule (UTC, cron syntax):
    weekly_digest          0 6 * * 0    Sunday 06:00
    recurring_detection    0 2 * * *    daily 02:00
    budget_alerts          0 9 * * *    daily 09:00
    month_reconciliation   5 0 * * *    daily 00:05 (no-op after the first run of a month)
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from src.lib.security import hash_uid
from src.services.budget_ledger import BudgetLedger
from src.services.digest import DigestAggregator
from src.services.recurrence import RecurrenceDetector

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScheduledTask:
    name: str
    cron: str
    run: Callable[[], Awaitable[dict[str, int]]]


class ScheduledJobs:
    """
    Batch entry points run by the Scheduler.

    Args:
        digest: Weekly digest aggregator (also lists the known users).
        recurrence: Batch recurring-purchase detector.
        ledger: Budget ledger.
    """

    def __init__(
        self,
        digest: DigestAggregator,
        recurrence: RecurrenceDetector,
        ledger: BudgetLedger,
    ) -> None:
        self.digest = digest
        self.recurrence = recurrence
        self.ledger = ledger

    async def _for_each_user(
        self,
        job_name: str,
        user_ids: list[int],
        action: Callable[[int], Awaitable[object]],
    ) -> dict[str, int]:
        succeeded = 0
        failed = 0
        for user_id in user_ids:
            try:
                await action(user_id)
                succeeded += 1
            except Exception as exc:  # Intentional catch-all: per-user isolation in batch jobs
                failed += 1
                logger.error("%s failed for %s: %s", job_name, hash_uid(user_id), exc)
        logger.info("%s finished: %d succeeded, %d failed", job_name, succeeded, failed)
        return {"succeeded": succeeded, "failed": failed}

    async def weekly_digest(self) -> dict[str, int]:
        result = await self.digest.run_weekly()
        return {"succeeded": result["generated"], "failed": result["failed"]}

    async def recurring_detection(self) -> dict[str, int]:
        return await self._for_each_user(
            "recurring_detection",
            await self.digest.list_user_ids(),
            self.recurrence.detect_recurring_purchases,
        )

    async def budget_alerts(self) -> dict[str, int]:
        return await self._for_each_user(
            "budget_alerts",
            await self.ledger.list_user_ids(notifications_only=True),
            self.ledger.check_budget_alerts,
        )

    async def month_reconciliation(self) -> dict[str, int]:
        return await self._for_each_user(
            "month_reconciliation",
            await self.ledger.list_user_ids(),
            self.ledger.reconcile_month,
        )

    def tasks(self) -> list[ScheduledTask]:
        return [
            ScheduledTask("weekly_digest", "0 6 * * 0", self.weekly_digest),
            ScheduledTask("recurring_detection", "0 2 * * *", self.recurring_detection),
            ScheduledTask("budget_alerts", "0 9 * * *", self.budget_alerts),
            ScheduledTask("month_reconciliation", "5 0 * * *", self.month_reconciliation),
        ]


__all__ = ["ScheduledJobs", "ScheduledTask"]
