"""
Budget Ledger for Receipt Insights.

Maintains per-user, per-category monthly spend counters and emits the
80% / 100% threshold notifications.

State per (user, category):
    monthly_limit, current_spend, notified_at_80, notified_at_100,
    last_notification_at

Rules:
- Attribution to a user without a config, or to a category without a
  budget (case-insensitive), is a silent no-op.
- Each threshold flag flips false -> true at most once until the next
  reset_spending() or reconcile_month(); both thresholds can fire in one call.
- With notifications disabled, spend is still accumulated but no flag is
  set and no job is enqueued.
- Counter updates are read-modify-write under optimistic concurrency: the
  CategoryBudget version column turns a lost update into a StaleDataError,
  and the whole unit of work is retried from a fresh read.
- Jobs are enqueued only after the transaction committed.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, TypeVar

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from src.infra.database import SessionFactory
from src.lib.clock import Clock, ensure_utc, month_key, start_of_month, utc_now
from src.lib.exceptions import ConcurrencyConflictError, NotFoundError, ValidationError
from src.lib.security import hash_uid
from src.models.budget import BudgetConfig, CategoryBudget
from src.models.insight_item import InsightItem
from src.services.job_queue import JobQueue, JobType

logger = logging.getLogger(__name__)

T = TypeVar("T")

WARNING_THRESHOLD = 80
EXCEEDED_THRESHOLD = 100
UNCATEGORIZED = "Uncategorized"
WEEKLY_SUMMARY_INTERVAL = timedelta(days=7)
SUNDAY = 6  # datetime.weekday()


class BudgetStatus:
    NORMAL = "normal"
    WARNING = "warning"
    EXCEEDED = "exceeded"


def budget_status(percent_used: float) -> str:
    if percent_used >= EXCEEDED_THRESHOLD:
        return BudgetStatus.EXCEEDED
    if percent_used >= WARNING_THRESHOLD:
        return BudgetStatus.WARNING
    return BudgetStatus.NORMAL


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


@dataclass(frozen=True)
class ThresholdAlert:
    """A threshold crossing waiting to be enqueued as ``send_budget_alert``."""

    user_id: int
    category: str
    threshold: int
    percent_used: int
    spent: float
    limit: float

    def to_payload(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "category": self.category,
            "threshold": self.threshold,
            "percent_used": self.percent_used,
            "spent": self.spent,
            "limit": self.limit,
        }


@dataclass
class AttributionResult:
    category: str
    current_spend: float
    percent_used: float
    alerts: list[ThresholdAlert]


class BudgetLedger:
    """
    Per-category monthly spend counters with threshold notifications.

    Args:
        session_factory: Async session factory.
        job_queue: Receives ``send_budget_alert`` / ``send_weekly_summary`` jobs.
        clock: Returns "now" as an aware UTC datetime.
        max_retries: Optimistic-concurrency attempts per unit of work.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        job_queue: JobQueue,
        clock: Clock = utc_now,
        max_retries: int = 3,
    ) -> None:
        self.session_factory = session_factory
        self.job_queue = job_queue
        self.clock = clock
        self.max_retries = max_retries

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _run_with_retry(self, operation: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """Run ``operation`` in its own transaction, retrying on version conflicts."""
        for attempt in range(1, self.max_retries + 1):
            try:
                async with self.session_factory() as session, session.begin():
                    return await operation(session)
            except StaleDataError:
                logger.warning(
                    "Budget update conflict (attempt %d/%d), retrying",
                    attempt,
                    self.max_retries,
                )
        raise ConcurrencyConflictError(
            f"Budget update still conflicting after {self.max_retries} attempts"
        )

    @staticmethod
    async def _load_config(session: AsyncSession, user_id: int) -> BudgetConfig | None:
        result = await session.execute(select(BudgetConfig).where(BudgetConfig.user_id == user_id))
        return result.scalar_one_or_none()

    async def _require_config(self, session: AsyncSession, user_id: int) -> BudgetConfig:
        config = await self._load_config(session, user_id)
        if config is None:
            raise NotFoundError("BudgetConfig", user_id)
        return config

    def _evaluate_thresholds(
        self, config: BudgetConfig, budget: CategoryBudget
    ) -> list[ThresholdAlert]:
        """Flip unset flags whose threshold is reached. Caller persists."""
        if not config.notifications_enabled:
            return []

        percent = budget.percent_used
        alerts: list[ThresholdAlert] = []
        for threshold, flag in (
            (WARNING_THRESHOLD, "notified_at_80"),
            (EXCEEDED_THRESHOLD, "notified_at_100"),
        ):
            if percent >= threshold and not getattr(budget, flag):
                setattr(budget, flag, True)
                budget.last_notification_at = self.clock()  # type: ignore[assignment]
                alerts.append(
                    ThresholdAlert(
                        user_id=int(config.user_id),
                        category=str(budget.category),
                        threshold=threshold,
                        percent_used=_round_half_up(percent),
                        spent=float(budget.current_spend),
                        limit=float(budget.monthly_limit),
                    )
                )
        return alerts

    async def _enqueue_alerts(self, alerts: Sequence[ThresholdAlert]) -> None:
        for alert in alerts:
            await self.job_queue.enqueue(JobType.SEND_BUDGET_ALERT, alert.to_payload())
            logger.info(
                "Budget alert queued for %s: category=%s threshold=%d%%",
                hash_uid(alert.user_id),
                alert.category,
                alert.threshold,
            )

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    async def get_or_create_config(self, user_id: int) -> dict[str, Any]:
        """Return the user's config, creating an empty one on first access."""
        async with self.session_factory() as session, session.begin():
            config = await self._get_or_create(session, user_id)
            return config.to_dict()

    async def _get_or_create(self, session: AsyncSession, user_id: int) -> BudgetConfig:
        config = await self._load_config(session, user_id)
        if config is not None:
            return config

        config = BudgetConfig(
            user_id=user_id,
            notifications_enabled=True,
            last_reset_date=self.clock(),
            last_reconciled_month=month_key(self.clock()),
            category_budgets=[],
        )
        session.add(config)
        await session.flush()
        logger.info("Created budget config for %s", hash_uid(user_id))
        return config

    async def update_config(
        self,
        user_id: int,
        budgets: Sequence[dict[str, Any]],
        notifications_enabled: bool | None = None,
    ) -> dict[str, Any]:
        """
        Upsert category limits (case-insensitive) and the notifications flag.

        Every entry is validated before anything is written.

        Args:
            user_id: Owner.
            budgets: ``[{"category": str, "monthly_limit": number >= 0}, ...]``
            notifications_enabled: New flag value (None keeps the current one).

        Raises:
            ValidationError: On a missing category or a non-numeric/negative limit.
        """
        cleaned: list[tuple[str, float]] = []
        for entry in budgets:
            category = entry.get("category")
            limit = entry.get("monthly_limit")
            if not isinstance(category, str) or not category.strip():
                raise ValidationError("Each budget needs a category name")
            if isinstance(limit, bool) or not isinstance(limit, (int, float)) or limit < 0:
                raise ValidationError(
                    f"Budget for {category!r} needs a numeric monthly_limit >= 0"
                )
            cleaned.append((category.strip(), float(limit)))

        async def operation(session: AsyncSession) -> dict[str, Any]:
            config = await self._get_or_create(session, user_id)
            if notifications_enabled is not None:
                config.notifications_enabled = notifications_enabled  # type: ignore[assignment]

            for category, limit in cleaned:
                existing = config.find_category(category)
                if existing is not None:
                    existing.monthly_limit = limit  # type: ignore[assignment]
                    continue
                config.category_budgets.append(
                    CategoryBudget(
                        category=category,
                        category_key=category.lower(),
                        monthly_limit=limit,
                        current_spend=0.0,
                        notified_at_80=False,
                        notified_at_100=False,
                        position=len(config.category_budgets),
                    )
                )
            await session.flush()
            return config.to_dict()

        return await self._run_with_retry(operation)

    async def delete_category(self, user_id: int, category: str) -> dict[str, Any]:
        """
        Remove a category budget (case-insensitive). Unknown categories are ignored.

        Raises:
            NotFoundError: If the user has no budget config.
        """

        async def operation(session: AsyncSession) -> dict[str, Any]:
            config = await self._require_config(session, user_id)
            budget = config.find_category(category)
            if budget is not None:
                config.category_budgets.remove(budget)
                await session.flush()
            return config.to_dict()

        return await self._run_with_retry(operation)

    async def list_user_ids(self, notifications_only: bool = False) -> list[int]:
        """User ids that own a budget config."""
        stmt = select(BudgetConfig.user_id).order_by(BudgetConfig.user_id)
        if notifications_only:
            stmt = stmt.where(BudgetConfig.notifications_enabled.is_(True))
        async with self.session_factory() as session:
            return [int(uid) for uid in (await session.execute(stmt)).scalars().all()]

    # ------------------------------------------------------------------
    # Spend attribution
    # ------------------------------------------------------------------

    async def attribute_spend(
        self, user_id: int, category: str, amount: float
    ) -> AttributionResult | None:
        """
        Add spend to a category and fire newly crossed thresholds.

        Returns:
            AttributionResult, or None when there is no config or no budget
            for the category.

        Raises:
            ConcurrencyConflictError: If the update kept conflicting.
        """

        async def operation(session: AsyncSession) -> AttributionResult | None:
            config = await self._load_config(session, user_id)
            if config is None:
                return None
            budget = config.find_category(category)
            if budget is None:
                return None

            budget.current_spend = float(budget.current_spend or 0.0) + float(amount)  # type: ignore[assignment]
            alerts = self._evaluate_thresholds(config, budget)
            await session.flush()
            return AttributionResult(
                category=str(budget.category),
                current_spend=float(budget.current_spend),
                percent_used=budget.percent_used,
                alerts=alerts,
            )

        result = await self._run_with_retry(operation)
        if result is not None:
            await self._enqueue_alerts(result.alerts)
        return result

    async def check_budget_alerts(self, user_id: int) -> list[ThresholdAlert]:
        """Re-evaluate every category of a user against its stored spend."""

        async def operation(session: AsyncSession) -> list[ThresholdAlert]:
            config = await self._load_config(session, user_id)
            if config is None:
                return []
            alerts: list[ThresholdAlert] = []
            for budget in config.category_budgets:
                alerts.extend(self._evaluate_thresholds(config, budget))
            await session.flush()
            return alerts

        alerts = await self._run_with_retry(operation)
        await self._enqueue_alerts(alerts)
        return alerts

    # ------------------------------------------------------------------
    # Resets
    # ------------------------------------------------------------------

    async def reset_spending(self, user_id: int) -> dict[str, Any]:
        """
        Zero every category's spend and re-arm both thresholds.

        Raises:
            NotFoundError: If the user has no budget config.
        """

        async def operation(session: AsyncSession) -> dict[str, Any]:
            config = await self._require_config(session, user_id)
            for budget in config.category_budgets:
                budget.current_spend = 0.0  # type: ignore[assignment]
                budget.notified_at_80 = False  # type: ignore[assignment]
                budget.notified_at_100 = False  # type: ignore[assignment]
                budget.last_notification_at = None  # type: ignore[assignment]
            config.last_reset_date = self.clock()  # type: ignore[assignment]
            await session.flush()
            return config.to_dict()

        result = await self._run_with_retry(operation)
        logger.info("Spending reset for %s", hash_uid(user_id))
        return result

    async def reconcile_month(self, user_id: int) -> bool:
        """
        Month-boundary step: clear both notification flags (spend is kept).

        Runs at most once per user per calendar month.

        Returns:
            True if flags were cleared, False if this month was already
            reconciled or the user has no config.
        """
        current_month = month_key(self.clock())

        async def operation(session: AsyncSession) -> bool:
            config = await self._load_config(session, user_id)
            if config is None or config.last_reconciled_month == current_month:
                return False
            for budget in config.category_budgets:
                if budget.notified_at_80 or budget.notified_at_100:
                    budget.notified_at_80 = False  # type: ignore[assignment]
                    budget.notified_at_100 = False  # type: ignore[assignment]
            config.last_reconciled_month = current_month  # type: ignore[assignment]
            await session.flush()
            return True

        reconciled = await self._run_with_retry(operation)
        if reconciled:
            logger.info("Budget month %s reconciled for %s", current_month, hash_uid(user_id))
        return reconciled

    # ------------------------------------------------------------------
    # Analytics
    # ------------------------------------------------------------------

    async def get_analytics(self, user_id: int) -> dict[str, Any]:
        """
        Budget progress per category for the current month.

        Configured categories report their running spend; this month's
        InsightItem spend in categories without a budget is reported as one
        "Uncategorized" row with no threshold checks.

        Side effect: on a Sunday, when no weekly summary went out in the last
        7 days, a ``send_weekly_summary`` job is enqueued.
        """
        now = self.clock()
        month_start = start_of_month(now)
        summary_payload: dict[str, Any] | None = None

        async with self.session_factory() as session, session.begin():
            config = await self._get_or_create(session, user_id)

            rows: list[dict[str, Any]] = []
            for budget in config.category_budgets:
                percent = budget.percent_used
                rows.append({
                    "category": budget.category,
                    "monthly_limit": float(budget.monthly_limit),
                    "spent": float(budget.current_spend),
                    "percent_used": round(percent, 1),
                    "status": budget_status(percent),
                })

            configured = {budget.category_key for budget in config.category_budgets}
            spend_by_category = await session.execute(
                select(InsightItem.category, func.sum(InsightItem.detected_price))
                .where(
                    InsightItem.user_id == user_id,
                    InsightItem.date_detected >= month_start,
                )
                .group_by(InsightItem.category)
            )
            uncategorized = sum(
                float(total or 0.0)
                for category, total in spend_by_category.all()
                if not category or category.lower() not in configured
            )
            if uncategorized > 0:
                rows.append({
                    "category": UNCATEGORIZED,
                    "monthly_limit": 0.0,
                    "spent": round(uncategorized, 2),
                    "percent_used": 0.0,
                    "status": BudgetStatus.NORMAL,
                })

            total_spent = round(sum(row["spent"] for row in rows), 2)

            last_summary = config.last_weekly_summary
            if now.weekday() == SUNDAY and (
                last_summary is None or now - ensure_utc(last_summary) >= WEEKLY_SUMMARY_INTERVAL
            ):
                config.last_weekly_summary = now  # type: ignore[assignment]
                summary_payload = {
                    "user_id": user_id,
                    "total_spent": total_spent,
                    "budget_progress": rows,
                }

            analytics = {
                "budget_progress": rows,
                "notifications_enabled": bool(config.notifications_enabled),
                "total_spent": total_spent,
            }

        if summary_payload is not None:
            await self.job_queue.enqueue(JobType.SEND_WEEKLY_SUMMARY, summary_payload)
            logger.info("Weekly summary queued for %s", hash_uid(user_id))
        return analytics


__all__ = [
    "AttributionResult",
    "BudgetLedger",
    "BudgetStatus",
    "ThresholdAlert",
    "UNCATEGORIZED",
    "budget_status",
]
