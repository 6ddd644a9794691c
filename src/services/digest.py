"""
Digest Aggregator for Receipt Insights.

Weekly roll-up per user over the trailing seven days:

- total spend: sum of receipt totals
- category spend: item category, else receipt category, else
  "Uncategorized"; items count price x quantity, receipts without items
  count their total
- top three categories by spend, ties kept in first-seen order
- categories whose windowed spend exceeds their configured monthly limit
- weekly recurring InsightItems that match an item bought in the window
- a tip from the LLM, or a static tip

Each digest is stored and a ``send_weekly_digest`` job is enqueued.
run_weekly() isolates failures per user.
"""

from __future__ import annotations

import logging
from datetime import datetime, time, timedelta
from typing import Any

from sqlalchemy import select, union

from src.infra.database import SessionFactory
from src.lib.clock import Clock, utc_now
from src.lib.exceptions import NotFoundError
from src.lib.security import hash_uid
from src.models.budget import BudgetConfig
from src.models.digest import WeeklyDigest
from src.models.insight_item import InsightItem, PurchaseFrequency
from src.models.receipt import DEFAULT_CURRENCY, Receipt
from src.services.insight_writer import InsightWriter
from src.services.job_queue import JobQueue, JobType

logger = logging.getLogger(__name__)

UNCATEGORIZED = "Uncategorized"
WINDOW_DAYS = 7
TOP_CATEGORY_COUNT = 3


def week_window(now: datetime) -> tuple[datetime, datetime]:
    """Start of the day seven days ago through the end of today."""
    start = datetime.combine((now - timedelta(days=WINDOW_DAYS)).date(), time.min, tzinfo=now.tzinfo)
    end = datetime.combine(now.date(), time.max, tzinfo=now.tzinfo)
    return start, end


def category_spending(receipts: list[Receipt]) -> dict[str, float]:
    """Spend per category, in first-encountered order."""
    spending: dict[str, float] = {}
    for receipt in receipts:
        receipt_category = receipt.category or UNCATEGORIZED
        items = receipt.items or []
        if not items:
            spending[receipt_category] = spending.get(receipt_category, 0.0) + float(
                receipt.total_amount or 0.0
            )
            continue
        for item in items:
            category = item.get("category") or receipt_category
            amount = float(item.get("price") or 0.0) * float(item.get("quantity") or 1)
            spending[category] = spending.get(category, 0.0) + amount
    return spending


def top_categories(spending: dict[str, float], total_spent: float) -> list[dict[str, Any]]:
    # sorted() is stable, so equal amounts keep insertion order
    ranked = sorted(spending.items(), key=lambda entry: entry[1], reverse=True)
    return [
        {
            "category": category,
            "amount": round(amount, 2),
            "percentage": round(amount / total_spent * 100, 1) if total_spent > 0 else 0.0,
        }
        for category, amount in ranked[:TOP_CATEGORY_COUNT]
    ]


def overspent_categories(
    spending: dict[str, float], config: BudgetConfig | None
) -> list[dict[str, Any]]:
    if config is None:
        return []
    by_key: dict[str, float] = {}
    for category, amount in spending.items():
        by_key[category.lower()] = by_key.get(category.lower(), 0.0) + amount

    overspent: list[dict[str, Any]] = []
    for budget in config.category_budgets:
        spent = by_key.get(str(budget.category_key), 0.0)
        limit = float(budget.monthly_limit or 0.0)
        if spent > limit:
            overspent.append({
                "category": budget.category,
                "spent": round(spent, 2),
                "limit": limit,
                "overspent_by": round(spent - limit, 2),
            })
    return overspent


def recurring_alerts(
    insight_items: list[InsightItem], receipts: list[Receipt]
) -> list[dict[str, Any]]:
    """Weekly recurring items that were bought again inside the window."""
    names_in_window = [
        str(item.get("name") or "").lower()
        for receipt in receipts
        for item in (receipt.items or [])
    ]
    alerts: list[dict[str, Any]] = []
    seen: set[str] = set()
    for insight in insight_items:
        key = str(insight.item_name).lower()
        if key in seen:
            continue
        if any(key in name for name in names_in_window):
            seen.add(key)
            alerts.append({
                "item_name": insight.item_name,
                "category": insight.category or UNCATEGORIZED,
                "price": float(insight.detected_price or 0.0),
                "frequency": insight.frequency,
                "insight": insight.insight_text,
            })
    return alerts


class DigestAggregator:
    """
    Args:
        session_factory: Async session factory.
        job_queue: Receives ``send_weekly_digest`` jobs.
        writer: Weekly tip text.
        clock: Returns "now" as an aware UTC datetime.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        job_queue: JobQueue,
        writer: InsightWriter,
        clock: Clock = utc_now,
    ) -> None:
        self.session_factory = session_factory
        self.job_queue = job_queue
        self.writer = writer
        self.clock = clock

    async def generate_for_user(self, user_id: int) -> dict[str, Any]:
        """
        Build, store and queue the weekly digest of one user.

        Returns:
            The stored digest as a dict.
        """
        week_start, week_end = week_window(self.clock())

        async with self.session_factory() as session:
            receipts = list(
                (
                    await session.execute(
                        select(Receipt)
                        .where(
                            Receipt.user_id == user_id,
                            Receipt.date >= week_start,
                            Receipt.date <= week_end,
                        )
                        .order_by(Receipt.date, Receipt.id)
                    )
                ).scalars().all()
            )
            config = (
                await session.execute(select(BudgetConfig).where(BudgetConfig.user_id == user_id))
            ).scalar_one_or_none()
            weekly_items = list(
                (
                    await session.execute(
                        select(InsightItem)
                        .where(
                            InsightItem.user_id == user_id,
                            InsightItem.is_recurring.is_(True),
                            InsightItem.frequency == PurchaseFrequency.WEEKLY.value,
                        )
                        .order_by(InsightItem.date_detected.desc(), InsightItem.id.desc())
                    )
                ).scalars().all()
            )

            total_spent = round(sum(float(r.total_amount or 0.0) for r in receipts), 2)
            spending = category_spending(receipts)
            top = top_categories(spending, total_spent)
            overspent = overspent_categories(spending, config)
            alerts = recurring_alerts(weekly_items, receipts)
            currency = str(receipts[0].currency) if receipts else DEFAULT_CURRENCY

        tip = await self.writer.weekly_tip(top, total_spent, alerts, currency=currency)

        async with self.session_factory() as session, session.begin():
            digest = WeeklyDigest(
                user_id=user_id,
                week_start=week_start,
                week_end=week_end,
                total_spent=total_spent,
                currency=currency,
                top_categories=top,
                overspent_categories=overspent,
                recurring_alerts=alerts,
                weekly_tip=tip,
                is_sent=False,
            )
            session.add(digest)
            await session.flush()
            result = digest.to_dict()

        await self.job_queue.enqueue(
            JobType.SEND_WEEKLY_DIGEST, {"user_id": user_id, "digest_id": result["id"]}
        )
        logger.info(
            "Weekly digest %d generated for %s: %d receipts, total %.2f",
            result["id"],
            hash_uid(user_id),
            len(receipts),
            total_spent,
        )
        return result

    async def list_user_ids(self) -> list[int]:
        """Users with receipts or a budget config."""
        stmt = union(select(Receipt.user_id), select(BudgetConfig.user_id))
        async with self.session_factory() as session:
            return sorted(int(uid) for uid in (await session.execute(stmt)).scalars().all())

    async def run_weekly(self) -> dict[str, int]:
        """
        Generate digests for every user.

        Returns:
            ``{"generated": n, "failed": m}``
        """
        generated = 0
        failed = 0
        for user_id in await self.list_user_ids():
            try:
                await self.generate_for_user(user_id)
                generated += 1
            except Exception as exc:  # Intentional catch-all: one user's digest must not abort the batch
                failed += 1
                logger.error("Weekly digest failed for %s: %s", hash_uid(user_id), exc)
        logger.info("Weekly digest run finished: %d generated, %d failed", generated, failed)
        return {"generated": generated, "failed": failed}

    async def list_digests(self, user_id: int, limit: int = 10) -> list[dict[str, Any]]:
        async with self.session_factory() as session:
            rows = (
                await session.execute(
                    select(WeeklyDigest)
                    .where(WeeklyDigest.user_id == user_id)
                    .order_by(WeeklyDigest.week_start.desc(), WeeklyDigest.id.desc())
                    .limit(limit)
                )
            ).scalars().all()
        return [row.to_dict() for row in rows]

    async def get_digest(self, user_id: int, digest_id: int) -> dict[str, Any]:
        async with self.session_factory() as session:
            digest = (
                await session.execute(
                    select(WeeklyDigest).where(
                        WeeklyDigest.id == digest_id, WeeklyDigest.user_id == user_id
                    )
                )
            ).scalar_one_or_none()
        if digest is None:
            raise NotFoundError("WeeklyDigest", digest_id)
        return digest.to_dict()


__all__ = [
    "DigestAggregator",
    "UNCATEGORIZED",
    "category_spending",
    "overspent_categories",
    "recurring_alerts",
    "top_categories",
    "week_window",
]
