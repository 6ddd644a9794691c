"""
Recurrence Detector for Receipt Insights.

Two detectors share one matching rule: names match when either one,
lower-cased, contains the other. No fuzzy or semantic matching.

- is_recurring(): per-item check used by the insight pipeline. An item is
  recurring when >= 2 InsightItems of the same user from the trailing 30
  days match its name.
- detect_recurring_purchases(): daily batch over a user's receipts from the
  last 30 days. Items are grouped by normalized name; every group with >= 2
  purchases is recurring and, the first time it is seen, gets a recurring
  InsightItem with a frequency-based suggestion.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.infra.database import SessionFactory
from src.lib.clock import Clock, ensure_utc, utc_now
from src.lib.security import hash_uid
from src.models.insight_item import InsightItem, InsightType, PurchaseFrequency
from src.models.receipt import Receipt
from src.services.categorizer import categorize_by_keywords

logger = logging.getLogger(__name__)

WINDOW_DAYS = 30
MIN_MATCHES = 2
MIN_RECEIPTS = 2
BULK_FREQUENCY = 4


def names_match(a: str, b: str) -> bool:
    """Case-insensitive substring containment in either direction."""
    a_norm = a.strip().lower()
    b_norm = b.strip().lower()
    if not a_norm or not b_norm:
        return False
    return a_norm in b_norm or b_norm in a_norm


def monthly_frequency(occurrences: int, span_days: float) -> float:
    """Purchases per 30 days; spans shorter than a day count as one day."""
    return occurrences / (max(span_days, 1.0) / 30)


def frequency_suggestion(frequency: float) -> str:
    if frequency >= BULK_FREQUENCY:
        return (
            f"You buy this {round(frequency)} times per month. "
            "Consider a bulk purchase or subscription for savings."
        )
    return "This is a recurring expense. Check if there are better deals or alternatives."


@dataclass
class _Purchase:
    name: str
    price: float
    category: str | None
    receipt_id: int
    date: datetime


@dataclass
class RecurringPurchase:
    """A recurring group found by the batch detector."""

    group_key: str
    item_name: str
    occurrences: int
    frequency: float
    suggestion: str
    is_new: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "group_key": self.group_key,
            "item_name": self.item_name,
            "occurrences": self.occurrences,
            "frequency": round(self.frequency, 2),
            "suggestion": self.suggestion,
            "is_new": self.is_new,
        }


class RecurrenceDetector:
    """
    Args:
        session_factory: Async session factory.
        clock: Returns "now" as an aware UTC datetime.
    """

    def __init__(self, session_factory: SessionFactory, clock: Clock = utc_now) -> None:
        self.session_factory = session_factory
        self.clock = clock

    # ------------------------------------------------------------------
    # Per-item check
    # ------------------------------------------------------------------

    async def is_recurring(
        self, user_id: int, item_name: str, session: AsyncSession | None = None
    ) -> bool:
        """
        True if >= 2 InsightItems from the last 30 days match ``item_name``.

        Args:
            user_id: Owner.
            item_name: Name to look up.
            session: Reuse an open session instead of opening one.
        """
        if session is None:
            async with self.session_factory() as own_session:
                return await self._is_recurring(own_session, user_id, item_name)
        return await self._is_recurring(session, user_id, item_name)

    async def _is_recurring(self, session: AsyncSession, user_id: int, item_name: str) -> bool:
        cutoff = self.clock() - timedelta(days=WINDOW_DAYS)
        names = (
            await session.execute(
                select(InsightItem.item_name).where(
                    InsightItem.user_id == user_id,
                    InsightItem.date_detected >= cutoff,
                )
            )
        ).scalars().all()

        matches = 0
        for name in names:
            if names_match(name, item_name):
                matches += 1
                if matches >= MIN_MATCHES:
                    return True
        return False

    # ------------------------------------------------------------------
    # Batch detector
    # ------------------------------------------------------------------

    async def detect_recurring_purchases(self, user_id: int) -> list[RecurringPurchase]:
        """
        Group the last 30 days of purchases and record new recurring groups.

        Returns:
            Every recurring group found (``is_new`` marks the ones recorded now).
        """
        cutoff = self.clock() - timedelta(days=WINDOW_DAYS)
        found: list[RecurringPurchase] = []

        async with self.session_factory() as session, session.begin():
            receipts = (
                await session.execute(
                    select(Receipt)
                    .where(Receipt.user_id == user_id, Receipt.date >= cutoff)
                    .order_by(Receipt.id)
                )
            ).scalars().all()

            if len(receipts) < MIN_RECEIPTS:
                logger.debug(
                    "Recurring detection skipped for %s: %d receipts in window",
                    hash_uid(user_id),
                    len(receipts),
                )
                return found

            groups = self._group_purchases(receipts)
            receipts_by_id = {receipt.id: receipt for receipt in receipts}

            for group_key, purchases in groups.items():
                if len(purchases) < MIN_MATCHES:
                    continue

                purchases.sort(key=lambda p: p.date)
                latest = purchases[-1]
                span_days = (latest.date - purchases[0].date).total_seconds() / 86400
                frequency = monthly_frequency(len(purchases), span_days)
                suggestion = frequency_suggestion(frequency)

                existing = (
                    await session.execute(
                        select(InsightItem.id)
                        .where(
                            InsightItem.user_id == user_id,
                            InsightItem.is_recurring.is_(True),
                            func.lower(InsightItem.item_name).contains(group_key, autoescape=True),
                        )
                        .limit(1)
                    )
                ).scalar_one_or_none()

                is_new = existing is None
                if is_new:
                    session.add(
                        InsightItem(
                            user_id=user_id,
                            receipt_id=latest.receipt_id,
                            item_name=latest.name,
                            category=latest.category or categorize_by_keywords(latest.name),
                            detected_price=latest.price,
                            date_detected=self.clock(),
                            insight_text=suggestion,
                            insight_type=InsightType.RECURRING.value,
                            is_recurring=True,
                            frequency=(
                                PurchaseFrequency.WEEKLY.value
                                if frequency >= BULK_FREQUENCY
                                else PurchaseFrequency.MONTHLY.value
                            ),
                            processing_status="completed",
                        )
                    )
                    _flag_item_recurring(receipts_by_id[latest.receipt_id], latest.name)

                found.append(
                    RecurringPurchase(
                        group_key=group_key,
                        item_name=latest.name,
                        occurrences=len(purchases),
                        frequency=frequency,
                        suggestion=suggestion,
                        is_new=is_new,
                    )
                )

        new_count = sum(1 for group in found if group.is_new)
        logger.info(
            "Recurring detection for %s: %d groups, %d new",
            hash_uid(user_id),
            len(found),
            new_count,
        )
        return found

    @staticmethod
    def _group_purchases(receipts: list[Receipt]) -> dict[str, list[_Purchase]]:
        groups: dict[str, list[_Purchase]] = {}
        for receipt in receipts:
            for item in receipt.items or []:
                name = str(item.get("name") or "")
                normalized = name.strip().lower()
                if not normalized:
                    continue
                purchase = _Purchase(
                    name=name,
                    price=float(item.get("price") or 0),
                    category=item.get("category"),
                    receipt_id=receipt.id,
                    date=ensure_utc(receipt.date),
                )
                # Join the first existing group whose key contains, or is contained by, the name
                for key, members in groups.items():
                    if key in normalized or normalized in key:
                        members.append(purchase)
                        break
                else:
                    groups[normalized] = [purchase]
        return groups


def _flag_item_recurring(receipt: Receipt, item_name: str) -> None:
    items = [dict(item) for item in (receipt.items or [])]
    for item in items:
        if item.get("name") == item_name:
            item["is_recurring"] = True
            break
    receipt.items = items  # type: ignore[assignment]


__all__ = [
    "RecurrenceDetector",
    "RecurringPurchase",
    "frequency_suggestion",
    "monthly_frequency",
    "names_match",
]
