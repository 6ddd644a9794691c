"""
Price Tracking for Receipt Insights.

Two concerns:
- compare_to_market(): look an item up in the reference price table and
  estimate how much was overpaid (pure, used per item by the insight pipeline)
- PriceTracker: append-only PriceHistory log with 30-day statistics, trends,
  category trends and best prices
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.infra.database import SessionFactory
from src.lib.clock import Clock, utc_now
from src.lib.exceptions import ValidationError
from src.models.price_history import PriceHistory, PriceTrend
from src.models.receipt import Receipt

logger = logging.getLogger(__name__)

HISTORY_WINDOW_DAYS = 30
HISTORY_LIMIT = 30
RECEIPT_FALLBACK_LIMIT = 10
TREND_THRESHOLD = 0.05

# Reference prices for common items
REFERENCE_PRICES: dict[str, float] = {
    "milk": 4.50,
    "bread": 3.50,
    "rice": 6.00,
    "pasta": 5.00,
    "cereal": 15.00,
    "coffee": 20.00,
    "tea": 12.00,
    "sugar": 4.00,
    "flour": 4.50,
    "eggs": 7.50,
    "cheese": 12.00,
    "yogurt": 4.00,
    "butter": 5.00,
    "oil": 10.00,
    "chicken": 18.00,
    "beef": 25.00,
    "fish": 22.00,
    "shampoo": 19.00,
    "soap": 3.00,
    "toothpaste": 8.50,
    "toilet paper": 12.00,
    "detergent": 13.00,
    "dish soap": 6.00,
    "netflix": 19.90,
    "amazon prime": 17.90,
    "spotify": 11.90,
}


# ============================================
# Market comparison
# ============================================

@dataclass(frozen=True)
class MarketComparison:
    market_price: float
    savings: float
    source: str


def find_reference_price(item_name: str) -> float | None:
    """Exact (case-insensitive) lookup first, then the first key contained in the name."""
    lowered = item_name.strip().lower()
    if lowered in REFERENCE_PRICES:
        return REFERENCE_PRICES[lowered]
    for key, value in REFERENCE_PRICES.items():
        if key in lowered:
            return value
    return None


def compare_to_market(item_name: str, price: float) -> MarketComparison | None:
    """
    Compare a paid price with the reference table.

    Returns:
        MarketComparison with ``savings`` = amount paid above the reference
        (0 if at or below), or None when the item is unknown.
    """
    market_price = find_reference_price(item_name)
    if market_price is None:
        return None
    savings = price - market_price if price > market_price else 0.0
    return MarketComparison(market_price=market_price, savings=round(savings, 2), source="reference")


# ============================================
# Statistics
# ============================================

@dataclass(frozen=True)
class PriceStats:
    average_price: float
    min_price: float
    max_price: float
    price_range: float
    number_of_entries: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def calculate_price_stats(prices: Sequence[float]) -> PriceStats | None:
    if not prices:
        return None
    average = sum(prices) / len(prices)
    low = min(prices)
    high = max(prices)
    return PriceStats(
        average_price=average,
        min_price=low,
        max_price=high,
        price_range=high - low,
        number_of_entries=len(prices),
    )


def calculate_price_trend(current_price: float, stats: PriceStats | None) -> PriceTrend:
    """Classify the current price against the average (+/-5% band is stable)."""
    if stats is None or stats.average_price == 0:
        return PriceTrend.STABLE
    change = (current_price - stats.average_price) / stats.average_price
    if change > TREND_THRESHOLD:
        return PriceTrend.UP
    if change < -TREND_THRESHOLD:
        return PriceTrend.DOWN
    return PriceTrend.STABLE


def calculate_change_percentage(current_price: float, stats: PriceStats | None) -> float:
    if stats is None or stats.average_price == 0:
        return 0.0
    return round((current_price - stats.average_price) / stats.average_price * 100, 2)


# ============================================
# Price history service
# ============================================

@dataclass
class PriceRecordResult:
    entry: dict[str, Any]
    stats: PriceStats | None
    is_good_deal: bool


class PriceTracker:
    """
    Append-only price history per user.

    Args:
        session_factory: Async session factory.
        clock: Returns "now" as an aware UTC datetime.
    """

    def __init__(self, session_factory: SessionFactory, clock: Clock = utc_now) -> None:
        self.session_factory = session_factory
        self.clock = clock

    async def record_price(
        self,
        user_id: int,
        item_name: str,
        price: float,
        merchant: str,
        category: str,
        currency: str = "USD",
    ) -> PriceRecordResult:
        """
        Append a price observation and classify it against the last 30 days.

        Raises:
            ValidationError: If a required field is missing or price <= 0.
        """
        if not item_name or not merchant or not category:
            raise ValidationError("item_name, merchant and category are required")
        if price is None or price <= 0:
            raise ValidationError("price must be a positive number")

        now = self.clock()
        cutoff = now - timedelta(days=HISTORY_WINDOW_DAYS)

        async with self.session_factory() as session, session.begin():
            result = await session.execute(
                select(PriceHistory.price).where(
                    PriceHistory.user_id == user_id,
                    func.lower(PriceHistory.item_name).contains(item_name.lower(), autoescape=True),
                    PriceHistory.date >= cutoff,
                )
            )
            stats = calculate_price_stats([float(p) for p in result.scalars().all()])

            entry = PriceHistory(
                user_id=user_id,
                item_name=item_name,
                price=price,
                merchant=merchant,
                category=category,
                currency=currency,
                price_trend=calculate_price_trend(price, stats).value,
                price_change_percentage=calculate_change_percentage(price, stats),
                date=now,
            )
            session.add(entry)
            await session.flush()
            entry_dict = entry.to_dict()

        is_good_deal = stats is None or price <= stats.average_price
        return PriceRecordResult(entry=entry_dict, stats=stats, is_good_deal=is_good_deal)

    async def get_price_history(
        self, user_id: int, item_name: str, merchant: str | None = None
    ) -> dict[str, Any]:
        """
        Latest price entries for an item (up to 30), newest first.

        Falls back to the items of the user's receipts when no history exists.
        """
        if not item_name:
            raise ValidationError("item_name is required")

        async with self.session_factory() as session:
            stmt = select(PriceHistory).where(
                PriceHistory.user_id == user_id,
                func.lower(PriceHistory.item_name).contains(item_name.lower(), autoescape=True),
            )
            if merchant:
                stmt = stmt.where(
                    func.lower(PriceHistory.merchant).contains(merchant.lower(), autoescape=True)
                )
            stmt = stmt.order_by(PriceHistory.date.desc()).limit(HISTORY_LIMIT)
            entries = list((await session.execute(stmt)).scalars().all())

            if entries:
                prices = [entry.to_dict() for entry in entries]
            else:
                prices = await self._prices_from_receipts(session, user_id, item_name)

        stats = calculate_price_stats([float(p["price"]) for p in prices])
        return {"prices": prices, "stats": stats.to_dict() if stats else None}

    async def _prices_from_receipts(
        self, session: AsyncSession, user_id: int, item_name: str
    ) -> list[dict[str, Any]]:
        needle = item_name.lower()
        receipts = (
            await session.execute(
                select(Receipt)
                .where(Receipt.user_id == user_id)
                .order_by(Receipt.date.desc(), Receipt.id.desc())
            )
        ).scalars().all()

        prices: list[dict[str, Any]] = []
        matched_receipts = 0
        for receipt in receipts:
            matching = [
                item for item in (receipt.items or [])
                if needle in str(item.get("name", "")).lower()
            ]
            if not matching:
                continue
            matched_receipts += 1
            for item in matching:
                prices.append({
                    "item_name": item.get("name"),
                    "price": float(item.get("price") or 0),
                    "merchant": receipt.merchant,
                    "category": item.get("category") or receipt.category,
                    "currency": receipt.currency,
                    "date": receipt.date.isoformat() if receipt.date else None,
                })
            if matched_receipts >= RECEIPT_FALLBACK_LIMIT:
                break
        return prices

    async def get_category_trends(self, user_id: int, category: str) -> dict[str, Any]:
        """Price entries of the last 30 days for a category, with statistics."""
        if not category:
            raise ValidationError("category is required")
        cutoff = self.clock() - timedelta(days=HISTORY_WINDOW_DAYS)

        async with self.session_factory() as session:
            entries = (
                await session.execute(
                    select(PriceHistory)
                    .where(
                        PriceHistory.user_id == user_id,
                        func.lower(PriceHistory.category).contains(category.lower(), autoescape=True),
                        PriceHistory.date >= cutoff,
                    )
                    .order_by(PriceHistory.date.desc())
                )
            ).scalars().all()

        stats = calculate_price_stats([float(e.price) for e in entries])
        return {
            "data": [entry.to_dict() for entry in entries],
            "stats": stats.to_dict() if stats else None,
        }

    async def get_best_prices(self, user_id: int, category: str) -> list[dict[str, Any]]:
        """Lowest price per item in a category over the last 30 days, cheapest first."""
        if not category:
            raise ValidationError("category is required")
        cutoff = self.clock() - timedelta(days=HISTORY_WINDOW_DAYS)

        async with self.session_factory() as session:
            entries = (
                await session.execute(
                    select(PriceHistory)
                    .where(
                        PriceHistory.user_id == user_id,
                        func.lower(PriceHistory.category).contains(category.lower(), autoescape=True),
                        PriceHistory.date >= cutoff,
                    )
                    .order_by(PriceHistory.date.desc())
                )
            ).scalars().all()

        best: dict[str, dict[str, Any]] = {}
        for entry in entries:
            current = best.get(entry.item_name)
            if current is None:
                # Newest entry supplies merchant and date for the group
                best[entry.item_name] = {
                    "item_name": entry.item_name,
                    "min_price": float(entry.price),
                    "merchant": entry.merchant,
                    "date": entry.date.isoformat() if entry.date else None,
                }
            elif entry.price < current["min_price"]:
                current["min_price"] = float(entry.price)

        return sorted(best.values(), key=lambda row: row["min_price"])


__all__ = [
    "MarketComparison",
    "PriceRecordResult",
    "PriceStats",
    "PriceTracker",
    "REFERENCE_PRICES",
    "calculate_change_percentage",
    "calculate_price_stats",
    "calculate_price_trend",
    "compare_to_market",
    "find_reference_price",
]
