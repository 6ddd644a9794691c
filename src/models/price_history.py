"""
PriceHistory Model for Receipt Insights (append-only).
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import Column, DateTime, Float, Index, Integer, String

from src.models.base import Base


class PriceTrend(StrEnum):
    UP = "up"
    DOWN = "down"
    STABLE = "stable"


class PriceHistory(Base):
    __tablename__ = "price_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    item_name = Column(String(255), nullable=False)
    price = Column(Float, nullable=False)
    merchant = Column(String(255), nullable=True)
    category = Column(String(50), nullable=True)
    currency = Column(String(3), nullable=False, default="USD")
    price_trend = Column(String(10), nullable=False, default=PriceTrend.STABLE.value)
    price_change_percentage = Column(Float, nullable=False, default=0.0)
    date = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )

    __table_args__ = (
        Index("idx_price_user_item_date", "user_id", "item_name", "date"),
        Index("idx_price_user_category", "user_id", "category"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_name": self.item_name,
            "price": self.price,
            "merchant": self.merchant,
            "category": self.category,
            "currency": self.currency,
            "price_trend": self.price_trend,
            "price_change_percentage": self.price_change_percentage,
            "date": self.date.isoformat() if self.date else None,
        }
