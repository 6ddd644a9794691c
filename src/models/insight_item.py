"""
InsightItem Model for Receipt Insights.

One row per annotated purchase. Written by the insight pipeline and the
recurring-purchase batch job; read by recurrence checks and the digest.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import Boolean, Column, DateTime, Float, Index, Integer, String, Text

from src.models.base import Base


class InsightType(StrEnum):
    PRICE_COMPARISON = "price_comparison"
    RECURRING = "recurring"
    BUDGET_ALERT = "budget_alert"
    CATEGORY_SUGGESTION = "category_suggestion"
    GENERAL = "general"


class PurchaseFrequency(StrEnum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class InsightItem(Base):
    """
    Derived annotation for a single purchased item.

    Attributes:
        user_id: Owner
        receipt_id: Receipt the item came from
        item_name: Item name as extracted
        category: Assigned spending category
        detected_price: Price on the receipt
        matched_market_price: Reference price, if known
        savings: Amount paid above the market price (0 if none)
        insight_text: Generated advice
        frequency: weekly | monthly | None
    """

    __tablename__ = "insight_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    receipt_id = Column(Integer, nullable=False, index=True)

    item_name = Column(String(255), nullable=False)
    category = Column(String(50), nullable=True)
    detected_price = Column(Float, nullable=False, default=0.0)
    matched_market_price = Column(Float, nullable=True)
    savings = Column(Float, nullable=True)
    date_detected = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )

    insight_text = Column(Text, nullable=True)
    insight_type = Column(String(30), nullable=False, default=InsightType.GENERAL.value)
    is_recurring = Column(Boolean, nullable=False, default=False)
    frequency = Column(String(10), nullable=True)

    processing_status = Column(String(20), nullable=False, default="completed")
    processing_attempts = Column(Integer, nullable=False, default=1)
    is_included_in_digest = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("idx_insight_user_date", "user_id", "date_detected"),
        Index("idx_insight_user_recurring", "user_id", "is_recurring"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "receipt_id": self.receipt_id,
            "item_name": self.item_name,
            "category": self.category,
            "detected_price": self.detected_price,
            "matched_market_price": self.matched_market_price,
            "savings": self.savings,
            "date_detected": self.date_detected.isoformat() if self.date_detected else None,
            "insight_text": self.insight_text,
            "insight_type": self.insight_type,
            "is_recurring": self.is_recurring,
            "frequency": self.frequency,
            "processing_status": self.processing_status,
            "processing_attempts": self.processing_attempts,
            "is_included_in_digest": self.is_included_in_digest,
        }

    def __repr__(self) -> str:
        return f"<InsightItem(id={self.id}, item={self.item_name!r}, category={self.category})>"
