"""
WeeklyDigest Model for Receipt Insights.

Digests are written once by the aggregator; afterwards only ``is_sent`` and
``sent_at`` change.
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Index, Integer, String, Text

from src.models.base import Base


class WeeklyDigest(Base):
    """
    Weekly spending roll-up for one user.

    Attributes:
        top_categories: Up to three ``{"category", "amount", "percentage"}``
        overspent_categories: ``{"category", "spent", "limit", "overspent_by"}``
        recurring_alerts: ``{"item_name", "category", "price", "frequency", "insight"}``
    """

    __tablename__ = "weekly_digests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    week_start = Column(DateTime(timezone=True), nullable=False)
    week_end = Column(DateTime(timezone=True), nullable=False)
    total_spent = Column(Float, nullable=False, default=0.0)
    currency = Column(String(3), nullable=False, default="USD")
    top_categories = Column(JSON, nullable=False, default=list)
    overspent_categories = Column(JSON, nullable=False, default=list)
    recurring_alerts = Column(JSON, nullable=False, default=list)
    weekly_tip = Column(Text, nullable=True)
    is_sent = Column(Boolean, nullable=False, default=False)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )

    __table_args__ = (Index("idx_digest_user_week", "user_id", "week_start"),)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "week_start": self.week_start.isoformat(),
            "week_end": self.week_end.isoformat(),
            "total_spent": self.total_spent,
            "currency": self.currency,
            "top_categories": list(self.top_categories or []),
            "overspent_categories": list(self.overspent_categories or []),
            "recurring_alerts": list(self.recurring_alerts or []),
            "weekly_tip": self.weekly_tip,
            "is_sent": self.is_sent,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
        }
