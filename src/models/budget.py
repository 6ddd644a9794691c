"""
Budget Models for Receipt Insights.

BudgetConfig is one row per user; CategoryBudget holds the monthly counters
for each configured category. Counter updates are guarded by the ``version``
column (SQLAlchemy ``version_id_col``), so a concurrent writer gets a
StaleDataError instead of silently overwriting a spend increment.
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from src.models.base import Base


class BudgetConfig(Base):
    """
    Per-user budget configuration.

    Attributes:
        user_id: Owner (unique)
        notifications_enabled: Gate for threshold flags and alert jobs
        last_reset_date: When spending was last reset
        last_weekly_summary: When the last weekly summary job was enqueued
        last_reconciled_month: ``YYYY-MM`` of the last month rollover
        category_budgets: Ordered category rows
    """

    __tablename__ = "budget_configs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, unique=True, nullable=False, index=True)
    notifications_enabled = Column(Boolean, nullable=False, default=True)
    last_reset_date = Column(DateTime(timezone=True), nullable=True)
    last_weekly_summary = Column(DateTime(timezone=True), nullable=True)
    last_reconciled_month = Column(String(7), nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
        nullable=False,
    )

    category_budgets = relationship(
        "CategoryBudget",
        back_populates="config",
        cascade="all, delete-orphan",
        order_by="CategoryBudget.position",
        lazy="selectin",
    )

    def find_category(self, category: str) -> "CategoryBudget | None":
        """Case-insensitive lookup of a configured category."""
        key = category.strip().lower()
        for budget in self.category_budgets:
            if budget.category_key == key:
                return budget
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "notifications_enabled": self.notifications_enabled,
            "last_reset_date": self.last_reset_date.isoformat() if self.last_reset_date else None,
            "last_weekly_summary": (
                self.last_weekly_summary.isoformat() if self.last_weekly_summary else None
            ),
            "last_reconciled_month": self.last_reconciled_month,
            "category_budgets": [budget.to_dict() for budget in self.category_budgets],
        }


class CategoryBudget(Base):
    """
    Monthly limit and running spend for one category.

    The 80%/100% notification flags only move false -> true until the next
    reset or month reconciliation.
    """

    __tablename__ = "category_budgets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    config_id = Column(
        Integer,
        ForeignKey("budget_configs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    category = Column(String(50), nullable=False)
    category_key = Column(String(50), nullable=False)
    monthly_limit = Column(Float, nullable=False, default=0.0)
    current_spend = Column(Float, nullable=False, default=0.0)
    notified_at_80 = Column(Boolean, nullable=False, default=False)
    notified_at_100 = Column(Boolean, nullable=False, default=False)
    last_notification_at = Column(DateTime(timezone=True), nullable=True)
    position = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False)

    config = relationship("BudgetConfig", back_populates="category_budgets")

    __table_args__ = (
        UniqueConstraint("config_id", "category_key", name="uq_category_budget_key"),
    )
    __mapper_args__ = {"version_id_col": version}

    @property
    def percent_used(self) -> float:
        """Spend as a percentage of the limit; 0 when no limit is set."""
        if not self.monthly_limit or self.monthly_limit <= 0:
            return 0.0
        return (self.current_spend or 0.0) / self.monthly_limit * 100

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "monthly_limit": self.monthly_limit,
            "current_spend": self.current_spend,
            "notified_at_80": self.notified_at_80,
            "notified_at_100": self.notified_at_100,
            "last_notification_at": (
                self.last_notification_at.isoformat() if self.last_notification_at else None
            ),
        }

    def __repr__(self) -> str:
        return (
            f"<CategoryBudget(category={self.category!r}, "
            f"spend={self.current_spend}/{self.monthly_limit})>"
        )
