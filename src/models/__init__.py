"""
Models package for Receipt Insights.

This package exports all SQLAlchemy models.

Usage:
    from src.models import Receipt, InsightItem, BudgetConfig, CategoryBudget
    from src.models import WeeklyDigest, PriceHistory
"""

from src.models.base import Base
from src.models.budget import BudgetConfig, CategoryBudget
from src.models.digest import WeeklyDigest
from src.models.insight_item import InsightItem, InsightType, PurchaseFrequency
from src.models.price_history import PriceHistory, PriceTrend
from src.models.receipt import DEFAULT_CURRENCY, InsightProcessingStatus, Receipt

__all__ = [
    # Base
    "Base",
    # Tables
    "Receipt",
    "InsightItem",
    "BudgetConfig",
    "CategoryBudget",
    "WeeklyDigest",
    "PriceHistory",
    # Enums
    "InsightProcessingStatus",
    "InsightType",
    "PurchaseFrequency",
    "PriceTrend",
    "DEFAULT_CURRENCY",
]
