"""
Tests for the SQLAlchemy models.

Covers:
- Column defaults of Receipt and InsightItem
- to_dict() shapes
- BudgetConfig.find_category() is case-insensitive
- CategoryBudget.percent_used and the version counter
- WeeklyDigest JSON columns round-trip
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from sqlalchemy import select

from src.models import (
    BudgetConfig,
    CategoryBudget,
    InsightItem,
    InsightProcessingStatus,
    InsightType,
    Receipt,
    WeeklyDigest,
)


# =============================================================================
# Receipt / InsightItem
# =============================================================================


@pytest.mark.asyncio
async def test_receipt_defaults(session_factory) -> None:
    async with session_factory() as session, session.begin():
        receipt = Receipt(user_id=1, merchant="Corner Shop", items=[{"name": "Milk", "price": 1.5, "quantity": 1}])
        session.add(receipt)
        await session.flush()
        data = receipt.to_dict()

    assert data["currency"] == "USD"
    assert data["insight_processing_status"] == InsightProcessingStatus.PENDING.value
    assert data["has_processed_insights"] is False
    assert data["is_manual_entry"] is False
    assert data["items"][0]["name"] == "Milk"
    assert data["uploaded_at"] is not None


@pytest.mark.asyncio
async def test_insight_item_defaults(session_factory) -> None:
    async with session_factory() as session, session.begin():
        item = InsightItem(user_id=1, receipt_id=1, item_name="Milk")
        session.add(item)
        await session.flush()
        data = item.to_dict()

    assert data["insight_type"] == InsightType.GENERAL.value
    assert data["is_recurring"] is False
    assert data["detected_price"] == 0.0
    assert data["date_detected"] is not None


# =============================================================================
# Budget
# =============================================================================


class TestCategoryBudget:
    def test_percent_used(self) -> None:
        budget = CategoryBudget(category="Dining", monthly_limit=500.0, current_spend=405.0)
        assert budget.percent_used == pytest.approx(81.0)

    def test_percent_used_without_limit(self) -> None:
        assert CategoryBudget(category="Misc", monthly_limit=0.0, current_spend=10.0).percent_used == 0.0

    def test_find_category_is_case_insensitive(self) -> None:
        config = BudgetConfig(user_id=1)
        dining = CategoryBudget(category="Dining", category_key="dining", monthly_limit=100.0)
        config.category_budgets.append(dining)
        assert config.find_category(" DINING ") is dining
        assert config.find_category("Travel") is None


@pytest.mark.asyncio
async def test_category_budget_version_increments(session_factory) -> None:
    async with session_factory() as session, session.begin():
        config = BudgetConfig(user_id=5, category_budgets=[])
        config.category_budgets.append(
            CategoryBudget(category="Groceries", category_key="groceries", monthly_limit=300.0, current_spend=0.0)
        )
        session.add(config)

    async with session_factory() as session, session.begin():
        budget = (await session.execute(select(CategoryBudget))).scalar_one()
        first_version = budget.version
        budget.current_spend = 25.0
        await session.flush()
        assert budget.version == first_version + 1


# =============================================================================
# WeeklyDigest
# =============================================================================


@pytest.mark.asyncio
async def test_digest_json_round_trip(session_factory) -> None:
    top = [{"category": "groceries", "amount": 42.0, "percentage": 100.0}]
    async with session_factory() as session, session.begin():
        session.add(
            WeeklyDigest(
                user_id=3,
                week_start=datetime(2026, 3, 11, tzinfo=UTC),
                week_end=datetime(2026, 3, 18, 23, 59, tzinfo=UTC),
                total_spent=42.0,
                top_categories=top,
                overspent_categories=[],
                recurring_alerts=[],
            )
        )

    async with session_factory() as session:
        digest = (await session.execute(select(WeeklyDigest))).scalar_one()
        data = digest.to_dict()

    assert data["top_categories"] == top
    assert data["is_sent"] is False
    assert data["sent_at"] is None
    assert data["week_start"].startswith("2026-03-11")
