"""
Tests for the insight writer.

Covers:
- Template text without an LLM (recurring vs one-off)
- Prompt contents and LLM text passthrough
- Fallback on chat-service errors and empty answers
- Weekly tip with and without an LLM
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from src.lib.exceptions import ExternalServiceError, RateLimitExceededError
from src.services.insight_writer import DEFAULT_WEEKLY_TIP, InsightWriter, fallback_item_insight
from src.services.llm_client import LLMClient


def _llm(answer: str = "", error: Exception | None = None) -> MagicMock:
    llm = MagicMock(spec=LLMClient)
    llm.complete = AsyncMock(return_value=answer, side_effect=error)
    return llm


class TestFallbackText:
    def test_recurring(self) -> None:
        text = fallback_item_insight("Oat Milk", 2.5, True)
        assert text.startswith("Oat Milk appears to be a recurring purchase.")

    def test_one_off(self) -> None:
        assert fallback_item_insight("Lamp", 30.0, False) == "Item: Lamp - 30.0"


class TestItemInsight:
    @pytest.mark.asyncio
    async def test_without_llm(self) -> None:
        text = await InsightWriter().item_insight("Lamp", 30.0, "shopping", False)
        assert text == "Item: Lamp - 30.0"

    @pytest.mark.asyncio
    async def test_prompt_includes_market_price(self) -> None:
        llm = _llm("Shampoo is cheaper at the supermarket.")
        writer = InsightWriter(llm)

        text = await writer.item_insight(
            "Shampoo", 24.5, "personal_care", False, market_price=19.0, currency="EUR"
        )

        assert text == "Shampoo is cheaper at the supermarket."
        messages = llm.complete.await_args.args[0]
        assert messages[0]["role"] == "system"
        user_prompt = messages[1]["content"]
        assert "Price paid: 24.50 EUR" in user_prompt
        assert "Typical market price: 19.00 EUR" in user_prompt
        assert "Recurring purchase: no" in user_prompt

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [ExternalServiceError("down"), RateLimitExceededError("llm", 3)],
    )
    async def test_errors_fall_back(self, error: Exception) -> None:
        writer = InsightWriter(_llm(error=error))
        text = await writer.item_insight("Coffee", 9.0, "groceries", True)
        assert "recurring purchase" in text

    @pytest.mark.asyncio
    async def test_empty_answer_falls_back(self) -> None:
        writer = InsightWriter(_llm(""))
        assert await writer.item_insight("Lamp", 30.0, "shopping", False) == "Item: Lamp - 30.0"


class TestWeeklyTip:
    @pytest.mark.asyncio
    async def test_without_llm(self) -> None:
        assert await InsightWriter().weekly_tip([], 0.0, []) == DEFAULT_WEEKLY_TIP

    @pytest.mark.asyncio
    async def test_prompt_lists_categories_and_recurring(self) -> None:
        llm = _llm("Cook at home twice a week.")
        tip = await InsightWriter(llm).weekly_tip(
            [{"category": "dining", "amount": 120.0, "percentage": 60.0}],
            200.0,
            [{"item_name": "Coffee", "insight": None}],
        )

        assert tip == "Cook at home twice a week."
        prompt = llm.complete.await_args.args[0][1]["content"]
        assert "- dining: 120.00 USD (60.0%)" in prompt
        assert "Total spent: 200.00 USD" in prompt
        assert "- Coffee: recurring purchase" in prompt

    @pytest.mark.asyncio
    async def test_error_gives_static_tip(self) -> None:
        writer = InsightWriter(_llm(error=ExternalServiceError("down")))
        assert await writer.weekly_tip([], 10.0, []) == DEFAULT_WEEKLY_TIP
