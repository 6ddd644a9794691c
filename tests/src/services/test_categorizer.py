"""
Tests for the item categorizer.

Covers:
- Keyword fallback order and "other"
- LLM answer accepted only inside the taxonomy
- Any external failure falls back to keywords
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from src.lib.exceptions import MalformedResponseError, RateLimitExceededError
from src.services.categorizer import ItemCategorizer, SpendingCategory, categorize_by_keywords
from src.services.llm_client import LLMClient


def _llm(answer: object = None, error: Exception | None = None) -> MagicMock:
    llm = MagicMock(spec=LLMClient)
    llm.complete_json = AsyncMock(return_value=answer, side_effect=error)
    return llm


class TestKeywordFallback:
    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            ("Whole Milk 1L", "groceries"),
            ("Pepperoni Pizza", "dining"),
            ("Uber trip", "transportation"),
            ("NETFLIX monthly", "entertainment"),
            ("Vitamin D", "healthcare"),
            ("Hotel night", "travel"),
            ("Shampoo", "personal_care"),
            ("Birthday gift card", "gifts"),
            ("Widget", "other"),
        ],
    )
    def test_keywords(self, name: str, expected: str) -> None:
        assert categorize_by_keywords(name) == expected

    def test_first_keyword_wins(self) -> None:
        # "milk" is listed before "coffee"
        assert categorize_by_keywords("milk coffee") == SpendingCategory.GROCERIES.value


class TestItemCategorizer:
    @pytest.mark.asyncio
    async def test_without_llm_uses_keywords(self) -> None:
        assert await ItemCategorizer().categorize("bread roll") == "groceries"

    @pytest.mark.asyncio
    async def test_llm_answer_is_normalized(self) -> None:
        categorizer = ItemCategorizer(_llm({"category": " Dining "}))
        assert await categorizer.categorize("Ramen bowl") == "dining"

    @pytest.mark.asyncio
    async def test_out_of_set_answer_falls_back(self) -> None:
        categorizer = ItemCategorizer(_llm({"category": "snacks"}))
        assert await categorizer.categorize("cheese crackers") == "groceries"

    @pytest.mark.asyncio
    async def test_rate_limit_falls_back(self) -> None:
        categorizer = ItemCategorizer(_llm(error=RateLimitExceededError("llm", 5)))
        assert await categorizer.categorize("Uber ride") == "transportation"

    @pytest.mark.asyncio
    async def test_malformed_answer_falls_back(self) -> None:
        categorizer = ItemCategorizer(_llm(error=MalformedResponseError("bad json")))
        assert await categorizer.categorize("mystery") == "other"
