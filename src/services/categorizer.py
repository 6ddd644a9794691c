"""
Item Categorizer for Receipt Insights.

Maps a free-text item name to one category of a closed taxonomy.

Primary path: LLM JSON classification.
Fallback: ordered keyword table, case-insensitive substring match, used on
any LLM failure (local rate limit, timeout, HTTP error, malformed JSON, or
an answer outside the taxonomy). No keyword match -> "other".
"""

from __future__ import annotations

import logging
from enum import StrEnum

from src.lib.exceptions import ExternalServiceError
from src.services.llm_client import LLMClient

logger = logging.getLogger(__name__)


class SpendingCategory(StrEnum):
    GROCERIES = "groceries"
    DINING = "dining"
    UTILITIES = "utilities"
    TRANSPORTATION = "transportation"
    ENTERTAINMENT = "entertainment"
    SHOPPING = "shopping"
    HEALTHCARE = "healthcare"
    EDUCATION = "education"
    TRAVEL = "travel"
    HOUSING = "housing"
    PERSONAL_CARE = "personal_care"
    GIFTS = "gifts"
    OTHER = "other"


VALID_CATEGORIES: frozenset[str] = frozenset(c.value for c in SpendingCategory)

# Checked top to bottom; the first keyword contained in the item name wins
FALLBACK_KEYWORDS: tuple[tuple[str, SpendingCategory], ...] = (
    ("milk", SpendingCategory.GROCERIES),
    ("bread", SpendingCategory.GROCERIES),
    ("pizza", SpendingCategory.DINING),
    ("restaurant", SpendingCategory.DINING),
    ("uber", SpendingCategory.TRANSPORTATION),
    ("lyft", SpendingCategory.TRANSPORTATION),
    ("phone", SpendingCategory.UTILITIES),
    ("netflix", SpendingCategory.ENTERTAINMENT),
    ("movie", SpendingCategory.ENTERTAINMENT),
    ("amazon", SpendingCategory.SHOPPING),
    ("medicine", SpendingCategory.HEALTHCARE),
    ("doctor", SpendingCategory.HEALTHCARE),
    ("eggs", SpendingCategory.GROCERIES),
    ("cheese", SpendingCategory.GROCERIES),
    ("banana", SpendingCategory.GROCERIES),
    ("coffee", SpendingCategory.DINING),
    ("burger", SpendingCategory.DINING),
    ("taxi", SpendingCategory.TRANSPORTATION),
    ("fuel", SpendingCategory.TRANSPORTATION),
    ("parking", SpendingCategory.TRANSPORTATION),
    ("electricity", SpendingCategory.UTILITIES),
    ("internet", SpendingCategory.UTILITIES),
    ("spotify", SpendingCategory.ENTERTAINMENT),
    ("cinema", SpendingCategory.ENTERTAINMENT),
    ("pharmacy", SpendingCategory.HEALTHCARE),
    ("vitamin", SpendingCategory.HEALTHCARE),
    ("tuition", SpendingCategory.EDUCATION),
    ("textbook", SpendingCategory.EDUCATION),
    ("hotel", SpendingCategory.TRAVEL),
    ("flight", SpendingCategory.TRAVEL),
    ("rent", SpendingCategory.HOUSING),
    ("shampoo", SpendingCategory.PERSONAL_CARE),
    ("haircut", SpendingCategory.PERSONAL_CARE),
    ("gift", SpendingCategory.GIFTS),
    ("flowers", SpendingCategory.GIFTS),
)

_SYSTEM_PROMPT = (
    "You classify purchased receipt items into spending categories. "
    "Allowed categories: " + ", ".join(c.value for c in SpendingCategory) + ". "
    'Answer with JSON only: {"category": "<one allowed category>"}.'
)


def categorize_by_keywords(item_name: str) -> str:
    """Local fallback: first keyword contained in the name, else "other"."""
    lowered = item_name.lower()
    for keyword, category in FALLBACK_KEYWORDS:
        if keyword in lowered:
            return category.value
    return SpendingCategory.OTHER.value


class ItemCategorizer:
    """
    LLM-backed categorizer with a keyword fallback.

    Args:
        llm: Chat client; None means keyword-only classification.
    """

    def __init__(self, llm: LLMClient | None = None) -> None:
        self.llm = llm

    async def categorize(self, item_name: str) -> str:
        """
        Classify an item name.

        Args:
            item_name: Free-text item name from the receipt.

        Returns:
            Lower-case category from the closed taxonomy (never raises for
            external failures).
        """
        if self.llm is None:
            return categorize_by_keywords(item_name)

        try:
            answer = await self.llm.complete_json(
                [
                    {"role": "system", "content": _SYSTEM_PROMPT},
                    {"role": "user", "content": f"Item: {item_name}"},
                ],
                max_tokens=20,
                temperature=0.0,
            )
        except ExternalServiceError as exc:
            logger.info("LLM categorization unavailable, using keywords: %s", exc)
            return categorize_by_keywords(item_name)

        category = answer.get("category")
        if isinstance(category, str) and category.strip().lower() in VALID_CATEGORIES:
            return category.strip().lower()

        logger.info("LLM returned out-of-set category %r, using keywords", category)
        return categorize_by_keywords(item_name)


__all__ = [
    "FALLBACK_KEYWORDS",
    "ItemCategorizer",
    "SpendingCategory",
    "VALID_CATEGORIES",
    "categorize_by_keywords",
]
