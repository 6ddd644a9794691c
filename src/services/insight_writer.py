"""
Insight Writer for Receipt Insights.

Produces the human-readable text attached to purchases and weekly digests.
The LLM writes the text when it is reachable; otherwise a fixed template is
used so the pipeline never stalls on the chat service.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from src.lib.exceptions import ExternalServiceError
from src.services.llm_client import LLMClient

logger = logging.getLogger(__name__)

DEFAULT_WEEKLY_TIP = "Track your daily expenses to identify unnecessary spending."

_ITEM_SYSTEM_PROMPT = (
    "You are a personal finance assistant. Given one purchased item, write a "
    "single short, actionable sentence about the purchase. Mention a cheaper "
    "market price or a subscription option when relevant."
)

_TIP_SYSTEM_PROMPT = "You are a financial advisor providing personalized spending tips."


def fallback_item_insight(item_name: str, price: float, is_recurring: bool) -> str:
    """Template text used when the LLM is unavailable."""
    if is_recurring:
        return (
            f"{item_name} appears to be a recurring purchase. "
            "Consider checking for bulk discounts or subscription options."
        )
    return f"Item: {item_name} - {price}"


def _format_amount(value: float, currency: str) -> str:
    return f"{value:.2f} {currency}"


class InsightWriter:
    """
    Writes item insights and weekly tips.

    Args:
        llm: Chat client; None means template text only.
    """

    def __init__(self, llm: LLMClient | None = None) -> None:
        self.llm = llm

    async def item_insight(
        self,
        item_name: str,
        price: float,
        category: str,
        is_recurring: bool,
        market_price: float | None = None,
        currency: str = "USD",
    ) -> str:
        """
        One sentence of advice for a purchased item.

        Args:
            item_name: Item name from the receipt.
            price: Paid price.
            category: Assigned spending category.
            is_recurring: Result of the recurrence check.
            market_price: Reference price, if one is known.
            currency: Receipt currency.

        Returns:
            LLM text, or the template text on any chat-service failure.
        """
        if self.llm is None:
            return fallback_item_insight(item_name, price, is_recurring)

        lines = [
            f"Item: {item_name}",
            f"Price paid: {_format_amount(price, currency)}",
            f"Category: {category}",
            f"Recurring purchase: {'yes' if is_recurring else 'no'}",
        ]
        if market_price is not None:
            lines.append(f"Typical market price: {_format_amount(market_price, currency)}")

        try:
            text = await self.llm.complete(
                [
                    {"role": "system", "content": _ITEM_SYSTEM_PROMPT},
                    {"role": "user", "content": "\n".join(lines)},
                ],
                max_tokens=100,
            )
        except ExternalServiceError as exc:
            logger.info("LLM insight unavailable, using template: %s", exc)
            return fallback_item_insight(item_name, price, is_recurring)

        return text or fallback_item_insight(item_name, price, is_recurring)

    async def weekly_tip(
        self,
        top_categories: Sequence[dict[str, Any]],
        total_spent: float,
        recurring_alerts: Sequence[dict[str, Any]],
        currency: str = "USD",
    ) -> str:
        """Personalized tip for a weekly digest; static tip on failure."""
        if self.llm is None:
            return DEFAULT_WEEKLY_TIP

        category_lines = "\n".join(
            f"- {row['category']}: {_format_amount(row['amount'], currency)} ({row['percentage']}%)"
            for row in top_categories
        )
        recurring_lines = "\n".join(
            f"- {alert['item_name']}: {alert.get('insight') or 'recurring purchase'}"
            for alert in recurring_alerts
        )
        prompt = (
            "Based on the following spending patterns, generate a personalized financial tip.\n\n"
            f"Top spending categories:\n{category_lines or '- none'}\n\n"
            f"Total spent: {_format_amount(total_spent, currency)}\n\n"
            f"Recurring purchases:\n{recurring_lines or '- none'}\n\n"
            "Provide one concise, actionable tip that helps improve their financial habits."
        )

        try:
            text = await self.llm.complete(
                [
                    {"role": "system", "content": _TIP_SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                max_tokens=100,
            )
        except ExternalServiceError as exc:
            logger.info("LLM weekly tip unavailable, using static tip: %s", exc)
            return DEFAULT_WEEKLY_TIP

        return text or DEFAULT_WEEKLY_TIP


__all__ = ["DEFAULT_WEEKLY_TIP", "InsightWriter", "fallback_item_insight"]
