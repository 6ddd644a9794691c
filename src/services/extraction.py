"""
Receipt Extraction for Receipt Insights.

Turns an uploaded receipt image into structured purchase data with one
vision chat completion, then resolves the currency on the raw answer and
normalizes every field:

- missing text fields -> None, missing amounts -> 0
- item prices given as strings are parsed, a comma decimal separator included
- item quantity defaults to 1, item name to "Unknown Item"
- subtotal falls back to total - tax
"""

from __future__ import annotations

import base64
import logging
import re
from datetime import UTC, datetime
from typing import Any

from src.services.currency import resolve_currency
from src.services.llm_client import LLMClient

logger = logging.getLogger(__name__)

UNKNOWN_ITEM = "Unknown Item"

_DATE_HINT = re.compile(r"\d{2}[-_]?\d{2}[-_]?\d{2,4}")

# Accepted spellings for each normalized key
_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "merchant": ("merchant",),
    "date": ("date",),
    "category": ("category",),
    "items": ("items",),
    "subtotal_amount": ("subtotal_amount", "subtotalAmount"),
    "tax_amount": ("tax_amount", "taxAmount"),
    "total_amount": ("total_amount", "totalAmount"),
    "payment_method": ("payment_method", "paymentMethod"),
    "currency": ("currency",),
    "currency_evidence": ("currency_evidence", "currencyEvidence"),
    "notes": ("notes",),
}

EXTRACTION_PROMPT = """You are an assistant specialized in extracting accurate purchase details from receipts.

Key instructions:
- Extract the merchant name, date and payment method.
- Extract each line item with its exact product name, price and quantity.
- Look carefully for the subtotal, tax and total amounts.

Currency detection:
- First look for currency symbols next to prices ($, €, £, ¥, ₹, ₩, ฿).
- Then look for currency codes (USD, EUR, GBP, ...) anywhere on the receipt.
- Then use the header, footer and merchant name for country or city hints.
- Then use the price formatting (1,234.56 vs 1.234,56).
- Default to "USD" only when nothing else is available.
- Report the evidence that led to the currency in "currency_evidence".

Other instructions:
- Infer a receipt category such as groceries, dining, retail, travel or utilities.
- Return the date as YYYY-MM-DD.
- Return prices as numbers without currency symbols or thousand separators.

Return JSON only, in this format:
{
  "merchant": "string",
  "date": "YYYY-MM-DD",
  "category": "string",
  "items": [{"name": "string", "price": number, "quantity": number}],
  "subtotal_amount": number,
  "tax_amount": number,
  "total_amount": number,
  "payment_method": "string",
  "currency": "string",
  "currency_evidence": "string",
  "notes": "string"
}
If a value cannot be extracted, use null or 0."""


def date_hint_from_filename(file_name: str) -> str | None:
    """Date-like fragment of an upload name (``12-03-2024``, ``120324`` ...), if any."""
    match = _DATE_HINT.search(file_name or "")
    return match.group(0) if match else None


def parse_amount(value: Any) -> float:
    """Number from an int/float or a string such as ``"3,50"``; unparsable -> 0."""
    if isinstance(value, bool) or value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip().replace(",", ".", 1))
    except ValueError:
        return 0.0


def parse_receipt_date(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    try:
        parsed = datetime.fromisoformat(str(value).strip())
    except ValueError:
        logger.debug("Unparsable receipt date %r", value)
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _canonical_keys(raw: dict[str, Any]) -> dict[str, Any]:
    canonical: dict[str, Any] = {}
    for key, aliases in _FIELD_ALIASES.items():
        for alias in aliases:
            if raw.get(alias) is not None:
                canonical[key] = raw[alias]
                break
        else:
            canonical[key] = None
    return canonical


def _normalize_item(item: Any) -> dict[str, Any]:
    if not isinstance(item, dict):
        return {"name": UNKNOWN_ITEM, "price": 0.0, "quantity": 1}
    quantity = item.get("quantity")
    return {
        "name": str(item.get("name") or UNKNOWN_ITEM),
        "price": parse_amount(item.get("price")),
        "quantity": quantity if isinstance(quantity, (int, float)) and quantity > 0 else 1,
    }


def normalize_extracted_receipt(raw: dict[str, Any]) -> dict[str, Any]:
    """
    Resolve the currency and normalize a raw extraction answer.

    Args:
        raw: JSON object from the vision model (snake_case or camelCase keys).

    Returns:
        Dict with the Receipt column names, ready for the receipt service.
    """
    fields = _canonical_keys(raw)
    items_raw = fields["items"] if isinstance(fields["items"], list) else []

    # Currency inference reads the original price strings
    currency = resolve_currency({**fields, "items": items_raw})

    total = parse_amount(fields["total_amount"])
    tax = parse_amount(fields["tax_amount"])
    subtotal = parse_amount(fields["subtotal_amount"]) or (total - tax) or 0.0

    return {
        "merchant": fields["merchant"] or None,
        "date": parse_receipt_date(fields["date"]),
        "category": fields["category"] or None,
        "items": [_normalize_item(item) for item in items_raw],
        "subtotal_amount": subtotal,
        "tax_amount": tax,
        "total_amount": total,
        "payment_method": fields["payment_method"] or None,
        "currency": currency.currency,
        "currency_evidence": currency.evidence,
        "currency_confidence": currency.confidence,
        "notes": fields["notes"] or None,
    }


class ReceiptExtractor:
    """
    Vision-model receipt extraction.

    Args:
        llm: Chat client used for the vision call.
        model: Vision-capable model name.
    """

    def __init__(self, llm: LLMClient, model: str = "gpt-4o") -> None:
        self.llm = llm
        self.model = model

    async def extract(
        self, image: bytes, file_name: str, content_type: str = "image/jpeg"
    ) -> dict[str, Any]:
        """
        Extract and normalize receipt data from an image.

        Raises:
            ExternalServiceError: If the vision call fails or returns no JSON
                object (the upload is rejected; no local fallback exists).
        """
        hint = date_hint_from_filename(file_name)
        instruction = "Extract the complete receipt details from this image and return only JSON. "
        if hint:
            instruction += f"The receipt might be from around this date: {hint}. "
        instruction += "Pay special attention to the currency, all items, prices and the total amount."

        encoded = base64.b64encode(image).decode("ascii")
        raw = await self.llm.complete_json(
            [
                {"role": "system", "content": EXTRACTION_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": instruction},
                        {
                            "type": "image_url",
                            "image_url": {"url": f"data:{content_type};base64,{encoded}"},
                        },
                    ],
                },
            ],
            model=self.model,
            max_tokens=1000,
        )
        extracted = normalize_extracted_receipt(raw)
        logger.info(
            "Extracted receipt %s: %d items, currency %s (%.2f)",
            file_name,
            len(extracted["items"]),
            extracted["currency"],
            extracted["currency_confidence"],
        )
        return extracted


__all__ = [
    "EXTRACTION_PROMPT",
    "ReceiptExtractor",
    "date_hint_from_filename",
    "normalize_extracted_receipt",
    "parse_amount",
    "parse_receipt_date",
]
