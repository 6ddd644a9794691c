"""
Receipt Service for Receipt Insights.

Stores receipts from vision extraction or manual entry and answers the
receipt queries of the API: filtered listing, currency correction,
currency statistics, spending analytics and deletion.

Deleting a receipt also removes its InsightItems and asks the file store to
remove the uploaded image.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.infra.database import SessionFactory
from src.lib.clock import Clock, utc_now
from src.lib.exceptions import NotFoundError, ValidationError
from src.lib.security import hash_uid
from src.models.insight_item import InsightItem
from src.models.receipt import DEFAULT_CURRENCY, Receipt
from src.services.currency import (
    MANUAL_EVIDENCE,
    REVIEW_THRESHOLD,
    UPLOAD_OVERRIDE_EVIDENCE,
    VALID_CURRENCY_CODES,
    is_valid_currency_code,
    standardize_currency_code,
)
from src.services.extraction import parse_amount, parse_receipt_date

logger = logging.getLogger(__name__)

FileRemover = Callable[[str], Awaitable[None]]

SORTABLE_FIELDS = {
    "uploaded_at": Receipt.uploaded_at,
    "date": Receipt.date,
    "total_amount": Receipt.total_amount,
    "merchant": Receipt.merchant,
}

ENTRY_TYPES = ("scan", "manual")


def _manual_items(raw_items: Any) -> list[dict[str, Any]]:
    if raw_items is None:
        return []
    if not isinstance(raw_items, list):
        raise ValidationError("items must be a list")
    items = []
    for raw in raw_items:
        if not isinstance(raw, dict) or not raw.get("name"):
            raise ValidationError("every item needs a name")
        quantity = parse_amount(raw.get("quantity")) or 1
        items.append({
            "name": str(raw["name"]),
            "price": parse_amount(raw.get("price")),
            "quantity": int(quantity) if float(quantity).is_integer() else quantity,
        })
    return items


def calculate_subtotal(items: list[dict[str, Any]]) -> float:
    return round(sum(float(i["price"]) * float(i.get("quantity") or 1) for i in items), 2)


class ReceiptService:
    """
    Args:
        session_factory: Async session factory.
        clock: Stamps ``uploaded_at``.
    """

    def __init__(self, session_factory: SessionFactory, clock: Clock = utc_now) -> None:
        self.session_factory = session_factory
        self.clock = clock

    async def _load(self, session: AsyncSession, user_id: int, receipt_id: int) -> Receipt:
        receipt = (
            await session.execute(
                select(Receipt).where(Receipt.id == receipt_id, Receipt.user_id == user_id)
            )
        ).scalar_one_or_none()
        if receipt is None:
            raise NotFoundError("Receipt", receipt_id)
        return receipt

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_from_extraction(
        self,
        user_id: int,
        extracted: dict[str, Any],
        file_name: str,
        currency: str | None = None,
        category: str | None = None,
    ) -> dict[str, Any]:
        """
        Store a normalized extraction result.

        Args:
            user_id: Owner.
            extracted: Output of ``normalize_extracted_receipt``.
            file_name: Original upload name.
            currency: User-supplied currency; overrides detection with
                confidence 1.0.
            category: User-supplied receipt category.

        Returns:
            ``{"receipt": ..., "currency_info": {detected, confidence,
            evidence, needs_review}}``
        """
        data = dict(extracted)
        if currency:
            data["currency"] = standardize_currency_code(currency)
            data["currency_evidence"] = UPLOAD_OVERRIDE_EVIDENCE
            data["currency_confidence"] = 1.0
        if category:
            data["category"] = category

        async with self.session_factory() as session, session.begin():
            receipt = Receipt(
                user_id=user_id,
                file_name=file_name,
                merchant=data.get("merchant"),
                date=data.get("date"),
                category=data.get("category"),
                items=list(data.get("items") or []),
                tax_amount=float(data.get("tax_amount") or 0.0),
                subtotal_amount=float(data.get("subtotal_amount") or 0.0),
                total_amount=float(data.get("total_amount") or 0.0),
                payment_method=data.get("payment_method"),
                currency=data.get("currency") or DEFAULT_CURRENCY,
                currency_evidence=data.get("currency_evidence"),
                currency_confidence=float(data.get("currency_confidence") or 0.0),
                notes=data.get("notes"),
                is_manual_entry=False,
                uploaded_at=self.clock(),
            )
            session.add(receipt)
            await session.flush()
            stored = receipt.to_dict()

        logger.info("Receipt %d stored for %s", stored["id"], hash_uid(user_id))
        confidence = stored["currency_confidence"]
        return {
            "receipt": stored,
            "currency_info": {
                "detected": stored["currency"],
                "confidence": confidence,
                "evidence": stored["currency_evidence"],
                "needs_review": confidence < REVIEW_THRESHOLD,
            },
        }

    async def create_manual(self, user_id: int, data: dict[str, Any]) -> dict[str, Any]:
        """
        Store a manually entered receipt.

        Raises:
            ValidationError: If merchant or total_amount is missing, or an
                item is malformed.
        """
        if not data.get("merchant") or data.get("total_amount") is None:
            raise ValidationError("merchant and total_amount are required")
        items = _manual_items(data.get("items"))

        raw_currency = data.get("currency")
        currency = standardize_currency_code(raw_currency) if raw_currency else DEFAULT_CURRENCY

        async with self.session_factory() as session, session.begin():
            receipt = Receipt(
                user_id=user_id,
                file_name=None,
                merchant=str(data["merchant"]),
                date=parse_receipt_date(data.get("date")),
                category=data.get("category"),
                items=items,
                tax_amount=parse_amount(data.get("tax_amount")),
                subtotal_amount=calculate_subtotal(items),
                total_amount=parse_amount(data.get("total_amount")),
                payment_method=data.get("payment_method"),
                currency=currency,
                currency_evidence=MANUAL_EVIDENCE if raw_currency else None,
                currency_confidence=1.0 if raw_currency else 0.0,
                notes=data.get("notes"),
                is_manual_entry=True,
                uploaded_at=self.clock(),
            )
            session.add(receipt)
            await session.flush()
            stored = receipt.to_dict()

        logger.info("Manual receipt %d stored for %s", stored["id"], hash_uid(user_id))
        return stored

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    async def update_currency(self, user_id: int, receipt_id: int, currency: str) -> dict[str, Any]:
        """
        Correct a receipt's currency by hand.

        Raises:
            ValidationError: If the code is missing or not whitelisted.
            NotFoundError: If the receipt does not exist for the user.
        """
        if not currency:
            raise ValidationError("currency is required")
        code = currency.strip().upper()
        if not is_valid_currency_code(code):
            raise ValidationError(
                "Invalid currency code, use one of: " + ", ".join(sorted(VALID_CURRENCY_CODES))
            )

        async with self.session_factory() as session, session.begin():
            receipt = await self._load(session, user_id, receipt_id)
            receipt.currency = code  # type: ignore[assignment]
            receipt.currency_evidence = MANUAL_EVIDENCE  # type: ignore[assignment]
            receipt.currency_confidence = 1.0  # type: ignore[assignment]
            return receipt.to_dict()

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    async def _remove_file(self, receipt: Receipt, remove_file: FileRemover | None) -> int:
        if remove_file is None or not receipt.file_name or receipt.is_manual_entry:
            return 0
        try:
            await remove_file(str(receipt.file_name))
        except OSError as exc:
            logger.warning("Could not remove upload of receipt %d: %s", receipt.id, exc)
            return 0
        return 1

    async def delete_receipt(
        self, user_id: int, receipt_id: int, remove_file: FileRemover | None = None
    ) -> dict[str, Any]:
        """
        Delete a receipt with its InsightItems and uploaded file.

        Returns:
            ``{"receipt": <deleted receipt>, "files_removed": 0 | 1}``
        """
        async with self.session_factory() as session, session.begin():
            receipt = await self._load(session, user_id, receipt_id)
            deleted = receipt.to_dict()
            await session.execute(
                delete(InsightItem).where(
                    InsightItem.user_id == user_id, InsightItem.receipt_id == receipt_id
                )
            )
            await session.delete(receipt)

        files_removed = await self._remove_file(receipt, remove_file)
        logger.info("Receipt %d deleted for %s", receipt_id, hash_uid(user_id))
        return {"receipt": deleted, "files_removed": files_removed}

    async def delete_all_receipts(
        self, user_id: int, remove_file: FileRemover | None = None
    ) -> dict[str, int]:
        """Delete every receipt of a user (with InsightItems and files)."""
        async with self.session_factory() as session, session.begin():
            receipts = list(
                (await session.execute(select(Receipt).where(Receipt.user_id == user_id)))
                .scalars()
                .all()
            )
            await session.execute(delete(InsightItem).where(InsightItem.user_id == user_id))
            for receipt in receipts:
                await session.delete(receipt)

        files_removed = 0
        for receipt in receipts:
            files_removed += await self._remove_file(receipt, remove_file)
        logger.info("%d receipts deleted for %s", len(receipts), hash_uid(user_id))
        return {"receipts_deleted": len(receipts), "files_removed": files_removed}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_receipt(self, user_id: int, receipt_id: int) -> dict[str, Any]:
        async with self.session_factory() as session:
            return (await self._load(session, user_id, receipt_id)).to_dict()

    async def list_receipts(
        self,
        user_id: int,
        *,
        category: str | None = None,
        merchant: str | None = None,
        currency: str | None = None,
        entry_type: str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        min_amount: float | None = None,
        max_amount: float | None = None,
        sort_by: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """
        Filtered receipts of a user, newest upload first by default.

        Args:
            merchant: Case-insensitive substring.
            entry_type: "scan" or "manual".
            sort_by: ``"<field>:<asc|desc>"`` over uploaded_at, date,
                total_amount or merchant.
        """
        stmt = select(Receipt).where(Receipt.user_id == user_id)
        if category:
            stmt = stmt.where(Receipt.category == category)
        if merchant:
            stmt = stmt.where(func.lower(Receipt.merchant).contains(merchant.lower(), autoescape=True))
        if currency:
            stmt = stmt.where(Receipt.currency == currency.upper())
        if entry_type is not None:
            if entry_type not in ENTRY_TYPES:
                raise ValidationError("type must be 'scan' or 'manual'")
            stmt = stmt.where(Receipt.is_manual_entry.is_(entry_type == "manual"))
        if start_date is not None:
            stmt = stmt.where(Receipt.date >= start_date)
        if end_date is not None:
            stmt = stmt.where(Receipt.date <= end_date)
        if min_amount is not None:
            stmt = stmt.where(Receipt.total_amount >= min_amount)
        if max_amount is not None:
            stmt = stmt.where(Receipt.total_amount <= max_amount)

        order = Receipt.uploaded_at.desc()
        if sort_by:
            field, _, direction = sort_by.partition(":")
            column = SORTABLE_FIELDS.get(field)
            if column is None:
                raise ValidationError(f"cannot sort by {field!r}")
            order = column.asc() if direction == "asc" else column.desc()
        stmt = stmt.order_by(order, Receipt.id.desc())

        if limit is not None:
            if limit < 1:
                raise ValidationError("limit must be positive")
            stmt = stmt.limit(limit)

        async with self.session_factory() as session:
            return [r.to_dict() for r in (await session.execute(stmt)).scalars().all()]

    async def currency_stats(self, user_id: int) -> dict[str, Any]:
        """Per-currency count, total, average confidence and receipt summaries."""
        async with self.session_factory() as session:
            receipts = (
                await session.execute(
                    select(Receipt).where(Receipt.user_id == user_id).order_by(Receipt.id)
                )
            ).scalars().all()

        distribution: dict[str, dict[str, Any]] = {}
        for receipt in receipts:
            if not receipt.currency:
                continue
            code = str(receipt.currency).upper()
            entry = distribution.setdefault(
                code, {"count": 0, "total_amount": 0.0, "confidence_avg": 0.0, "receipts": []}
            )
            entry["count"] += 1
            entry["total_amount"] += float(receipt.total_amount or 0.0)
            entry["confidence_avg"] += float(receipt.currency_confidence or 0.0)
            entry["receipts"].append({
                "id": receipt.id,
                "merchant": receipt.merchant,
                "amount": receipt.total_amount,
                "evidence": receipt.currency_evidence or "No evidence recorded",
            })

        for entry in distribution.values():
            entry["confidence_avg"] = entry["confidence_avg"] / entry["count"]
            entry["total_amount"] = round(entry["total_amount"], 2)

        return {"total_receipts": len(receipts), "currency_distribution": distribution}

    async def receipt_analytics(self, user_id: int) -> dict[str, Any]:
        """Totals by category, currency, merchant, day and month."""
        async with self.session_factory() as session:
            receipts = (
                await session.execute(select(Receipt).where(Receipt.user_id == user_id))
            ).scalars().all()

        def bump(table: dict[str, dict[str, float]], key: str, amount: float) -> None:
            entry = table.setdefault(key, {"count": 0, "total": 0.0})
            entry["count"] += 1
            entry["total"] += amount

        categories: dict[str, dict[str, float]] = {}
        currencies: dict[str, dict[str, float]] = {}
        merchants: dict[str, dict[str, float]] = {}
        daily: dict[str, float] = {}
        monthly: dict[str, float] = {}
        total = 0.0

        for receipt in receipts:
            amount = float(receipt.total_amount or 0.0)
            total += amount
            if receipt.category:
                bump(categories, str(receipt.category), amount)
            if receipt.currency:
                bump(currencies, str(receipt.currency), amount)
            if receipt.merchant:
                bump(merchants, str(receipt.merchant), amount)
            if receipt.date:
                day = f"{receipt.date:%Y-%m-%d}"
                month = f"{receipt.date:%Y-%m}"
                daily[day] = daily.get(day, 0.0) + amount
                monthly[month] = monthly.get(month, 0.0) + amount

        return {
            "total_spending": round(total, 2),
            "receipt_count": len(receipts),
            "average_receipt_value": total / len(receipts) if receipts else 0.0,
            "category_breakdown": categories,
            "currency_analysis": currencies,
            "merchant_analysis": merchants,
            "time_analysis": {"daily": daily, "monthly": monthly},
        }


__all__ = ["FileRemover", "ReceiptService", "calculate_subtotal"]
