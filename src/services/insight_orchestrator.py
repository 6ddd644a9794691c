"""
Insight Orchestrator for Receipt Insights.

Drives one receipt through the insight pipeline:

    pending -> processing -> completed | failed

request_insights() is the user-facing entry point; it enqueues a
``process_receipt_insights`` job. process_receipt() is the job handler and
annotates each item strictly in receipt order:

    categorize -> recurrence check -> market comparison -> insight text
    -> persist InsightItem -> attribute spend to the budget

A failure inside one item leaves that item unannotated and moves on; the
receipt still completes. A failure outside the item loop marks the receipt
``failed`` and propagates so the job queue can retry it.

Jobs live only in memory. On startup recover_interrupted() returns receipts
left in ``processing`` to ``pending``, and request_insights() re-enqueues a
receipt whose ``processing`` stamp is older than ``stale_after``.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.infra.database import SessionFactory
from src.lib.clock import Clock, ensure_utc, utc_now
from src.lib.exceptions import NotFoundError, ValidationError
from src.lib.security import hash_uid
from src.models.insight_item import InsightItem, InsightType
from src.models.receipt import InsightProcessingStatus, Receipt
from src.services.budget_ledger import BudgetLedger
from src.services.categorizer import ItemCategorizer
from src.services.insight_writer import InsightWriter
from src.services.job_queue import JobQueue, JobType
from src.services.price_tracker import compare_to_market
from src.services.recurrence import RecurrenceDetector

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
DEFAULT_STALE_AFTER = timedelta(minutes=15)


class InsightOrchestrator:
    """
    Per-receipt insight state machine.

    Args:
        session_factory: Async session factory.
        job_queue: Receives ``process_receipt_insights`` jobs.
        categorizer: Item -> category.
        recurrence: Per-item recurrence check.
        writer: Insight text.
        ledger: Budget attribution.
        clock: Returns "now" as an aware UTC datetime.
        stale_after: Age after which a ``processing`` receipt counts as
            abandoned and may be enqueued again.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        job_queue: JobQueue,
        categorizer: ItemCategorizer,
        recurrence: RecurrenceDetector,
        writer: InsightWriter,
        ledger: BudgetLedger,
        clock: Clock = utc_now,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
    ) -> None:
        self.session_factory = session_factory
        self.job_queue = job_queue
        self.categorizer = categorizer
        self.recurrence = recurrence
        self.writer = writer
        self.ledger = ledger
        self.clock = clock
        self.stale_after = stale_after

    def register(self, job_queue: JobQueue) -> None:
        job_queue.register(JobType.PROCESS_RECEIPT_INSIGHTS, self._handle_job)

    async def _handle_job(self, payload: dict[str, Any]) -> None:
        await self.process_receipt(int(payload["user_id"]), int(payload["receipt_id"]))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load_receipt(self, session: AsyncSession, user_id: int, receipt_id: int) -> Receipt:
        receipt = (
            await session.execute(
                select(Receipt).where(Receipt.id == receipt_id, Receipt.user_id == user_id)
            )
        ).scalar_one_or_none()
        if receipt is None:
            raise NotFoundError("Receipt", receipt_id)
        return receipt

    async def _insights_for(
        self, session: AsyncSession, user_id: int, receipt_id: int
    ) -> list[dict[str, Any]]:
        rows = (
            await session.execute(
                select(InsightItem)
                .where(InsightItem.user_id == user_id, InsightItem.receipt_id == receipt_id)
                .order_by(InsightItem.id)
            )
        ).scalars().all()
        return [row.to_dict() for row in rows]

    async def _set_status(
        self, user_id: int, receipt_id: int, status: InsightProcessingStatus
    ) -> None:
        async with self.session_factory() as session, session.begin():
            receipt = await self._load_receipt(session, user_id, receipt_id)
            receipt.insight_processing_status = status.value  # type: ignore[assignment]

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def request_insights(self, user_id: int, receipt_id: int) -> dict[str, Any]:
        """
        Ask for a receipt's insights.

        Returns:
            ``{"status": "completed", "receipt", "insights"}`` when cached,
            otherwise ``{"status": "processing", "receipt_id", "queued"}``
            where ``queued`` tells whether a new job was enqueued.

        Raises:
            NotFoundError: If the receipt does not exist for the user.
        """
        async with self.session_factory() as session, session.begin():
            receipt = await self._load_receipt(session, user_id, receipt_id)
            status = receipt.insight_processing_status

            if status == InsightProcessingStatus.COMPLETED:
                return {
                    "status": InsightProcessingStatus.COMPLETED.value,
                    "receipt": receipt.to_dict(),
                    "insights": await self._insights_for(session, user_id, receipt_id),
                }
            now = self.clock()
            if status == InsightProcessingStatus.PROCESSING:
                started = receipt.processing_started_at
                if started is not None and now - ensure_utc(started) < self.stale_after:
                    return {
                        "status": InsightProcessingStatus.PROCESSING.value,
                        "receipt_id": receipt_id,
                        "queued": False,
                    }
                logger.warning(
                    "Receipt %d of %s stuck in processing since %s, re-enqueueing",
                    receipt_id,
                    hash_uid(user_id),
                    started.isoformat() if started else "unknown",
                )
            receipt.insight_processing_status = InsightProcessingStatus.PROCESSING.value  # type: ignore[assignment]
            receipt.processing_started_at = now  # type: ignore[assignment]

        await self.job_queue.enqueue(
            JobType.PROCESS_RECEIPT_INSIGHTS, {"user_id": user_id, "receipt_id": receipt_id}
        )
        logger.info("Insights queued for receipt %d of %s", receipt_id, hash_uid(user_id))
        return {
            "status": InsightProcessingStatus.PROCESSING.value,
            "receipt_id": receipt_id,
            "queued": True,
        }

    async def recover_interrupted(self) -> int:
        """
        Return receipts stranded in ``processing`` to ``pending``.

        Called once at startup, before the job queue runs: their jobs were
        lost with the previous process.

        Returns:
            Number of receipts reset.
        """
        async with self.session_factory() as session, session.begin():
            result = await session.execute(
                update(Receipt)
                .where(Receipt.insight_processing_status == InsightProcessingStatus.PROCESSING.value)
                .values(
                    insight_processing_status=InsightProcessingStatus.PENDING.value,
                    processing_started_at=None,
                )
            )
        count = result.rowcount or 0
        if count:
            logger.warning("Reset %d interrupted receipts to pending", count)
        return count

    async def process_receipt(self, user_id: int, receipt_id: int) -> dict[str, Any]:
        """
        Run the per-item pipeline for one receipt.

        Returns:
            ``{"receipt", "insights", "processed"}``; ``processed`` is False
            when the receipt was already completed and nothing ran.

        Raises:
            NotFoundError: If the receipt does not exist for the user.
        """
        async with self.session_factory() as session, session.begin():
            receipt = await self._load_receipt(session, user_id, receipt_id)
            if receipt.insight_processing_status == InsightProcessingStatus.COMPLETED:
                return {
                    "receipt": receipt.to_dict(),
                    "insights": await self._insights_for(session, user_id, receipt_id),
                    "processed": False,
                }
            receipt.insight_processing_status = InsightProcessingStatus.PROCESSING.value  # type: ignore[assignment]
            receipt.processing_started_at = self.clock()  # type: ignore[assignment]
            items = [dict(item) for item in (receipt.items or [])]
            currency = str(receipt.currency or "USD")

        try:
            updated: list[dict[str, Any]] = []
            failed_items = 0
            for item in items:
                try:
                    updated.append(await self._process_item(user_id, receipt_id, item, currency))
                except Exception as exc:  # Intentional catch-all: one bad item must not fail the receipt
                    failed_items += 1
                    logger.error(
                        "Insight processing failed for an item of receipt %d: %s",
                        receipt_id,
                        exc,
                    )
                    updated.append(item)

            async with self.session_factory() as session, session.begin():
                receipt = await self._load_receipt(session, user_id, receipt_id)
                receipt.items = updated  # type: ignore[assignment]
                receipt.has_processed_insights = True  # type: ignore[assignment]
                receipt.insight_processing_status = InsightProcessingStatus.COMPLETED.value  # type: ignore[assignment]
                result = {
                    "receipt": receipt.to_dict(),
                    "insights": await self._insights_for(session, user_id, receipt_id),
                    "processed": True,
                }
        except Exception:
            logger.exception("Insight processing failed for receipt %d", receipt_id)
            await self._set_status(user_id, receipt_id, InsightProcessingStatus.FAILED)
            raise

        logger.info(
            "Receipt %d of %s processed: %d items, %d failed",
            receipt_id,
            hash_uid(user_id),
            len(items),
            failed_items,
        )
        return result

    async def _process_item(
        self, user_id: int, receipt_id: int, item: dict[str, Any], currency: str
    ) -> dict[str, Any]:
        name = str(item.get("name") or "")
        if not name:
            raise ValidationError("item has no name")
        price = float(item.get("price") or 0.0)

        category = await self.categorizer.categorize(name)
        is_recurring = await self.recurrence.is_recurring(user_id, name)
        comparison = compare_to_market(name, price)
        market_price = comparison.market_price if comparison else None
        savings = comparison.savings if comparison else None
        insight = await self.writer.item_insight(
            name, price, category, is_recurring, market_price=market_price, currency=currency
        )

        if is_recurring:
            insight_type = InsightType.RECURRING
        elif comparison is not None:
            insight_type = InsightType.PRICE_COMPARISON
        else:
            insight_type = InsightType.GENERAL

        async with self.session_factory() as session, session.begin():
            row = InsightItem(
                user_id=user_id,
                receipt_id=receipt_id,
                item_name=name,
                category=category,
                detected_price=price,
                matched_market_price=market_price,
                savings=savings,
                date_detected=self.clock(),
                insight_text=insight,
                insight_type=insight_type.value,
                is_recurring=is_recurring,
                processing_status=InsightProcessingStatus.COMPLETED.value,
            )
            session.add(row)
            await session.flush()
            insight_id = row.id

        try:
            await self.ledger.attribute_spend(user_id, category, price)
        except Exception:
            # The item stays unannotated, so its InsightItem must not outlive it
            async with self.session_factory() as session, session.begin():
                await session.execute(delete(InsightItem).where(InsightItem.id == insight_id))
            raise

        return {
            **item,
            "category": category,
            "is_recurring": is_recurring,
            "insight": insight,
            "market_price": market_price,
            "savings": savings,
        }

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_receipt_insights(self, user_id: int, receipt_id: int) -> dict[str, Any]:
        """Receipt, its InsightItems and its processing status."""
        async with self.session_factory() as session:
            receipt = await self._load_receipt(session, user_id, receipt_id)
            return {
                "receipt": receipt.to_dict(),
                "insights": await self._insights_for(session, user_id, receipt_id),
                "insight_status": receipt.insight_processing_status,
            }

    async def list_user_insights(
        self, user_id: int, limit: int = 20, offset: int = 0
    ) -> dict[str, Any]:
        """Newest InsightItems first, paginated."""
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if offset < 0:
            raise ValidationError("offset must not be negative")

        async with self.session_factory() as session:
            rows = (
                await session.execute(
                    select(InsightItem)
                    .where(InsightItem.user_id == user_id)
                    .order_by(InsightItem.date_detected.desc(), InsightItem.id.desc())
                    .offset(offset)
                    .limit(limit)
                )
            ).scalars().all()
            total = (
                await session.execute(
                    select(func.count(InsightItem.id)).where(InsightItem.user_id == user_id)
                )
            ).scalar_one()

        return {
            "insights": [row.to_dict() for row in rows],
            "pagination": {"total": int(total), "limit": limit, "offset": offset},
        }


__all__ = ["InsightOrchestrator"]
