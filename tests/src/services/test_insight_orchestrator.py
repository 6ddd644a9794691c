"""
Tests for the insight orchestrator.

The pipeline runs with real collaborators (keyword categorizer, template
writer, recurrence detector and budget ledger) over in-memory SQLite; only
the job queue is mocked.

Covers:
- Per-item annotation, insight types and budget attribution
- Completed receipts are never reprocessed (no double attribution)
- One failing item does not fail the receipt
- A failed budget attribution leaves no InsightItem for its item
- A failure outside the item loop marks the receipt failed and re-raises
- request_insights() state handling, including stale ``processing`` receipts
- recover_interrupted() resets receipts whose jobs were lost
- Paginated listing
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select

from src.lib.exceptions import ConcurrencyConflictError, NotFoundError, ValidationError
from src.models import InsightItem, Receipt
from src.services.budget_ledger import BudgetLedger
from src.services.categorizer import ItemCategorizer
from src.services.insight_orchestrator import InsightOrchestrator
from src.services.insight_writer import InsightWriter
from src.services.job_queue import JobType
from src.services.recurrence import RecurrenceDetector


@pytest.fixture()
def ledger(session_factory, job_queue, clock) -> BudgetLedger:
    return BudgetLedger(session_factory, job_queue, clock=clock)


@pytest.fixture()
def orchestrator(session_factory, job_queue, ledger, clock) -> InsightOrchestrator:
    return InsightOrchestrator(
        session_factory,
        job_queue,
        categorizer=ItemCategorizer(),
        recurrence=RecurrenceDetector(session_factory, clock=clock),
        writer=InsightWriter(),
        ledger=ledger,
        clock=clock,
    )


async def _add_receipt(session_factory, user_id: int, items: list[dict]) -> int:
    async with session_factory() as session, session.begin():
        receipt = Receipt(
            user_id=user_id,
            merchant="Drugstore",
            items=items,
            total_amount=sum(float(i.get("price") or 0) for i in items),
        )
        session.add(receipt)
        await session.flush()
        return receipt.id


async def _count_insights(session_factory) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count(InsightItem.id)))).scalar_one()


# =============================================================================
# process_receipt
# =============================================================================


class TestProcessReceipt:
    @pytest.mark.asyncio
    async def test_annotates_items_and_attributes_spend(
        self, orchestrator: InsightOrchestrator, ledger: BudgetLedger, session_factory, job_queue
    ) -> None:
        await ledger.update_config(1, [{"category": "personal_care", "monthly_limit": 20}])
        receipt_id = await _add_receipt(
            session_factory, 1, [{"name": "Shampoo", "price": 24.5, "quantity": 1},
                                 {"name": "Widget", "price": 5.0, "quantity": 1}]
        )

        result = await orchestrator.process_receipt(1, receipt_id)

        assert result["processed"] is True
        receipt = result["receipt"]
        assert receipt["insight_processing_status"] == "completed"
        assert receipt["has_processed_insights"] is True

        shampoo, widget = receipt["items"]
        assert shampoo["category"] == "personal_care"
        assert shampoo["market_price"] == 19.0
        assert shampoo["savings"] == 5.5
        assert shampoo["is_recurring"] is False
        assert widget["category"] == "other"
        assert widget["market_price"] is None
        assert widget["insight"] == "Item: Widget - 5.0"

        assert [i["insight_type"] for i in result["insights"]] == ["price_comparison", "general"]

        alerts = [c.args[1]["threshold"] for c in job_queue.enqueue.await_args_list
                  if c.args[0] == JobType.SEND_BUDGET_ALERT]
        assert alerts == [80, 100]

    @pytest.mark.asyncio
    async def test_recurring_item(
        self, orchestrator: InsightOrchestrator, session_factory, clock
    ) -> None:
        async with session_factory() as session, session.begin():
            for days_ago in (3, 10):
                session.add(InsightItem(
                    user_id=1, receipt_id=0, item_name="Oat Milk",
                    date_detected=clock.now - timedelta(days=days_ago),
                ))
        receipt_id = await _add_receipt(session_factory, 1, [{"name": "Oat Milk", "price": 2.5}])

        result = await orchestrator.process_receipt(1, receipt_id)

        item = result["receipt"]["items"][0]
        assert item["is_recurring"] is True
        assert item["insight"].startswith("Oat Milk appears to be a recurring purchase.")
        assert result["insights"][0]["insight_type"] == "recurring"

    @pytest.mark.asyncio
    async def test_completed_receipt_is_not_reprocessed(
        self, orchestrator: InsightOrchestrator, ledger: BudgetLedger, session_factory
    ) -> None:
        await ledger.update_config(1, [{"category": "groceries", "monthly_limit": 100}])
        receipt_id = await _add_receipt(session_factory, 1, [{"name": "Bread", "price": 3.0}])

        await orchestrator.process_receipt(1, receipt_id)
        again = await orchestrator.process_receipt(1, receipt_id)

        assert again["processed"] is False
        assert len(again["insights"]) == 1
        assert await _count_insights(session_factory) == 1
        config = await ledger.get_or_create_config(1)
        assert config["category_budgets"][0]["current_spend"] == 3.0

    @pytest.mark.asyncio
    async def test_failing_item_is_contained(
        self, orchestrator: InsightOrchestrator, session_factory
    ) -> None:
        receipt_id = await _add_receipt(
            session_factory, 1, [{"name": "", "price": 1.0}, {"name": "Bread", "price": 3.0}]
        )

        result = await orchestrator.process_receipt(1, receipt_id)

        first, second = result["receipt"]["items"]
        assert "insight" not in first
        assert second["category"] == "groceries"
        assert result["receipt"]["insight_processing_status"] == "completed"
        assert await _count_insights(session_factory) == 1

    @pytest.mark.asyncio
    async def test_attribution_conflict_leaves_no_orphan_insight(
        self, orchestrator: InsightOrchestrator, ledger: BudgetLedger, session_factory
    ) -> None:
        receipt_id = await _add_receipt(
            session_factory, 1, [{"name": "Bread", "price": 3.0}, {"name": "Shampoo", "price": 4.0}]
        )

        with patch.object(
            ledger,
            "attribute_spend",
            AsyncMock(side_effect=[ConcurrencyConflictError("CategoryBudget"), None]),
        ):
            result = await orchestrator.process_receipt(1, receipt_id)

        bread, shampoo = result["receipt"]["items"]
        assert "insight" not in bread
        assert shampoo["category"] == "personal_care"
        assert [i["item_name"] for i in result["insights"]] == ["Shampoo"]
        assert await _count_insights(session_factory) == 1
        assert result["receipt"]["insight_processing_status"] == "completed"

    @pytest.mark.asyncio
    async def test_fatal_error_marks_failed(
        self, orchestrator: InsightOrchestrator, session_factory
    ) -> None:
        receipt_id = await _add_receipt(session_factory, 1, [{"name": "Bread", "price": 3.0}])

        with patch.object(
            orchestrator, "_insights_for", AsyncMock(side_effect=RuntimeError("db gone"))
        ), pytest.raises(RuntimeError):
            await orchestrator.process_receipt(1, receipt_id)

        async with session_factory() as session:
            receipt = await session.get(Receipt, receipt_id)
        assert receipt.insight_processing_status == "failed"

    @pytest.mark.asyncio
    async def test_unknown_receipt(self, orchestrator: InsightOrchestrator, session_factory) -> None:
        receipt_id = await _add_receipt(session_factory, 1, [])
        with pytest.raises(NotFoundError):
            await orchestrator.process_receipt(2, receipt_id)


# =============================================================================
# request_insights
# =============================================================================


class TestRequestInsights:
    @pytest.mark.asyncio
    async def test_pending_receipt_is_queued_once(
        self, orchestrator: InsightOrchestrator, session_factory, job_queue
    ) -> None:
        receipt_id = await _add_receipt(session_factory, 1, [{"name": "Bread", "price": 3.0}])

        first = await orchestrator.request_insights(1, receipt_id)
        second = await orchestrator.request_insights(1, receipt_id)

        assert first == {"status": "processing", "receipt_id": receipt_id, "queued": True}
        assert second["queued"] is False
        job_queue.enqueue.assert_awaited_once_with(
            JobType.PROCESS_RECEIPT_INSIGHTS, {"user_id": 1, "receipt_id": receipt_id}
        )

    @pytest.mark.asyncio
    async def test_stale_processing_receipt_is_requeued(
        self, orchestrator: InsightOrchestrator, session_factory, job_queue, clock
    ) -> None:
        receipt_id = await _add_receipt(session_factory, 1, [{"name": "Bread", "price": 3.0}])
        await orchestrator.request_insights(1, receipt_id)

        # Job lost; still inside the stale window
        clock.advance(minutes=5)
        assert (await orchestrator.request_insights(1, receipt_id))["queued"] is False

        clock.advance(minutes=11)
        again = await orchestrator.request_insights(1, receipt_id)

        assert again == {"status": "processing", "receipt_id": receipt_id, "queued": True}
        assert job_queue.enqueue.await_count == 2
        async with session_factory() as session:
            receipt = await session.get(Receipt, receipt_id)
        assert receipt.processing_started_at.replace(tzinfo=None) == clock.now.replace(tzinfo=None)

    @pytest.mark.asyncio
    async def test_recover_interrupted(
        self, orchestrator: InsightOrchestrator, session_factory, job_queue
    ) -> None:
        stranded = await _add_receipt(session_factory, 1, [{"name": "Bread", "price": 3.0}])
        done = await _add_receipt(session_factory, 1, [{"name": "Milk", "price": 1.0}])
        await orchestrator.request_insights(1, stranded)
        await orchestrator.process_receipt(1, done)

        assert await orchestrator.recover_interrupted() == 1
        assert await orchestrator.recover_interrupted() == 0

        async with session_factory() as session:
            assert (await session.get(Receipt, stranded)).insight_processing_status == "pending"
            assert (await session.get(Receipt, done)).insight_processing_status == "completed"

        result = await orchestrator.request_insights(1, stranded)
        assert result["queued"] is True
        assert job_queue.enqueue.await_count == 2

    @pytest.mark.asyncio
    async def test_completed_receipt_returns_insights(
        self, orchestrator: InsightOrchestrator, session_factory, job_queue
    ) -> None:
        receipt_id = await _add_receipt(session_factory, 1, [{"name": "Bread", "price": 3.0}])
        await orchestrator.process_receipt(1, receipt_id)

        result = await orchestrator.request_insights(1, receipt_id)

        assert result["status"] == "completed"
        assert result["insights"][0]["item_name"] == "Bread"
        job_queue.enqueue.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_job_handler_runs_pipeline(
        self, orchestrator: InsightOrchestrator, session_factory
    ) -> None:
        receipt_id = await _add_receipt(session_factory, 1, [{"name": "Bread", "price": 3.0}])
        await orchestrator._handle_job({"user_id": 1, "receipt_id": receipt_id})

        details = await orchestrator.get_receipt_insights(1, receipt_id)
        assert details["insight_status"] == "completed"
        assert len(details["insights"]) == 1


# =============================================================================
# list_user_insights
# =============================================================================


class TestListInsights:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(("limit", "offset"), [(0, 0), (101, 0), (10, -1)])
    async def test_bad_pagination(
        self, orchestrator: InsightOrchestrator, limit: int, offset: int
    ) -> None:
        with pytest.raises(ValidationError):
            await orchestrator.list_user_insights(1, limit=limit, offset=offset)

    @pytest.mark.asyncio
    async def test_newest_first(
        self, orchestrator: InsightOrchestrator, session_factory, clock
    ) -> None:
        async with session_factory() as session, session.begin():
            for days_ago, name in ((5, "old"), (1, "new"), (3, "mid")):
                session.add(InsightItem(
                    user_id=1, receipt_id=1, item_name=name,
                    date_detected=clock.now - timedelta(days=days_ago),
                ))
            session.add(InsightItem(user_id=2, receipt_id=2, item_name="other", date_detected=clock.now))

        page = await orchestrator.list_user_insights(1, limit=2, offset=0)

        assert [row["item_name"] for row in page["insights"]] == ["new", "mid"]
        assert page["pagination"] == {"total": 3, "limit": 2, "offset": 0}
