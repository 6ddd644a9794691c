"""
REST API Routes for Receipt Insights.

Thin handlers over the services. Every response uses the success envelope
from src.api.schemas; domain exceptions propagate to the handlers
registered in create_app().

Endpoints (all under /api/v1 prefix):
- /health - Health check
- /receipts - Upload, manual entry, listing, currency correction, deletion
- /insights - Request and read per-receipt insights
- /budget - Category limits, analytics, reset
- /digests - Weekly digests
- /prices - Price history, market comparison, trends, best prices
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status
from fastapi.responses import JSONResponse

from src.api.dependencies import AppServices, get_current_user_id, get_services
from src.api.schemas import (
    BudgetUpdateRequest,
    CurrencyUpdateRequest,
    ManualReceiptRequest,
    PriceRecordRequest,
    success_response,
)
from src.infra.database import check_database
from src.lib.exceptions import ExternalServiceError, ValidationError
from src.lib.security import hash_uid
from src.services.price_tracker import compare_to_market

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1")


# =============================================================================
# Health
# =============================================================================


@router.get("/health")
async def health_check(services: AppServices = Depends(get_services)) -> dict[str, Any]:
    """Health check endpoint (unauthenticated)."""
    database_ok = await check_database(services.session_factory)
    return success_response({
        "status": "ok" if database_ok else "degraded",
        "database": database_ok,
        "queue_depth": services.job_queue.depth,
        "timestamp": datetime.now(UTC).isoformat(),
    })


# =============================================================================
# Receipts
# =============================================================================


@router.post("/receipts/upload", status_code=status.HTTP_201_CREATED)
async def upload_receipt(
    file: UploadFile = File(...),
    currency: str | None = Form(default=None),
    category: str | None = Form(default=None),
    user_id: int = Depends(get_current_user_id),
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    """
    Store an uploaded receipt image and extract its contents.

    The image is kept only if extraction succeeds.
    """
    content_type = file.content_type or ""
    if not content_type.startswith("image/"):
        raise ValidationError("Only image uploads are supported")
    data = await file.read()
    if not data:
        raise ValidationError("No file uploaded")

    original_name = file.filename or "receipt"
    stored_name = await services.file_store.save(original_name, data)
    try:
        extracted = await services.extractor.extract(data, original_name, content_type)
    except ExternalServiceError:
        logger.warning("Extraction failed for %s, discarding upload", hash_uid(user_id))
        await services.file_store.remove_file(stored_name)
        raise

    result = await services.receipts.create_from_extraction(
        user_id, extracted, stored_name, currency=currency, category=category
    )
    return success_response(result)


@router.post("/receipts/manual", status_code=status.HTTP_201_CREATED)
async def create_manual_receipt(
    body: ManualReceiptRequest,
    user_id: int = Depends(get_current_user_id),
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    receipt = await services.receipts.create_manual(user_id, body.model_dump())
    return success_response(receipt)


@router.get("/receipts")
async def list_receipts(
    category: str | None = None,
    merchant: str | None = None,
    currency: str | None = None,
    entry_type: str | None = Query(default=None, alias="type", description="scan | manual"),
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    min_amount: float | None = None,
    max_amount: float | None = None,
    sort_by: str | None = Query(default=None, description="<field>:<asc|desc>"),
    limit: int | None = Query(default=None, ge=1),
    user_id: int = Depends(get_current_user_id),
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    receipts = await services.receipts.list_receipts(
        user_id,
        category=category,
        merchant=merchant,
        currency=currency,
        entry_type=entry_type,
        start_date=start_date,
        end_date=end_date,
        min_amount=min_amount,
        max_amount=max_amount,
        sort_by=sort_by,
        limit=limit,
    )
    return success_response({"receipts": receipts, "count": len(receipts)})


@router.get("/receipts/currency-stats")
async def receipt_currency_stats(
    user_id: int = Depends(get_current_user_id),
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    return success_response(await services.receipts.currency_stats(user_id))


@router.get("/receipts/analytics")
async def receipt_analytics(
    user_id: int = Depends(get_current_user_id),
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    return success_response(await services.receipts.receipt_analytics(user_id))


@router.get("/receipts/{receipt_id}")
async def get_receipt(
    receipt_id: int,
    user_id: int = Depends(get_current_user_id),
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    return success_response(await services.receipts.get_receipt(user_id, receipt_id))


@router.patch("/receipts/{receipt_id}/currency")
async def update_receipt_currency(
    receipt_id: int,
    body: CurrencyUpdateRequest,
    user_id: int = Depends(get_current_user_id),
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    receipt = await services.receipts.update_currency(user_id, receipt_id, body.currency)
    return success_response(receipt)


@router.delete("/receipts/{receipt_id}")
async def delete_receipt(
    receipt_id: int,
    user_id: int = Depends(get_current_user_id),
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    result = await services.receipts.delete_receipt(
        user_id, receipt_id, remove_file=services.file_store.remove_file
    )
    return success_response(result)


@router.delete("/receipts")
async def delete_all_receipts(
    confirm: bool = False,
    user_id: int = Depends(get_current_user_id),
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    """Delete every receipt of the caller; requires ``?confirm=true``."""
    if not confirm:
        raise ValidationError("Deleting all receipts requires confirm=true")
    result = await services.receipts.delete_all_receipts(
        user_id, remove_file=services.file_store.remove_file
    )
    return success_response(result)


# =============================================================================
# Insights
# =============================================================================


@router.post("/insights/receipts/{receipt_id}")
async def request_receipt_insights(
    receipt_id: int,
    user_id: int = Depends(get_current_user_id),
    services: AppServices = Depends(get_services),
) -> JSONResponse:
    """
    Ask for a receipt's insights.

    200 with the insights when processing already completed, otherwise 202
    while the background job runs.
    """
    result = await services.orchestrator.request_insights(user_id, receipt_id)
    status_code = status.HTTP_200_OK if result["status"] == "completed" else status.HTTP_202_ACCEPTED
    return JSONResponse(status_code=status_code, content=success_response(result))


@router.get("/insights/receipts/{receipt_id}")
async def get_receipt_insights(
    receipt_id: int,
    user_id: int = Depends(get_current_user_id),
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    return success_response(await services.orchestrator.get_receipt_insights(user_id, receipt_id))


@router.get("/insights")
async def list_insights(
    limit: int = 20,
    offset: int = 0,
    user_id: int = Depends(get_current_user_id),
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    result = await services.orchestrator.list_user_insights(user_id, limit=limit, offset=offset)
    return success_response(result)


# =============================================================================
# Budget
# =============================================================================


@router.get("/budget")
async def get_budget(
    user_id: int = Depends(get_current_user_id),
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    return success_response(await services.ledger.get_or_create_config(user_id))


@router.put("/budget")
async def update_budget(
    body: BudgetUpdateRequest,
    user_id: int = Depends(get_current_user_id),
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    config = await services.ledger.update_config(
        user_id,
        [entry.model_dump() for entry in body.budgets],
        notifications_enabled=body.notifications_enabled,
    )
    return success_response(config)


@router.delete("/budget/categories/{category}")
async def delete_budget_category(
    category: str,
    user_id: int = Depends(get_current_user_id),
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    return success_response(await services.ledger.delete_category(user_id, category))


@router.get("/budget/analytics")
async def budget_analytics(
    user_id: int = Depends(get_current_user_id),
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    return success_response(await services.ledger.get_analytics(user_id))


@router.post("/budget/reset")
async def reset_budget(
    user_id: int = Depends(get_current_user_id),
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    """Zero every category counter and re-arm the threshold alerts."""
    return success_response(await services.ledger.reset_spending(user_id))


# =============================================================================
# Digests
# =============================================================================


@router.get("/digests")
async def list_digests(
    limit: int = Query(default=10, ge=1, le=52),
    user_id: int = Depends(get_current_user_id),
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    digests = await services.digest.list_digests(user_id, limit=limit)
    return success_response({"digests": digests})


@router.post("/digests/generate", status_code=status.HTTP_201_CREATED)
async def generate_digest(
    user_id: int = Depends(get_current_user_id),
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    return success_response(await services.digest.generate_for_user(user_id))


@router.get("/digests/{digest_id}")
async def get_digest(
    digest_id: int,
    user_id: int = Depends(get_current_user_id),
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    return success_response(await services.digest.get_digest(user_id, digest_id))


# =============================================================================
# Prices
# =============================================================================


@router.get("/prices/history")
async def price_history(
    item_name: str,
    merchant: str | None = None,
    user_id: int = Depends(get_current_user_id),
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    return success_response(
        await services.prices.get_price_history(user_id, item_name, merchant=merchant)
    )


@router.get("/prices/market")
async def market_comparison(
    item_name: str,
    price: float = Query(..., gt=0),
    user_id: int = Depends(get_current_user_id),
) -> dict[str, Any]:
    """Compare a paid price with the reference table (null when unknown)."""
    comparison = compare_to_market(item_name, price)
    return success_response({
        "item_name": item_name,
        "price": price,
        "comparison": asdict(comparison) if comparison else None,
    })


@router.post("/prices/compare", status_code=status.HTTP_201_CREATED)
async def record_price(
    body: PriceRecordRequest,
    user_id: int = Depends(get_current_user_id),
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    """Store a price observation and report how it compares to recent history."""
    result = await services.prices.record_price(
        user_id,
        body.item_name,
        body.price,
        body.merchant,
        body.category,
        currency=body.currency,
    )
    return success_response({
        "entry": result.entry,
        "stats": result.stats.to_dict() if result.stats else None,
        "is_good_deal": result.is_good_deal,
    })


@router.get("/prices/trends/{category}")
async def category_trends(
    category: str,
    user_id: int = Depends(get_current_user_id),
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    return success_response(await services.prices.get_category_trends(user_id, category))


@router.get("/prices/best/{category}")
async def best_prices(
    category: str,
    user_id: int = Depends(get_current_user_id),
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    return success_response({"items": await services.prices.get_best_prices(user_id, category)})


__all__ = ["router"]
