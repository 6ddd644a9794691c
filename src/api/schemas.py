"""
Pydantic Schemas for the Receipt Insights REST API.

Request bodies are validated here; services validate again before they
mutate anything. Successful responses use the ``{"success": true, "data": ...}``
envelope and errors use ``{"success": false, "error": {...}}``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from src.lib.errors import build_error_response

# =============================================================================
# Envelope
# =============================================================================


def success_response(data: Any) -> dict[str, Any]:
    return {"success": True, "data": data}


def error_response(
    code: str, message: str | None = None, details: dict[str, Any] | None = None
) -> dict[str, Any]:
    return {"success": False, "error": build_error_response(code, message, details)}


# =============================================================================
# Common Schemas
# =============================================================================


class APIError(BaseModel):
    """Standard API error body."""

    code: str
    message: str
    details: dict[str, Any] | None = None


class HealthCheckResponse(BaseModel):
    """Health check response."""

    status: str
    database: bool
    queue_depth: int
    timestamp: datetime


# =============================================================================
# Receipt Schemas
# =============================================================================


class ManualItem(BaseModel):
    """One line item of a manually entered receipt."""

    name: str = Field(..., min_length=1, max_length=255)
    price: float = Field(..., ge=0)
    quantity: float = Field(default=1, gt=0)


class ManualReceiptRequest(BaseModel):
    """Validated input for a manual receipt."""

    merchant: str = Field(..., min_length=1, max_length=255)
    total_amount: float = Field(..., ge=0)
    date: datetime | None = None
    category: str | None = Field(default=None, max_length=100)
    items: list[ManualItem] = Field(default_factory=list)
    tax_amount: float = Field(default=0.0, ge=0)
    payment_method: str | None = Field(default=None, max_length=50)
    currency: str | None = Field(default=None, max_length=10)
    notes: str | None = Field(default=None, max_length=2000)


class CurrencyUpdateRequest(BaseModel):
    """Manual currency correction."""

    currency: str = Field(..., min_length=1, max_length=10)


# =============================================================================
# Budget Schemas
# =============================================================================


class CategoryBudgetIn(BaseModel):
    category: str = Field(..., min_length=1, max_length=100)
    monthly_limit: float = Field(..., ge=0)

    @field_validator("category")
    @classmethod
    def strip_category(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("category must not be blank")
        return stripped


class BudgetUpdateRequest(BaseModel):
    """Upsert of category limits and the notifications flag."""

    budgets: list[CategoryBudgetIn] = Field(default_factory=list)
    notifications_enabled: bool | None = None


# =============================================================================
# Price Schemas
# =============================================================================


class PriceRecordRequest(BaseModel):
    """A price observation to compare and store."""

    item_name: str = Field(..., min_length=1, max_length=255)
    price: float = Field(..., gt=0)
    merchant: str = Field(..., min_length=1, max_length=255)
    category: str = Field(default="other", max_length=100)
    currency: str = Field(default="USD", max_length=10)


__all__ = [
    "APIError",
    "BudgetUpdateRequest",
    "CategoryBudgetIn",
    "CurrencyUpdateRequest",
    "HealthCheckResponse",
    "ManualItem",
    "ManualReceiptRequest",
    "PriceRecordRequest",
    "error_response",
    "success_response",
]
