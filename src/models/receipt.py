"""
Receipt Model for Receipt Insights.

A receipt is stored as one row with its purchased items embedded as an
ordered JSON list. Each item dict carries:

    name, price, quantity (default 1), category, is_recurring,
    insight, market_price, savings

JSON columns are not mutation-tracked: callers replace ``items`` with a new
list instead of editing it in place.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Index, Integer, String, Text

from src.models.base import Base


class InsightProcessingStatus(StrEnum):
    """Per-receipt insight pipeline state."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


DEFAULT_CURRENCY = "USD"


class Receipt(Base):
    """
    Uploaded or manually entered receipt.

    Attributes:
        id: Primary key
        user_id: Owner
        file_name: Stored upload name (None for manual entries)
        merchant: Merchant name as printed
        date: Purchase date
        category: Receipt-level category hint
        items: Ordered list of item dicts
        tax_amount / subtotal_amount / total_amount: Amounts in ``currency``
        currency: ISO 4217 code
        currency_evidence: Human-readable reason for the currency
        currency_confidence: 0..1
        insight_processing_status: pending | processing | completed | failed
        has_processed_insights: True once the pipeline completed
        processing_started_at: When the receipt last entered ``processing``
    """

    __tablename__ = "receipts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    file_name = Column(String(255), nullable=True)

    merchant = Column(String(255), nullable=True)
    date = Column(DateTime(timezone=True), nullable=True)
    category = Column(String(50), nullable=True)
    items = Column(JSON, nullable=False, default=list)
    tax_amount = Column(Float, nullable=False, default=0.0)
    subtotal_amount = Column(Float, nullable=False, default=0.0)
    total_amount = Column(Float, nullable=False, default=0.0)
    payment_method = Column(String(50), nullable=True)

    currency = Column(String(3), nullable=False, default=DEFAULT_CURRENCY)
    currency_evidence = Column(Text, nullable=True)
    currency_confidence = Column(Float, nullable=False, default=0.0)

    notes = Column(Text, nullable=True)

    insight_processing_status = Column(
        String(20), nullable=False, default=InsightProcessingStatus.PENDING.value
    )
    has_processed_insights = Column(Boolean, nullable=False, default=False)
    processing_started_at = Column(DateTime(timezone=True), nullable=True)
    is_manual_entry = Column(Boolean, nullable=False, default=False)

    uploaded_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )

    __table_args__ = (
        Index("idx_receipt_user_uploaded", "user_id", "uploaded_at"),
        Index("idx_receipt_user_date", "user_id", "date"),
    )

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API responses and cached insight results."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "file_name": self.file_name,
            "merchant": self.merchant,
            "date": self.date.isoformat() if self.date else None,
            "category": self.category,
            "items": [dict(item) for item in (self.items or [])],
            "tax_amount": self.tax_amount,
            "subtotal_amount": self.subtotal_amount,
            "total_amount": self.total_amount,
            "payment_method": self.payment_method,
            "currency": self.currency,
            "currency_evidence": self.currency_evidence,
            "currency_confidence": self.currency_confidence,
            "notes": self.notes,
            "insight_processing_status": self.insight_processing_status,
            "has_processed_insights": self.has_processed_insights,
            "processing_started_at": (
                self.processing_started_at.isoformat() if self.processing_started_at else None
            ),
            "is_manual_entry": self.is_manual_entry,
            "uploaded_at": self.uploaded_at.isoformat() if self.uploaded_at else None,
        }

    def __repr__(self) -> str:
        return (
            f"<Receipt(id={self.id}, user_id={self.user_id}, "
            f"status={self.insight_processing_status})>"
        )
