"""
Services for Receipt Insights.

Insight pipeline:
    - CurrencyResolver (resolve_currency): currency + evidence + confidence
    - ItemCategorizer: LLM classification with keyword fallback
    - RecurrenceDetector: per-item check and daily batch detection
    - BudgetLedger: monthly per-category counters and threshold alerts
    - InsightOrchestrator: per-receipt state machine
    - DigestAggregator: weekly roll-up per user

Supporting services:
    - LLMClient, ReceiptExtractor, InsightWriter
    - JobQueue, NotificationService
    - ReceiptService, PriceTracker
"""

from .budget_ledger import AttributionResult, BudgetLedger, BudgetStatus, ThresholdAlert
from .categorizer import ItemCategorizer, SpendingCategory, categorize_by_keywords
from .currency import CurrencyResult, resolve_currency, standardize_currency_code
from .digest import DigestAggregator
from .extraction import ReceiptExtractor, normalize_extracted_receipt
from .insight_orchestrator import InsightOrchestrator
from .insight_writer import InsightWriter
from .job_queue import Job, JobQueue, JobType
from .llm_client import LLMClient
from .notifications import MessageSender, NotificationService, StructlogSender
from .price_tracker import MarketComparison, PriceTracker, compare_to_market
from .receipts import ReceiptService
from .recurrence import RecurrenceDetector, RecurringPurchase

__all__ = [
    "AttributionResult",
    "BudgetLedger",
    "BudgetStatus",
    "CurrencyResult",
    "DigestAggregator",
    "InsightOrchestrator",
    "InsightWriter",
    "ItemCategorizer",
    "Job",
    "JobQueue",
    "JobType",
    "LLMClient",
    "MarketComparison",
    "MessageSender",
    "NotificationService",
    "PriceTracker",
    "ReceiptExtractor",
    "ReceiptService",
    "RecurrenceDetector",
    "RecurringPurchase",
    "SpendingCategory",
    "StructlogSender",
    "ThresholdAlert",
    "categorize_by_keywords",
    "compare_to_market",
    "normalize_extracted_receipt",
    "resolve_currency",
    "standardize_currency_code",
]
