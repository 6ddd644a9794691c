"""
Lib package for Receipt Insights.

Contains shared utilities:
- exceptions.py: Exception hierarchy
- errors.py: Error response builder for the API
- logging.py: structlog configuration
- security.py: hash_uid and the rolling-window rate limiter
- clock.py: UTC clock helpers
"""

from src.lib.clock import Clock, ensure_utc, month_key, start_of_month, utc_now
from src.lib.errors import (
    AUTH_REQUIRED,
    CONFLICT,
    INTERNAL_ERROR,
    NOT_FOUND,
    UPSTREAM_ERROR,
    VALIDATION_ERROR,
    build_error_response,
    get_error_message,
)
from src.lib.exceptions import (
    ConcurrencyConflictError,
    ConfigurationError,
    DatabaseError,
    ExternalServiceError,
    MalformedResponseError,
    NotFoundError,
    RateLimitExceededError,
    ReceiptInsightsError,
    StateError,
    ValidationError,
)
from src.lib.security import RollingWindowRateLimiter, hash_uid

__all__ = [
    # Clock
    "Clock",
    "ensure_utc",
    "month_key",
    "start_of_month",
    "utc_now",
    # Errors
    "AUTH_REQUIRED",
    "CONFLICT",
    "INTERNAL_ERROR",
    "NOT_FOUND",
    "UPSTREAM_ERROR",
    "VALIDATION_ERROR",
    "build_error_response",
    "get_error_message",
    # Exceptions
    "ConcurrencyConflictError",
    "ConfigurationError",
    "DatabaseError",
    "ExternalServiceError",
    "MalformedResponseError",
    "NotFoundError",
    "RateLimitExceededError",
    "ReceiptInsightsError",
    "StateError",
    "ValidationError",
    # Security
    "RollingWindowRateLimiter",
    "hash_uid",
]
