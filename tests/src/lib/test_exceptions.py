"""
Tests for the exception hierarchy and the API error builder.

Verifies:
- All exceptions are subclasses of ReceiptInsightsError
- External failures share ExternalServiceError so callers can fall back
- NotFoundError / RateLimitExceededError messages
- build_error_response shape
"""

from __future__ import annotations

import pytest

from src.lib.errors import (
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

EXCEPTION_CLASSES = [
    ConfigurationError,
    NotFoundError,
    ValidationError,
    ExternalServiceError,
    RateLimitExceededError,
    MalformedResponseError,
    DatabaseError,
    ConcurrencyConflictError,
    StateError,
]


class TestExceptionHierarchy:
    """Test the exception class hierarchy."""

    @pytest.mark.parametrize("exc_class", EXCEPTION_CLASSES)
    def test_all_are_subclass_of_base(self, exc_class: type[ReceiptInsightsError]) -> None:
        """Every custom exception must be a subclass of ReceiptInsightsError."""
        assert issubclass(exc_class, ReceiptInsightsError)

    def test_external_failures_share_a_base(self) -> None:
        """Rate limits and malformed answers are both external failures."""
        assert issubclass(RateLimitExceededError, ExternalServiceError)
        assert issubclass(MalformedResponseError, ExternalServiceError)

    def test_concurrency_conflict_is_database_error(self) -> None:
        assert issubclass(ConcurrencyConflictError, DatabaseError)


class TestExceptionMessages:
    """Test exception attributes and messages."""

    def test_not_found_with_identifier(self) -> None:
        exc = NotFoundError("Receipt", 7)
        assert exc.resource == "Receipt"
        assert exc.identifier == 7
        assert str(exc) == "Receipt 7 not found"

    def test_not_found_without_identifier(self) -> None:
        assert str(NotFoundError("BudgetConfig")) == "BudgetConfig not found"

    def test_rate_limit_carries_retry_after(self) -> None:
        exc = RateLimitExceededError("llm", 12.5)
        assert exc.service == "llm"
        assert exc.retry_after == 12.5
        assert "12.5s" in str(exc)


class TestErrorResponse:
    """Test build_error_response()."""

    def test_default_message(self) -> None:
        error = build_error_response(NOT_FOUND)
        assert error == {"code": NOT_FOUND, "message": get_error_message(NOT_FOUND)}

    def test_override_message_and_details(self) -> None:
        error = build_error_response(VALIDATION_ERROR, "bad limit", {"field": "monthly_limit"})
        assert error["message"] == "bad limit"
        assert error["details"] == {"field": "monthly_limit"}

    def test_upstream_message(self) -> None:
        assert "external service" in get_error_message(UPSTREAM_ERROR)

    def test_unknown_code_gets_generic_message(self) -> None:
        assert get_error_message("NOPE") == "An error occurred."
