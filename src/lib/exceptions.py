"""
Custom exception hierarchy for Receipt Insights.

Provides structured exception types for all subsystems:
- Configuration and persistence
- External services (LLM, extraction, rate limiting)
- Client-visible conditions (not found, validation)
- Receipt processing state

All exceptions inherit from ReceiptInsightsError, enabling a catch-all
for application errors while keeping the ability to catch specific types.
"""

from __future__ import annotations


class ReceiptInsightsError(Exception):
    """Base exception for all Receipt Insights errors."""


class ConfigurationError(ReceiptInsightsError):
    """Missing environment variables, invalid config values, or startup failures."""


class NotFoundError(ReceiptInsightsError):
    """A requested receipt, budget configuration or digest does not exist."""

    def __init__(self, resource: str, identifier: object | None = None) -> None:
        self.resource = resource
        self.identifier = identifier
        if identifier is None:
            message = f"{resource} not found"
        else:
            message = f"{resource} {identifier!r} not found"
        super().__init__(message)


class ValidationError(ReceiptInsightsError):
    """Input rejected before any state mutation (bad category, limit, currency)."""


class ExternalServiceError(ReceiptInsightsError):
    """External API call failures (LLM chat, vision extraction)."""


class RateLimitExceededError(ExternalServiceError):
    """The local request budget for an external service is exhausted."""

    def __init__(self, service: str, retry_after: float = 0.0) -> None:
        self.service = service
        self.retry_after = retry_after
        super().__init__(
            f"Rate limit for '{service}' exceeded. Retry after {retry_after:.1f}s."
        )


class MalformedResponseError(ExternalServiceError):
    """An external service answered, but not in the expected shape."""


class DatabaseError(ReceiptInsightsError):
    """Database connection, query, or persistence failures."""


class ConcurrencyConflictError(DatabaseError):
    """Optimistic-concurrency retries exhausted for a read-modify-write."""


class StateError(ReceiptInsightsError):
    """Invalid state transitions, missing required state."""
