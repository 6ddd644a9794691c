"""
Centralized Error Response Builder for Receipt Insights.

Provides consistent error codes and messages for the API layer. The
builder returns structured error dicts used in JSON error bodies.
"""

from __future__ import annotations

from typing import Any

# =============================================================================
# Error Code Constants
# =============================================================================

AUTH_REQUIRED = "AUTH_REQUIRED"
NOT_FOUND = "NOT_FOUND"
VALIDATION_ERROR = "VALIDATION_ERROR"
INTERNAL_ERROR = "INTERNAL_ERROR"
CONFLICT = "CONFLICT"
UPSTREAM_ERROR = "UPSTREAM_ERROR"

_ERROR_MESSAGES: dict[str, str] = {
    AUTH_REQUIRED: "Authentication is required.",
    NOT_FOUND: "The requested resource was not found.",
    VALIDATION_ERROR: "Invalid input. Please check your request.",
    INTERNAL_ERROR: "An internal error occurred. Please try again.",
    CONFLICT: "The resource was modified concurrently. Please retry.",
    UPSTREAM_ERROR: "An external service is unavailable. Please try again later.",
}


# =============================================================================
# Error Response Builder
# =============================================================================


def get_error_message(code: str) -> str:
    """Return the default message for an error code (generic if unknown)."""
    return _ERROR_MESSAGES.get(code, "An error occurred.")


def build_error_response(
    code: str,
    message: str | None = None,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Build a structured error response dict.

    Args:
        code: Error code constant (e.g. NOT_FOUND, VALIDATION_ERROR)
        message: Optional override message (defaults to the code's message)
        details: Optional additional error details

    Returns:
        Structured error dict: {"code": str, "message": str, "details": dict?}
    """
    error: dict[str, Any] = {
        "code": code,
        "message": message if message is not None else get_error_message(code),
    }
    if details is not None:
        error["details"] = details
    return error


__all__ = [
    "AUTH_REQUIRED",
    "NOT_FOUND",
    "VALIDATION_ERROR",
    "INTERNAL_ERROR",
    "CONFLICT",
    "UPSTREAM_ERROR",
    "get_error_message",
    "build_error_response",
]
