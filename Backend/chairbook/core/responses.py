"""
Standardized API Response Module

Provides consistent error formatting across all API endpoints. Successful
responses are the endpoint's response model as-is.

ERROR FORMAT:
    {
        "error": {
            "code": "ERROR_CODE",
            "message": "Human-readable message",
            "details": {...}  # Optional extra context
        },
        "status": "error"
    }

Codes without an entry in STATUS_BY_CODE map to 500.
"""

from typing import Any, Optional

from pydantic import BaseModel


class ErrorDetail(BaseModel):
    """Structured error information."""
    code: str
    message: str
    details: Optional[dict[str, Any]] = None


# ============================================================================
# COMMON ERROR CODES
# ============================================================================

class ErrorCodes:
    """Standard error codes for API responses."""

    # Not found errors (404)
    NOT_FOUND = "NOT_FOUND"

    # Payment errors (402)
    PAYMENT_ERROR = "PAYMENT_ERROR"

    # Validation errors (422)
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # Conflict errors (409)
    POLICY_VIOLATION = "POLICY_VIOLATION"
    SLOT_UNAVAILABLE = "SLOT_UNAVAILABLE"

    # Server errors (5xx)
    INFRASTRUCTURE_ERROR = "INFRASTRUCTURE_ERROR"


STATUS_BY_CODE: dict[str, int] = {
    ErrorCodes.NOT_FOUND: 404,
    ErrorCodes.PAYMENT_ERROR: 402,
    ErrorCodes.VALIDATION_ERROR: 422,
    ErrorCodes.POLICY_VIOLATION: 409,
    ErrorCodes.SLOT_UNAVAILABLE: 409,
    ErrorCodes.INFRASTRUCTURE_ERROR: 503,
}


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def error_response(
    code: str,
    message: str,
    details: Optional[dict] = None,
) -> dict:
    """Create a standardized error response dict."""
    error = ErrorDetail(code=code, message=message, details=details or None)
    return {
        "error": error.model_dump(exclude_none=True),
        "status": "error",
    }


def status_for_code(code: str) -> int:
    return STATUS_BY_CODE.get(code, 500)
