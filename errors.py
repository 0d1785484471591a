"""
Error Taxonomy
==============
Typed failures raised by the order core and mapped to HTTP responses
by main.py.

Every error carries a stable error code, a user-facing message and the
HTTP status it maps to. Detail for SYSTEM_ERROR is only exposed in
development mode.
"""

from typing import Any, Dict, List, Optional


# ============================================================================
# ERROR CODES
# ============================================================================

class ErrorCode:
    """Stable error codes returned to API clients."""
    # Authentication (401)
    NO_TOKEN = "NO_TOKEN"
    INVALID_TOKEN_FORMAT = "INVALID_TOKEN_FORMAT"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    INVALID_TOKEN = "INVALID_TOKEN"

    # Authorization (403)
    INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"

    # Validation (400)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_STATUS = "INVALID_STATUS"

    # Resources (404)
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"

    # System (500)
    SYSTEM_ERROR = "SYSTEM_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"


ERROR_MESSAGES = {
    ErrorCode.NO_TOKEN: "Access denied. Authentication token is required.",
    ErrorCode.INVALID_TOKEN_FORMAT: "Access denied. Invalid token format.",
    ErrorCode.TOKEN_EXPIRED: "Access denied. Token has expired.",
    ErrorCode.INVALID_TOKEN: "Access denied. Invalid token.",
    ErrorCode.INSUFFICIENT_PERMISSIONS: "Access denied. Insufficient permissions.",
    ErrorCode.VALIDATION_ERROR: "Validation failed. Please check your input.",
    ErrorCode.INVALID_STATUS: "Shipping status must be one of: pending, shipped, delivered",
    ErrorCode.RESOURCE_NOT_FOUND: "Requested resource not found.",
    ErrorCode.SYSTEM_ERROR: "Internal server error. Please try again later.",
    ErrorCode.DATABASE_ERROR: "Internal server error. Please try again later.",
}


# ============================================================================
# EXCEPTIONS
# ============================================================================

class OrderServiceError(Exception):
    """Base class for all typed failures of the order service."""

    status_code = 500
    default_code = ErrorCode.SYSTEM_ERROR

    def __init__(
        self,
        message: Optional[str] = None,
        code: Optional[str] = None,
        details: Optional[List[Dict[str, Any]]] = None
    ):
        self.code = code or self.default_code
        self.message = message or ERROR_MESSAGES.get(self.code, "An error occurred")
        self.details = details or []
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "success": False,
            "message": self.message,
            "errorCode": self.code,
            "statusCode": self.status_code,
        }
        if self.details:
            payload["errors"] = self.details
        return payload


class ValidationError(OrderServiceError):
    """Malformed or out-of-range input."""
    status_code = 400
    default_code = ErrorCode.VALIDATION_ERROR


class InvalidStatusError(ValidationError):
    """Shipping status outside pending/shipped/delivered."""
    default_code = ErrorCode.INVALID_STATUS

    def __init__(self, status: Any):
        self.status = status
        super().__init__(
            details=[{"field": "status", "value": status,
                      "message": ERROR_MESSAGES[ErrorCode.INVALID_STATUS]}]
        )


class AuthenticationError(OrderServiceError):
    """Missing, malformed, expired or unverifiable credential."""
    status_code = 401
    default_code = ErrorCode.INVALID_TOKEN


class ForbiddenError(OrderServiceError):
    """Caller role is not allowed to perform the operation."""
    status_code = 403
    default_code = ErrorCode.INSUFFICIENT_PERMISSIONS

    def __init__(
        self,
        actor: Optional[str] = None,
        required_roles: Optional[List[str]] = None,
        actual_role: Optional[str] = None
    ):
        self.actor = actor
        self.required_roles = required_roles or []
        self.actual_role = actual_role
        super().__init__()


class NotFoundError(OrderServiceError):
    """Unknown resource identifier."""
    status_code = 404
    default_code = ErrorCode.RESOURCE_NOT_FOUND

    def __init__(self, resource: str = "Resource", identifier: Optional[str] = None):
        self.resource = resource
        self.identifier = identifier
        super().__init__(message=f"{resource} not found")


class SystemFailureError(OrderServiceError):
    """Storage or transport failure; detail is redacted outside development."""
    status_code = 500
    default_code = ErrorCode.SYSTEM_ERROR

    def __init__(self, detail: str, code: Optional[str] = None):
        self.detail = detail
        super().__init__(code=code)

    def public_message(self, development: bool) -> str:
        if development:
            return f"System error: {self.detail}"
        return self.message
