"""
Structured error classes for book access and entitlement operations.

Every error carries a machine-readable code and the HTTP status the API
layer answers with. Services raise these; routes never build HTTPExceptions
for domain failures, the app-level handler translates them.
"""

from typing import Optional

from fastapi import status


class BookAccessError(Exception):
    """Base exception for entitlement errors."""

    code = "book_access_error"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, **details):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        payload = {"error": self.code, "detail": self.message}
        if self.details:
            payload["context"] = self.details
        return payload


class Unauthenticated(BookAccessError):
    code = "unauthenticated"
    http_status = status.HTTP_401_UNAUTHORIZED


class Forbidden(BookAccessError):
    code = "forbidden"
    http_status = status.HTTP_403_FORBIDDEN


class NotFound(BookAccessError):
    code = "not_found"
    http_status = status.HTTP_404_NOT_FOUND


class ValidationError(BookAccessError):
    code = "validation_error"
    http_status = status.HTTP_400_BAD_REQUEST


class EmptyScope(ValidationError):
    """Bulk grant scope resolved to zero users."""

    code = "empty_scope"

    MESSAGES = {
        "individual": "No users were selected",
        "school": "The school has no active users",
        "grade": "The grade has no students in its groups",
        "group": "The group has no members",
    }

    def __init__(self, scope_type: str, target_id: Optional[str] = None):
        self.scope_type = scope_type
        self.target_id = target_id
        super().__init__(
            self.MESSAGES.get(scope_type, "No users found for the selected scope"),
            scope_type=scope_type,
            target_id=target_id,
        )


class ConflictError(BookAccessError):
    code = "conflict"
    http_status = status.HTTP_409_CONFLICT


class CapacityExceeded(BookAccessError):
    """
    Raised when a grant would push a school's license pool past its total.

    The whole batch is rejected; no partial grants are made.
    """

    code = "capacity_exceeded"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, school_id: str, book_id: str, requested: int, remaining: int):
        self.school_id = school_id
        self.book_id = book_id
        self.requested = requested
        self.remaining = remaining
        super().__init__(
            f"License pool exhausted: {requested} new grants requested, "
            f"{remaining} seats remaining",
            school_id=school_id,
            book_id=book_id,
            requested=requested,
            remaining=remaining,
        )


class NotConfigured(BookAccessError):
    """A required secret or setting is missing; the server cannot answer yet."""

    code = "not_configured"
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE


class ExternalServiceError(BookAccessError):
    """Payment provider or content catalog unreachable or erroring."""

    code = "external_service_error"
    http_status = status.HTTP_502_BAD_GATEWAY

    def __init__(self, message: str, service: str, status_code: Optional[int] = None):
        self.service = service
        self.status_code = status_code
        super().__init__(message, service=service, status_code=status_code)


class IdempotentNoop(BookAccessError):
    """
    Recognized duplicate event. Not a failure.

    Used as a skipped_reason marker; never surfaces as an error response.
    """

    code = "idempotent_noop"
    http_status = status.HTTP_200_OK


class ReconciliationError(BookAccessError):
    """Webhook processing failed; the event must not be acknowledged."""

    code = "reconciliation_failed"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR
