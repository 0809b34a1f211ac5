"""
Shutterbook Notifications — Custom Exception Hierarchy
========================================================

What:  Defines application-specific exceptions for different error scenarios.
Why:   Custom exceptions enable targeted error handling with appropriate HTTP
       status codes and user-friendly messages.
How:   Each exception class carries a message and optional context dict.
       Global exception handlers (registered in main.py) catch these and
       return structured JSON error responses with correct HTTP status codes.
Who:   Raised by services and dependencies; caught by global handlers.

Exception Hierarchy:
    ShutterbookError (base)
    ├── ValidationError          → 400 Bad Request (client can fix)
    ├── AuthenticationError      → 401 Unauthorized (no/invalid session)
    ├── ForbiddenError           → 403 Forbidden (not the owner)
    ├── NotFoundError            → 404 Not Found
    ├── RateLimitExceededError   → 429 Too Many Requests
    ├── DatabaseError            → 500 Internal Server Error
    └── ChangeFeedError          → 503 Service Unavailable (cannot subscribe)

Stream sessions never raise these to the transport: once the event stream is
open, failures are logged and the session either continues or closes itself.
Every error above is therefore surfaced BEFORE the first stream byte is sent.
"""

from typing import Any, Dict, Optional


class ShutterbookError(Exception):
    """
    Base exception for all Shutterbook application errors.

    Attributes:
        message:  User-facing error description (safe to return in API response)
        context:  Additional debug info (logged but NOT returned for 5xx errors)
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class ValidationError(ShutterbookError):
    """
    Raised when client input fails a business rule.

    When:    Unknown booking status for a status-change notification,
             missing fields on manual creation.
    HTTP:    400 Bad Request
    """

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field


class AuthenticationError(ShutterbookError):
    """
    Raised when the request carries no session or an invalid one.

    HTTP:    401 Unauthorized
    Stream:  The event stream is rejected before it opens.
    """

    def __init__(
        self,
        message: str = "Unauthorized. Please login first.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class ForbiddenError(ShutterbookError):
    """
    Raised when an authenticated user acts on a resource they do not own.

    When:    Marking, toggling or deleting another user's notification;
             non-admin manual creation.
    HTTP:    403 Forbidden
    Guarantee: raised before any mutation, so the row is left untouched.
    """

    def __init__(
        self,
        message: str = "You are not allowed to perform this action",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class NotFoundError(ShutterbookError):
    """
    Raised when a requested resource does not exist.

    When:    Unknown notification id, or a valid session whose user record
             no longer exists (lookup failure on stream open).
    HTTP:    404 Not Found
    """

    def __init__(
        self,
        resource: str = "resource",
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = f"The requested {resource} was not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' was not found"
        ctx = context or {}
        ctx["resource"] = resource
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message=message, context=ctx)


class DatabaseError(ShutterbookError):
    """
    Raised when database operations fail unexpectedly.

    HTTP:    500 Internal Server Error
    Dispatch helpers propagate this to their caller unchanged; there is no
    retry inside the helper.
    """

    def __init__(
        self,
        message: str = "A database error occurred. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class ChangeFeedError(ShutterbookError):
    """
    Raised when the change feed cannot accept a subscription.

    When:    The feed was never started, has been stopped, or its LISTEN
             connection could not be re-established.
    HTTP:    503 Service Unavailable (client should reconnect later)
    """

    def __init__(
        self,
        message: str = "Real-time notifications are temporarily unavailable",
        retry_after: int = 5,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after


class RateLimitExceededError(ShutterbookError):
    """
    Raised when a client exceeds the per-IP request rate limit.

    HTTP:    429 Too Many Requests
    """

    def __init__(
        self,
        retry_after: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"Rate limit exceeded. Please wait {retry_after} seconds before making more requests."
        )
        ctx = context or {}
        ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after
