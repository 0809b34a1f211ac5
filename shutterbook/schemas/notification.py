"""
Shutterbook Notifications — Pydantic Request/Response Schemas
===============================================================

What:  Pydantic models defining the API contract between clients and backend.
Why:   Strict input validation, automatic serialization, and OpenAPI docs.
How:   Python attributes are snake_case; the wire format is camelCase
       (`userId`, `isRead`, `createdAt`...) through an alias generator, so the
       same model renders REST responses and stream frame payloads.
Who:   Route handlers (REST) and stream sessions (frame `data:` payloads).

`NotificationOut.model_validate` accepts both ORM objects and plain dicts.
The dict path matters for the change feed: Postgres delivers rows as JSON
(string UUIDs, ISO timestamps) and the ORM capture delivers Python values;
both validate into the same model.
"""

import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from shutterbook.models.notification import NotificationType


class CamelModel(BaseModel):
    """Base for every wire model: camelCase out, either case in."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# ══════════════════════════════════════════════════════════════════════════
# Response Models: what the API returns to clients
# ══════════════════════════════════════════════════════════════════════════


class NotificationOut(CamelModel):
    """
    What:  Full representation of a notification.
    Who:   REST responses and the `notification` / `notification-update`
           stream frames.
    """
    id: uuid.UUID = Field(description="Unique notification identifier")
    user_id: uuid.UUID = Field(description="Owner of the notification")
    booking_id: Optional[uuid.UUID] = Field(default=None, description="Related booking, if any")
    type: str = Field(description="Notification category")
    title: str = Field(description="Short headline")
    message: str = Field(description="Human-readable body")
    action_url: Optional[str] = Field(default=None, description="In-app link to follow")
    is_read: bool = Field(default=False, description="Whether the owner has read it")
    created_at: datetime = Field(description="Creation time (UTC)")
    read_at: Optional[datetime] = Field(default=None, description="First time it was read")
    updated_at: datetime = Field(description="Last modification time (UTC)")


class NotificationListResponse(CamelModel):
    """
    What:  Response of GET /api/notifications.
    Why counts:  The client renders a badge from unreadCount and a
                 "showing N of M" hint from totalCount without a second call.
    """
    notifications: List[NotificationOut] = Field(description="Newest first")
    unread_count: int = Field(description="Unread notifications of the user")
    total_count: int = Field(description="All notifications of the user")


class UnreadCountResponse(CamelModel):
    count: int = Field(description="Number of unread notifications")


class NotificationUpdateResponse(CamelModel):
    """Returned by the read / read-state endpoints."""
    success: bool = True
    message: str
    notification: NotificationOut


class MarkAllReadResponse(CamelModel):
    message: str = "All notifications marked as read"
    count: int = Field(description="Number of notifications that changed state")


class MessageResponse(CamelModel):
    success: bool = True
    message: str


# ══════════════════════════════════════════════════════════════════════════
# Request Models: what clients send
# ══════════════════════════════════════════════════════════════════════════


class NotificationCreate(CamelModel):
    """Body of the admin-only POST /api/notifications."""
    user_id: uuid.UUID
    booking_id: Optional[uuid.UUID] = None
    type: NotificationType
    title: str = Field(min_length=1, max_length=255)
    message: str = Field(min_length=1)
    action_url: Optional[str] = Field(default=None, max_length=512)


class ReadStateUpdate(CamelModel):
    """Body of PATCH /api/notifications/{id}. An empty body means "read"."""
    is_read: bool = True


class WorkCompletedRequest(CamelModel):
    """Body of POST /api/notifications/work-completed."""
    booking_id: uuid.UUID
    client_id: uuid.UUID
    photographer_name: str = Field(min_length=1)
    booking_reference: str = Field(min_length=1)


# ══════════════════════════════════════════════════════════════════════════
# Error / Health Models
# ══════════════════════════════════════════════════════════════════════════


class ErrorResponse(BaseModel):
    """
    What:  Standardized error response format for all API errors.

    Fields:
        error: Machine-readable error code (e.g., "forbidden", "not_found")
        message: Human-readable description for display to users
        details: Optional extra context
        request_id: Correlation ID for tracing this error in server logs
    """
    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error description")
    details: Optional[dict] = Field(default=None, description="Additional error context")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")


class HealthResponse(BaseModel):
    """Health check response showing service and dependency status."""
    status: str = Field(description="Overall service status: healthy, degraded, unhealthy")
    version: str = Field(description="Application version")
    database: str = Field(description="Database connectivity: connected, disconnected")
    change_feed: str = Field(description="Change feed state: listening, stopped")
    active_streams: int = Field(description="Open notification stream sessions")
    uptime_seconds: float = Field(description="Seconds since service started")
