"""
Shutterbook Notifications — Notification REST Routes
======================================================

What:  List, count, create, mark read, toggle and delete notifications.
Why:   The event stream carries no history; clients load and re-sync their
       notification list through these endpoints (on page load and after
       every stream reconnect).
How:   Thin handlers: authenticate, call notification_store / dispatch,
       shape the camelCase response. Commit happens in get_db_session after
       the handler returns, which is when open streams hear about the change.
Who:   The marketplace frontend (bell menu, notifications page).

All routes require a session (401 otherwise, 404 when the session's user no
longer exists).
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Body, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from shutterbook.database import get_db_session
from shutterbook.models.user import User
from shutterbook.schemas.notification import (
    ErrorResponse,
    MarkAllReadResponse,
    MessageResponse,
    NotificationCreate,
    NotificationListResponse,
    NotificationOut,
    NotificationUpdateResponse,
    ReadStateUpdate,
    UnreadCountResponse,
    WorkCompletedRequest,
)
from shutterbook.services import dispatch
from shutterbook.services.auth_service import get_current_user, require_admin
from shutterbook.services.notification_store import (
    DEFAULT_LIST_LIMIT,
    MAX_LIST_LIMIT,
    notification_store,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notifications", tags=["Notifications"])

_AUTH_ERRORS = {
    401: {"description": "No valid session", "model": ErrorResponse},
    404: {"description": "Session user or notification not found", "model": ErrorResponse},
}
_OWNER_ERRORS = {
    **_AUTH_ERRORS,
    403: {"description": "Notification belongs to another user", "model": ErrorResponse},
}


@router.get(
    "",
    response_model=NotificationListResponse,
    response_model_by_alias=True,
    responses=_AUTH_ERRORS,
    summary="List the current user's notifications",
)
async def list_notifications(
    response: Response,
    is_read: Optional[bool] = Query(default=None, alias="isRead", description="Filter on read state"),
    limit: int = Query(default=DEFAULT_LIST_LIMIT, ge=1, le=MAX_LIST_LIMIT),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> NotificationListResponse:
    """Newest first, with unread and total counters for the badge."""
    notifications = await notification_store.list_by_user(db, user.id, is_read=is_read, limit=limit)
    unread_count = await notification_store.count_unread(db, user.id)
    total_count = await notification_store.count_all(db, user.id)

    response.headers["Cache-Control"] = "no-store"
    return NotificationListResponse(
        notifications=[NotificationOut.model_validate(n) for n in notifications],
        unread_count=unread_count,
        total_count=total_count,
    )


@router.post(
    "",
    response_model=NotificationOut,
    response_model_by_alias=True,
    status_code=status.HTTP_201_CREATED,
    responses={
        **_AUTH_ERRORS,
        403: {"description": "Caller is not an administrator", "model": ErrorResponse},
    },
    summary="Create a notification manually (admin only)",
)
async def create_notification(
    payload: NotificationCreate,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
) -> NotificationOut:
    notification = await notification_store.insert(
        db,
        user_id=payload.user_id,
        notification_type=payload.type,
        title=payload.title,
        message=payload.message,
        booking_id=payload.booking_id,
        action_url=payload.action_url,
    )
    logger.info("Admin %s created notification %s for user %s", admin.id, notification.id, payload.user_id)
    return NotificationOut.model_validate(notification)


@router.get(
    "/unread-count",
    response_model=UnreadCountResponse,
    responses=_AUTH_ERRORS,
    summary="Count unread notifications",
)
async def unread_count(
    response: Response,
    booking_id: Optional[UUID] = Query(default=None, alias="bookingId", description="Only this booking"),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> UnreadCountResponse:
    count = await notification_store.count_unread(db, user.id, booking_id=booking_id)
    response.headers["Cache-Control"] = "no-store"
    return UnreadCountResponse(count=count)


@router.post(
    "/mark-all-read",
    response_model=MarkAllReadResponse,
    responses=_AUTH_ERRORS,
    summary="Mark every unread notification read",
)
async def mark_all_read(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> MarkAllReadResponse:
    count = await notification_store.mark_all_read(db, user.id)
    return MarkAllReadResponse(count=count)


@router.post(
    "/work-completed",
    response_model=MessageResponse,
    responses=_AUTH_ERRORS,
    summary="Tell the client their photographer finished the work",
)
async def work_completed(
    payload: WorkCompletedRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> MessageResponse:
    await dispatch.notify_client_work_completed(
        db,
        client_id=payload.client_id,
        booking_id=payload.booking_id,
        booking_ref=payload.booking_reference,
        photographer_name=payload.photographer_name,
    )
    logger.info("User %s reported work completed on booking %s", user.id, payload.booking_id)
    return MessageResponse(message="Work completion notification sent to client")


@router.patch(
    "/{notification_id}/read",
    response_model=NotificationUpdateResponse,
    response_model_by_alias=True,
    responses=_OWNER_ERRORS,
    summary="Mark one notification read",
)
async def mark_read(
    notification_id: UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> NotificationUpdateResponse:
    notification = await notification_store.mark_read(db, notification_id, user.id)
    return NotificationUpdateResponse(
        message="Notification marked as read",
        notification=NotificationOut.model_validate(notification),
    )


@router.patch(
    "/{notification_id}",
    response_model=NotificationUpdateResponse,
    response_model_by_alias=True,
    responses=_OWNER_ERRORS,
    summary="Set the read state of one notification",
)
async def update_read_state(
    notification_id: UUID,
    payload: Optional[ReadStateUpdate] = Body(default=None),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> NotificationUpdateResponse:
    """An empty body marks the notification read."""
    is_read = payload.is_read if payload is not None else True
    notification = await notification_store.set_read_state(db, notification_id, user.id, is_read=is_read)
    return NotificationUpdateResponse(
        message="Notification marked as read" if is_read else "Notification marked as unread",
        notification=NotificationOut.model_validate(notification),
    )


@router.delete(
    "/{notification_id}",
    response_model=MessageResponse,
    responses=_OWNER_ERRORS,
    summary="Delete one notification",
)
async def delete_notification(
    notification_id: UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> MessageResponse:
    await notification_store.delete(db, notification_id, user.id)
    return MessageResponse(message="Notification deleted successfully")
