"""
Shutterbook Notifications — Notification Store
================================================

What:  Persistence operations on `notifications`: insert, read-state changes,
       listing, counting and deletion.
Why:   Keeps every write in one place so the read/ownership invariants hold
       no matter which route or dispatch helper triggers it.
How:   Stateless service; each call receives the AsyncSession. Changes are
       flushed here and committed by the caller (get_db_session), which is
       the moment the change feed observes them.
Who:   Route handlers and dispatch helpers.

Invariants enforced here:
    - Ownership is checked BEFORE any attribute is touched, so a rejected
      call leaves the row exactly as it was.
    - read_at is set on the first transition to read and never cleared.
    - Rows are always mutated through the ORM (never bulk UPDATE/DELETE), so
      ORM change capture sees every change when the in-memory feed is used.

Error Mapping:
    missing row         → NotFoundError  (404)
    not the owner       → ForbiddenError (403)
    SQLAlchemy failure  → DatabaseError  (500), original error chained
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional, Union

from sqlalchemy import desc, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from shutterbook.exceptions import (
    DatabaseError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from shutterbook.models.notification import Notification, NotificationType

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 100


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NotificationStore:
    """
    Business logic layer for notification persistence.

    Responsibilities:
        - insert():         create one unread notification
        - get():            fetch by id (404 when missing)
        - mark_read():      owner marks one notification read
        - set_read_state(): owner toggles read / unread
        - mark_all_read():  owner marks every unread notification read
        - list_by_user():   newest first, optional is_read filter and limit
        - count_unread() / count_all()
        - delete():         owner removes one notification
    """

    async def insert(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        notification_type: Union[NotificationType, str],
        title: str,
        message: str,
        booking_id: Optional[uuid.UUID] = None,
        action_url: Optional[str] = None,
    ) -> Notification:
        """
        Persist a new unread notification.

        Returns:
            The flushed Notification (id assigned, not yet committed).

        Raises:
            ValidationError: unknown notification type
            DatabaseError:   the insert failed
        """
        try:
            kind = NotificationType(notification_type)
        except ValueError:
            raise ValidationError(
                message=f"Unknown notification type '{notification_type}'",
                field="notification_type",
            )

        now = _utcnow()
        notification = Notification(
            id=uuid.uuid4(),
            user_id=user_id,
            booking_id=booking_id,
            type=kind.value,
            title=title,
            message=message,
            action_url=action_url,
            is_read=False,
            read_at=None,
            created_at=now,
            updated_at=now,
        )

        try:
            db.add(notification)
            await db.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to insert %s notification for user %s: %s", kind.value, user_id, str(e))
            raise DatabaseError(
                message="Could not create the notification. Please try again.",
                context={"user_id": str(user_id), "error_type": type(e).__name__},
            ) from e

        logger.info(
            "Notification %s (%s) created for user %s",
            notification.id,
            kind.value,
            user_id,
        )
        return notification

    async def get(self, db: AsyncSession, notification_id: uuid.UUID) -> Notification:
        """
        Fetch one notification by primary key.

        Raises:
            NotFoundError: no such notification
            DatabaseError: query failed
        """
        try:
            result = await db.execute(
                select(Notification).where(Notification.id == notification_id)
            )
            notification = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Database error fetching notification %s: %s", notification_id, str(e))
            raise DatabaseError(
                message="Could not retrieve the notification. Please try again.",
                context={"notification_id": str(notification_id)},
            ) from e

        if notification is None:
            raise NotFoundError(resource="notification", resource_id=str(notification_id))
        return notification

    async def _get_owned(
        self,
        db: AsyncSession,
        notification_id: uuid.UUID,
        actor_user_id: uuid.UUID,
    ) -> Notification:
        notification = await self.get(db, notification_id)
        if notification.user_id != actor_user_id:
            logger.warning(
                "User %s attempted to modify notification %s owned by %s",
                actor_user_id,
                notification_id,
                notification.user_id,
            )
            raise ForbiddenError(
                message="You can only modify your own notifications",
                context={"notification_id": str(notification_id)},
            )
        return notification

    async def mark_read(
        self,
        db: AsyncSession,
        notification_id: uuid.UUID,
        actor_user_id: uuid.UUID,
    ) -> Notification:
        """Mark one notification read. read_at keeps its first value."""
        return await self.set_read_state(db, notification_id, actor_user_id, is_read=True)

    async def set_read_state(
        self,
        db: AsyncSession,
        notification_id: uuid.UUID,
        actor_user_id: uuid.UUID,
        is_read: bool,
    ) -> Notification:
        """
        Set is_read for the owner.

        Marking unread leaves read_at untouched: it records that the
        notification has been read at some point.

        Raises:
            NotFoundError, ForbiddenError, DatabaseError
        """
        notification = await self._get_owned(db, notification_id, actor_user_id)

        now = _utcnow()
        notification.is_read = is_read
        if is_read and notification.read_at is None:
            notification.read_at = now
        notification.updated_at = now

        await self._flush(db, "update notification", notification_id=str(notification_id))
        return notification

    async def mark_all_read(self, db: AsyncSession, user_id: uuid.UUID) -> int:
        """
        Mark every unread notification of `user_id` read.

        Returns:
            Number of notifications that changed state.
        """
        try:
            result = await db.execute(
                select(Notification).where(
                    Notification.user_id == user_id,
                    Notification.is_read.is_(False),
                )
            )
            unread = list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Database error loading unread notifications of %s: %s", user_id, str(e))
            raise DatabaseError(
                message="Could not update notifications. Please try again.",
                context={"user_id": str(user_id)},
            ) from e

        now = _utcnow()
        for notification in unread:
            notification.is_read = True
            if notification.read_at is None:
                notification.read_at = now
            notification.updated_at = now

        if unread:
            await self._flush(db, "mark all notifications read", user_id=str(user_id))
        logger.info("Marked %d notification(s) read for user %s", len(unread), user_id)
        return len(unread)

    async def list_by_user(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        is_read: Optional[bool] = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> List[Notification]:
        """
        Notifications of one user, newest first.

        Query plan:
            SELECT * FROM notifications WHERE user_id = :uid [AND is_read = :r]
            ORDER BY created_at DESC LIMIT :limit
            → idx_notifications_user_created_at
        """
        limit = max(1, min(limit, MAX_LIST_LIMIT))
        query = select(Notification).where(Notification.user_id == user_id)
        if is_read is not None:
            query = query.where(Notification.is_read.is_(is_read))
        query = query.order_by(desc(Notification.created_at), desc(Notification.id)).limit(limit)

        try:
            result = await db.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Database error listing notifications of %s: %s", user_id, str(e), exc_info=True)
            raise DatabaseError(
                message="Could not retrieve notifications. Please try again.",
                context={"user_id": str(user_id)},
            ) from e

    async def count_unread(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        booking_id: Optional[uuid.UUID] = None,
    ) -> int:
        query = select(func.count(Notification.id)).where(
            Notification.user_id == user_id,
            Notification.is_read.is_(False),
        )
        if booking_id is not None:
            query = query.where(Notification.booking_id == booking_id)
        return await self._scalar_count(db, query, user_id)

    async def count_all(self, db: AsyncSession, user_id: uuid.UUID) -> int:
        query = select(func.count(Notification.id)).where(Notification.user_id == user_id)
        return await self._scalar_count(db, query, user_id)

    async def delete(
        self,
        db: AsyncSession,
        notification_id: uuid.UUID,
        actor_user_id: uuid.UUID,
    ) -> None:
        """Delete a notification owned by `actor_user_id`."""
        notification = await self._get_owned(db, notification_id, actor_user_id)
        try:
            await db.delete(notification)
        except SQLAlchemyError as e:
            raise DatabaseError(
                message="Could not delete the notification. Please try again.",
                context={"notification_id": str(notification_id)},
            ) from e
        await self._flush(db, "delete notification", notification_id=str(notification_id))
        logger.info("Notification %s deleted by user %s", notification_id, actor_user_id)

    # ── Helpers ───────────────────────────────────────────────────────────

    async def _scalar_count(self, db: AsyncSession, query, user_id: uuid.UUID) -> int:
        try:
            result = await db.execute(query)
            return int(result.scalar() or 0)
        except SQLAlchemyError as e:
            logger.error("Database error counting notifications of %s: %s", user_id, str(e))
            raise DatabaseError(
                message="Could not count notifications. Please try again.",
                context={"user_id": str(user_id)},
            ) from e

    async def _flush(self, db: AsyncSession, action: str, **context) -> None:
        try:
            await db.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to %s: %s", action, str(e))
            raise DatabaseError(
                message=f"Could not {action}. Please try again.",
                context={**context, "error_type": type(e).__name__},
            ) from e


# ── Singleton Instance ────────────────────────────────────────────────────
notification_store = NotificationStore()
