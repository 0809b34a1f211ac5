"""
Shutterbook Notifications — Notification SQLAlchemy Model
===========================================================

What:  ORM model representing the `notifications` table.
Why:   Every domain event a user should hear about (booking accepted, payment
       received, work completed...) becomes one row here.
How:   Inherits from DeclarativeBase; Alembic reads this for migrations. Row
       mutations are what the change feed observes and forwards to streams.
Who:   Written by the dispatch helpers and the notification store; observed
       (never written) by stream sessions.

Invariants (enforced by NotificationStore, not by the database):
    - user_id is immutable after creation.
    - read_at is set if and only if is_read has ever been true; once set it
      is never cleared, not even when the notification is marked unread.
    - Only the owning user may mutate is_read/read_at.

Index on (user_id, created_at DESC):
    Serves the dominant query "this user's notifications, newest first" and
    the unread counters that filter on user_id.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from shutterbook.database import Base


class NotificationType(str, enum.Enum):
    """Categories of notification a dispatch helper can produce."""

    BOOKING_CREATED = "BOOKING_CREATED"
    BOOKING_ASSIGNED = "BOOKING_ASSIGNED"
    PHOTOGRAPHER_ACCEPTED = "PHOTOGRAPHER_ACCEPTED"
    STATUS_CHANGE = "STATUS_CHANGE"
    NEW_MESSAGE = "NEW_MESSAGE"
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
    BOOKING_COMPLETED = "BOOKING_COMPLETED"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Notification(Base):
    """
    A single notification addressed to one user.

    Lifecycle:
        1. Created by a dispatch helper (is_read = False, read_at = NULL)
        2. Marked read by its owner (is_read = True, read_at = first read time)
        3. Optionally toggled back to unread (read_at kept)
        4. Optionally deleted by its owner
    """

    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        comment="Owner of the notification; immutable",
    )

    # Bookings live in the marketplace schema; kept as a plain reference so
    # the notification service does not depend on that table's shape
    booking_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        nullable=True,
        index=True,
    )

    type: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    action_url: Mapped[str | None] = mapped_column(String(512), nullable=True)

    is_read: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    # Set once, on the first transition to read
    read_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        default=None,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    __table_args__ = (
        Index("idx_notifications_user_created_at", "user_id", created_at.desc()),
    )

    def __repr__(self) -> str:
        return (
            f"<Notification(id={self.id}, user_id={self.user_id}, "
            f"type='{self.type}', is_read={self.is_read})>"
        )
