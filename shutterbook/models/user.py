"""
Shutterbook Notifications — User SQLAlchemy Model
===================================================

What:  Read-only view of the `users` table owned by the marketplace.
Why:   Session tokens identify a user by email; the notification service
       resolves that email to a user id before opening a stream or touching
       notifications.
Who:   Used by the auth service (lookup) and by notifications (foreign key).

Account creation, passwords and email verification belong to the main
application. This service only reads id, email, name and role.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, String, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from shutterbook.database import Base


class UserRole:
    """Role values stored in `users.role`."""

    CLIENT = "CLIENT"
    PHOTOGRAPHER = "PHOTOGRAPHER"
    ADMIN = "ADMIN"


class User(Base):
    """A marketplace account: client, photographer or admin."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # Lookup key for session tokens (the token subject is the email)
    email: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
    )

    name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    role: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=UserRole.CLIENT,
        server_default=text("'CLIENT'"),
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email='{self.email}', role='{self.role}')>"
