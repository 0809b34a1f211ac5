"""Create users and notifications tables

Revision ID: 001
Revises: None
Create Date: 2026-10-18 00:00:00.000000+00:00

What:  `users` (the subset of columns this service reads) and
       `notifications` with its owner index.
Rollback: downgrade() drops both tables (all notification data lost).
"""

from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column(
            "email",
            sa.String(255),
            nullable=False,
            comment="Session token subject",
        ),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column(
            "role",
            sa.String(32),
            nullable=False,
            server_default=sa.text("'CLIENT'"),
            comment="CLIENT, PHOTOGRAPHER or ADMIN",
        ),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "notifications",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            nullable=False,
            comment="Owner of the notification; immutable",
        ),
        sa.Column("booking_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column(
            "type",
            sa.String(50),
            nullable=False,
            comment="BOOKING_CREATED, BOOKING_ASSIGNED, PHOTOGRAPHER_ACCEPTED, "
                    "STATUS_CHANGE, NEW_MESSAGE, PAYMENT_RECEIVED, BOOKING_COMPLETED",
        ),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("action_url", sa.String(512), nullable=True),
        sa.Column(
            "is_read",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("false"),
        ),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.Column(
            "read_at",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="First time the notification was read; never cleared",
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    )

    # "this user's notifications, newest first" and the unread counters
    op.create_index(
        "idx_notifications_user_created_at",
        "notifications",
        ["user_id", sa.text("created_at DESC")],
    )
    op.create_index("ix_notifications_booking_id", "notifications", ["booking_id"])


def downgrade() -> None:
    op.drop_index("ix_notifications_booking_id", table_name="notifications")
    op.drop_index("idx_notifications_user_created_at", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
