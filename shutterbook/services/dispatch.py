"""
Shutterbook Notifications — Dispatch Helpers
==============================================

What:  One function per (domain event, recipient) that builds and persists
       exactly one Notification row.
Why:   Producers (booking flow, payments, messaging) describe WHAT happened;
       the wording, type and action link of the notification live here.
How:   Each helper renders its template and calls notification_store.insert().
       Delivery to open streams is not the helper's business: the change feed
       picks the row up once the caller commits.
Who:   Route handlers of the marketplace and POST /api/notifications/work-completed.

Failure Semantics:
    A storage failure surfaces as DatabaseError to the caller. Helpers never
    retry and never swallow errors.

Action URLs:
    client        /bookings/{booking_id}
    photographer  /dash/photographer/booking-details/{booking_id}
    messages      /messages?bookingId={booking_id}
"""

import uuid
from decimal import Decimal
from typing import Dict, Union

from sqlalchemy.ext.asyncio import AsyncSession

from shutterbook.exceptions import ValidationError
from shutterbook.models.notification import Notification, NotificationType
from shutterbook.models.user import UserRole
from shutterbook.services.notification_store import notification_store

MESSAGE_PREVIEW_LENGTH = 100


def client_booking_url(booking_id: uuid.UUID) -> str:
    return f"/bookings/{booking_id}"


def photographer_booking_url(booking_id: uuid.UUID) -> str:
    return f"/dash/photographer/booking-details/{booking_id}"


def booking_url_for_role(booking_id: uuid.UUID, role: str) -> str:
    if role == UserRole.PHOTOGRAPHER:
        return photographer_booking_url(booking_id)
    return client_booking_url(booking_id)


def _format_amount(amount: Union[Decimal, float, int]) -> str:
    return f"${Decimal(str(amount)):.2f}"


# ── Status-change templates ───────────────────────────────────────────────
# {ref} is the human-facing booking reference
STATUS_TEMPLATES: Dict[str, Dict[str, str]] = {
    "SHOOTING": {
        "title": "Photo Shoot in Progress",
        "message": "The photo shoot for booking {ref} is now in progress.",
    },
    "EDITING": {
        "title": "Photos Being Edited",
        "message": "Your photos from booking {ref} are now being edited.",
    },
    "COMPLETED": {
        "title": "Booking Completed",
        "message": "Booking {ref} has been completed. Your photos are ready!",
    },
    "PHOTOGRAPHER_ACCEPTED": {
        "title": "Photographer Accepted",
        "message": "The photographer has accepted booking {ref}.",
    },
}


async def notify_booking_created(
    db: AsyncSession,
    client_id: uuid.UUID,
    booking_id: uuid.UUID,
    booking_ref: str,
) -> Notification:
    return await notification_store.insert(
        db,
        user_id=client_id,
        booking_id=booking_id,
        notification_type=NotificationType.BOOKING_CREATED,
        title="Booking Created Successfully",
        message=f"Your booking {booking_ref} has been created and is awaiting photographer assignment.",
        action_url=client_booking_url(booking_id),
    )


async def notify_photographer_booking_assigned(
    db: AsyncSession,
    photographer_id: uuid.UUID,
    booking_id: uuid.UUID,
    booking_ref: str,
) -> Notification:
    return await notification_store.insert(
        db,
        user_id=photographer_id,
        booking_id=booking_id,
        notification_type=NotificationType.BOOKING_ASSIGNED,
        title="New Booking Assigned",
        message=f"You have been assigned to booking {booking_ref}. Please review and accept.",
        action_url=photographer_booking_url(booking_id),
    )


async def notify_client_photographer_assigned(
    db: AsyncSession,
    client_id: uuid.UUID,
    booking_id: uuid.UUID,
    booking_ref: str,
    photographer_name: str,
) -> Notification:
    return await notification_store.insert(
        db,
        user_id=client_id,
        booking_id=booking_id,
        notification_type=NotificationType.BOOKING_ASSIGNED,
        title="Photographer Assigned",
        message=f"{photographer_name} has been assigned to your booking {booking_ref}.",
        action_url=client_booking_url(booking_id),
    )


async def notify_photographer_accepted(
    db: AsyncSession,
    client_id: uuid.UUID,
    booking_id: uuid.UUID,
    booking_ref: str,
    photographer_name: str,
) -> Notification:
    return await notification_store.insert(
        db,
        user_id=client_id,
        booking_id=booking_id,
        notification_type=NotificationType.PHOTOGRAPHER_ACCEPTED,
        title="Photographer Accepted Booking",
        message=f"{photographer_name} has accepted your booking {booking_ref}.",
        action_url=client_booking_url(booking_id),
    )


async def notify_status_change(
    db: AsyncSession,
    user_id: uuid.UUID,
    booking_id: uuid.UUID,
    booking_ref: str,
    new_status: str,
    recipient_role: str,
) -> Notification:
    """
    Tell one participant that the booking moved to `new_status`.

    Raises:
        ValidationError: no template exists for `new_status`; nothing is
            written in that case.
    """
    template = STATUS_TEMPLATES.get(new_status)
    if template is None:
        raise ValidationError(
            message=f"No status-change notification exists for status '{new_status}'",
            field="new_status",
            context={"allowed": sorted(STATUS_TEMPLATES)},
        )

    return await notification_store.insert(
        db,
        user_id=user_id,
        booking_id=booking_id,
        notification_type=NotificationType.STATUS_CHANGE,
        title=template["title"],
        message=template["message"].format(ref=booking_ref),
        action_url=booking_url_for_role(booking_id, recipient_role),
    )


async def notify_client_payment_received(
    db: AsyncSession,
    client_id: uuid.UUID,
    booking_id: uuid.UUID,
    booking_ref: str,
    amount: Union[Decimal, float, int],
) -> Notification:
    return await notification_store.insert(
        db,
        user_id=client_id,
        booking_id=booking_id,
        notification_type=NotificationType.PAYMENT_RECEIVED,
        title="Payment Confirmed",
        message=f"Your payment of {_format_amount(amount)} for booking {booking_ref} has been received.",
        action_url=client_booking_url(booking_id),
    )


async def notify_photographer_payment_received(
    db: AsyncSession,
    photographer_id: uuid.UUID,
    booking_id: uuid.UUID,
    booking_ref: str,
    amount: Union[Decimal, float, int],
) -> Notification:
    return await notification_store.insert(
        db,
        user_id=photographer_id,
        booking_id=booking_id,
        notification_type=NotificationType.PAYMENT_RECEIVED,
        title="Booking Payment Received",
        message=f"Payment of {_format_amount(amount)} received for booking {booking_ref}.",
        action_url=photographer_booking_url(booking_id),
    )


async def notify_new_message(
    db: AsyncSession,
    receiver_id: uuid.UUID,
    booking_id: uuid.UUID,
    sender_name: str,
    content: str,
) -> Notification:
    """The body is a preview: long messages are cut at 100 characters."""
    preview = content
    if len(content) > MESSAGE_PREVIEW_LENGTH:
        preview = f"{content[:MESSAGE_PREVIEW_LENGTH]}..."

    return await notification_store.insert(
        db,
        user_id=receiver_id,
        booking_id=booking_id,
        notification_type=NotificationType.NEW_MESSAGE,
        title=f"New message from {sender_name}",
        message=preview,
        action_url=f"/messages?bookingId={booking_id}",
    )


async def notify_client_work_completed(
    db: AsyncSession,
    client_id: uuid.UUID,
    booking_id: uuid.UUID,
    booking_ref: str,
    photographer_name: str,
) -> Notification:
    return await notification_store.insert(
        db,
        user_id=client_id,
        booking_id=booking_id,
        notification_type=NotificationType.BOOKING_COMPLETED,
        title="Work Completed",
        message=f"{photographer_name} has completed the work for your booking {booking_ref}. Your photos are ready!",
        action_url=client_booking_url(booking_id),
    )
