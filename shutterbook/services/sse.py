"""
Shutterbook Notifications — Event Stream Frame Encoding
=========================================================

Every byte written to a notification stream is produced here.

    connected          data: {"type":"connected"}
    heartbeat          : heartbeat
    notification       event: notification / data: <notification JSON>
    update             event: notification-update / data: <notification JSON>
    delete             event: notification-delete / data: {"notificationId": "<id>"}

Frames are terminated by a blank line. Payloads are compact JSON with
camelCase keys, the same shape the REST endpoints return.
"""

import json
from typing import Any, Dict, Optional

from sse_starlette.sse import ServerSentEvent

from shutterbook.schemas.notification import NotificationOut

EVENT_NOTIFICATION = "notification"
EVENT_NOTIFICATION_UPDATE = "notification-update"
EVENT_NOTIFICATION_DELETE = "notification-delete"


def _json(payload: Any) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def encode_frame(data: str, event: Optional[str] = None) -> bytes:
    return ServerSentEvent(data=data, event=event, sep="\n").encode()


def connected_frame() -> bytes:
    return encode_frame(_json({"type": "connected"}))


def heartbeat_frame() -> bytes:
    return ServerSentEvent(comment="heartbeat", sep="\n").encode()


def notification_payload(row: Dict[str, Any]) -> str:
    """Serialize a notification row (ORM snapshot or trigger JSON) for the wire."""
    notification = NotificationOut.model_validate(row)
    return _json(notification.model_dump(mode="json", by_alias=True))


def notification_frame(row: Dict[str, Any]) -> bytes:
    return encode_frame(notification_payload(row), event=EVENT_NOTIFICATION)


def notification_update_frame(row: Dict[str, Any]) -> bytes:
    return encode_frame(notification_payload(row), event=EVENT_NOTIFICATION_UPDATE)


def notification_delete_frame(notification_id: Any) -> bytes:
    return encode_frame(
        _json({"notificationId": str(notification_id)}),
        event=EVENT_NOTIFICATION_DELETE,
    )
