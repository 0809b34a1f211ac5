"""
Shutterbook Notifications — Notification Stream Route
=======================================================

What:  GET /api/notifications/stream, a long-lived `text/event-stream`
       response pushing the caller's notification changes as they happen.
Why:   Replaces client polling of unread-count with server push.
How:   Authenticate → open a StreamSession (subscribes to the change feed,
       queues the `connected` frame, starts heartbeats) → return a
       StreamingResponse draining the session's frames.
Who:   The frontend's EventSource in the notification bell.

Rejections (plain JSON error, no stream bytes sent):
    401  missing/invalid session
    404  session user not found
    503  change feed unavailable

Teardown:
    Client disconnect cancels the frames() generator, whose finally closes
    the session. The response background task closes it again (no-op) for
    the case where the response ends before the generator was ever started.
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from shutterbook.models.user import User
from shutterbook.schemas.notification import ErrorResponse
from shutterbook.services.auth_service import get_stream_user
from shutterbook.services.change_feed import ChangeFeed
from shutterbook.services.session_registry import SessionRegistry
from shutterbook.services.stream_session import StreamSession

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notifications", tags=["Notification Stream"])

STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def get_change_feed(request: Request) -> ChangeFeed:
    return request.app.state.change_feed


def get_session_registry(request: Request) -> SessionRegistry:
    return request.app.state.session_registry


@router.get(
    "/stream",
    response_class=StreamingResponse,
    responses={
        200: {"description": "Event stream", "content": {"text/event-stream": {}}},
        401: {"description": "No valid session", "model": ErrorResponse},
        404: {"description": "Session user not found", "model": ErrorResponse},
        503: {"description": "Real-time delivery unavailable", "model": ErrorResponse},
    },
    summary="Real-time notification stream",
)
async def notification_stream(
    request: Request,
    user: User = Depends(get_stream_user),
    feed: ChangeFeed = Depends(get_change_feed),
    registry: SessionRegistry = Depends(get_session_registry),
) -> StreamingResponse:
    session = StreamSession(user_id=user.id, feed=feed, registry=registry)
    # ChangeFeedError propagates from here as a 503, before any stream byte
    session.open()
    request.state.stream_session_id = session.session_id

    return StreamingResponse(
        session.frames(),
        media_type="text/event-stream",
        headers=STREAM_HEADERS,
        background=BackgroundTask(session.aclose),
    )
