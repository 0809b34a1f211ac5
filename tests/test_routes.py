"""
Shutterbook Notifications — API Route Tests
=============================================

Exercises the HTTP surface through HTTPX's ASGITransport against the
in-memory SQLite database.

What we test:
    ✅ Stream open: 401 without a session, 404 for an unknown user,
       503 when the change feed is down (no stream bytes in any case)
    ✅ Stream success: headers, `connected` first, committed inserts arrive,
       closing the response releases the session
    ✅ REST: list, unread count, mark read, read-state toggle, delete,
       mark all read, admin-only creation, work completed
    ✅ Ownership: another user's notification → 403, row unchanged
    ✅ Health: healthy / degraded / unhealthy
"""

import asyncio
import json
from unittest.mock import MagicMock
from uuid import uuid4

import pytest
from starlette.requests import Request

from shutterbook.routes.stream import notification_stream
from shutterbook.services import dispatch
from shutterbook.services.auth_service import create_session_token
from shutterbook.services.change_feed import InMemoryChangeFeed
from shutterbook.services.notification_store import notification_store
from shutterbook.services.sse import connected_frame


def auth(email: str) -> dict:
    return {"Authorization": f"Bearer {create_session_token(email)}"}


def stream_request() -> Request:
    return Request({"type": "http", "method": "GET", "path": "/api/notifications/stream", "headers": []})


async def seed(session_factory, user_id, count=1, **kwargs):
    created = []
    async with session_factory() as db:
        for i in range(count):
            created.append(await notification_store.insert(
                db,
                user_id=user_id,
                notification_type=kwargs.get("notification_type", "BOOKING_CREATED"),
                title=kwargs.get("title", f"Notification {i}"),
                message=kwargs.get("message", "Something happened"),
                booking_id=kwargs.get("booking_id"),
            ))
        await db.commit()
    return created


@pytest.fixture
def stream_db(monkeypatch, session_factory):
    """Point the stream route's own session at the test database."""
    monkeypatch.setattr("shutterbook.services.auth_service.async_session_factory", session_factory)


# ══════════════════════════════════════════════════════════════════════════
# Stream
# ══════════════════════════════════════════════════════════════════════════


class TestStreamRejections:

    @pytest.mark.asyncio
    async def test_no_session_is_401(self, test_client, stream_db, registry):
        response = await test_client.get("/api/notifications/stream")

        assert response.status_code == 401
        assert response.json()["error"] == "unauthorized"
        assert response.headers["content-type"].startswith("application/json")
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_invalid_token_is_401(self, test_client, stream_db):
        response = await test_client.get(
            "/api/notifications/stream", headers={"Authorization": "Bearer forged"}
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_user_is_404(self, test_client, stream_db, users, registry):
        response = await test_client.get(
            "/api/notifications/stream", headers=auth("ghost@example.com")
        )

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_feed_down_is_503(self, test_client, stream_db, users, registry):
        test_client.app.state.change_feed = InMemoryChangeFeed()

        response = await test_client.get(
            "/api/notifications/stream", headers=auth("client@example.com")
        )

        assert response.status_code == 503
        assert response.headers["retry-after"] == "5"
        assert response.json()["error"] == "service_unavailable"
        assert len(registry) == 0


class TestStreamDelivery:

    @pytest.mark.asyncio
    async def test_committed_insert_reaches_the_open_stream(
        self, session_factory, users, change_feed, orm_capture, registry
    ):
        request = stream_request()
        response = await notification_stream(
            request=request, user=users.client, feed=change_feed, registry=registry
        )
        body = response.body_iterator

        assert response.media_type == "text/event-stream"
        assert response.headers["cache-control"] == "no-cache, no-transform"
        assert response.headers["x-accel-buffering"] == "no"
        assert registry.active_count == 1
        assert registry.get(request.state.stream_session_id).user_id == users.client.id

        assert await asyncio.wait_for(body.__anext__(), 1) == connected_frame()

        [created] = await seed(session_factory, users.client.id, title="Payment Confirmed")
        await seed(session_factory, users.photographer.id)

        frame = await asyncio.wait_for(body.__anext__(), 1)
        assert frame.startswith(b"event: notification\n")
        data = json.loads(frame.decode().split("data: ", 1)[1])
        assert data["id"] == str(created.id)
        assert data["title"] == "Payment Confirmed"

        await response.background()

        assert len(registry) == 0
        assert change_feed.subscription_count == 0

    @pytest.mark.asyncio
    async def test_notification_written_while_offline_is_listed_not_replayed(
        self, test_client, session_factory, users, change_feed, orm_capture, registry
    ):
        async with session_factory() as db:
            created = await dispatch.notify_booking_created(db, users.client.id, uuid4(), "SB-0001")
            await db.commit()

        response = await notification_stream(
            request=stream_request(), user=users.client, feed=change_feed, registry=registry
        )
        body = response.body_iterator
        assert await asyncio.wait_for(body.__anext__(), 1) == connected_frame()

        listed = await test_client.get("/api/notifications", headers=auth("client@example.com"))
        [item] = listed.json()["notifications"]
        assert item["id"] == str(created.id)
        assert item["isRead"] is False

        # Nothing was queued for the earlier insert; waiting cancels the read
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(body.__anext__(), 0.1)
        await body.aclose()
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_read_state_change_is_pushed(
        self, test_client, session_factory, users, change_feed, orm_capture, registry
    ):
        [created] = await seed(session_factory, users.client.id)
        response = await notification_stream(
            request=stream_request(), user=users.client, feed=change_feed, registry=registry
        )
        body = response.body_iterator
        await asyncio.wait_for(body.__anext__(), 1)

        patched = await test_client.patch(
            f"/api/notifications/{created.id}/read", headers=auth("client@example.com")
        )
        assert patched.status_code == 200

        frame = await asyncio.wait_for(body.__anext__(), 1)
        assert frame.startswith(b"event: notification-update\n")
        assert json.loads(frame.decode().split("data: ", 1)[1])["isRead"] is True

        await body.aclose()
        assert len(registry) == 0


# ══════════════════════════════════════════════════════════════════════════
# REST
# ══════════════════════════════════════════════════════════════════════════


class TestListAndCount:

    @pytest.mark.asyncio
    async def test_requires_session(self, test_client):
        response = await test_client.get("/api/notifications")
        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Bearer"

    @pytest.mark.asyncio
    async def test_list_with_counters(self, test_client, session_factory, users):
        created = await seed(session_factory, users.client.id, count=3)
        await seed(session_factory, users.photographer.id)
        async with session_factory() as db:
            await notification_store.mark_read(db, created[0].id, users.client.id)
            await db.commit()

        response = await test_client.get("/api/notifications", headers=auth("client@example.com"))

        assert response.status_code == 200
        assert response.headers["cache-control"] == "no-store"
        body = response.json()
        assert body["unreadCount"] == 2
        assert body["totalCount"] == 3
        assert len(body["notifications"]) == 3
        assert {"id", "userId", "isRead", "createdAt", "actionUrl"} <= set(body["notifications"][0])

    @pytest.mark.asyncio
    async def test_list_filters(self, test_client, session_factory, users):
        created = await seed(session_factory, users.client.id, count=3)
        async with session_factory() as db:
            await notification_store.mark_read(db, created[1].id, users.client.id)
            await db.commit()

        unread = await test_client.get(
            "/api/notifications", params={"isRead": "false"}, headers=auth("client@example.com")
        )
        limited = await test_client.get(
            "/api/notifications", params={"limit": 1}, headers=auth("client@example.com")
        )
        invalid = await test_client.get(
            "/api/notifications", params={"limit": 0}, headers=auth("client@example.com")
        )

        assert all(n["isRead"] is False for n in unread.json()["notifications"])
        assert len(unread.json()["notifications"]) == 2
        assert len(limited.json()["notifications"]) == 1
        assert invalid.status_code == 422

    @pytest.mark.asyncio
    async def test_unread_count_by_booking(self, test_client, session_factory, users):
        booking_id = uuid4()
        await seed(session_factory, users.client.id, count=2, booking_id=booking_id)
        await seed(session_factory, users.client.id)

        everything = await test_client.get(
            "/api/notifications/unread-count", headers=auth("client@example.com")
        )
        one_booking = await test_client.get(
            "/api/notifications/unread-count",
            params={"bookingId": str(booking_id)},
            headers=auth("client@example.com"),
        )

        assert everything.json() == {"count": 3}
        assert one_booking.json() == {"count": 2}


class TestReadState:

    @pytest.mark.asyncio
    async def test_mark_read(self, test_client, session_factory, users):
        [created] = await seed(session_factory, users.client.id)

        response = await test_client.patch(
            f"/api/notifications/{created.id}/read", headers=auth("client@example.com")
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["notification"]["isRead"] is True
        assert body["notification"]["readAt"] is not None

    @pytest.mark.asyncio
    async def test_other_users_notification_is_403_and_unchanged(self, test_client, session_factory, users):
        [created] = await seed(session_factory, users.client.id)

        response = await test_client.patch(
            f"/api/notifications/{created.id}/read", headers=auth("photo@example.com")
        )

        assert response.status_code == 403
        assert response.json()["error"] == "forbidden"
        async with session_factory() as db:
            fresh = await notification_store.get(db, created.id)
            assert fresh.is_read is False
            assert fresh.read_at is None

    @pytest.mark.asyncio
    async def test_unknown_notification_is_404(self, test_client, users):
        response = await test_client.patch(
            f"/api/notifications/{uuid4()}/read", headers=auth("client@example.com")
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_toggle_keeps_read_at(self, test_client, session_factory, users):
        [created] = await seed(session_factory, users.client.id)
        headers = auth("client@example.com")

        read = await test_client.patch(f"/api/notifications/{created.id}", headers=headers)
        unread = await test_client.patch(
            f"/api/notifications/{created.id}", json={"isRead": False}, headers=headers
        )

        assert read.json()["notification"]["isRead"] is True
        assert unread.json()["message"] == "Notification marked as unread"
        assert unread.json()["notification"]["isRead"] is False
        # SQLite drops the UTC offset on reload; compare to the second
        first_read_at = read.json()["notification"]["readAt"]
        assert unread.json()["notification"]["readAt"][:19] == first_read_at[:19]

    @pytest.mark.asyncio
    async def test_mark_all_read(self, test_client, session_factory, users):
        await seed(session_factory, users.client.id, count=3)
        await seed(session_factory, users.photographer.id)

        response = await test_client.post(
            "/api/notifications/mark-all-read", headers=auth("client@example.com")
        )

        assert response.status_code == 200
        assert response.json()["count"] == 3
        async with session_factory() as db:
            assert await notification_store.count_unread(db, users.client.id) == 0
            assert await notification_store.count_unread(db, users.photographer.id) == 1


class TestDelete:

    @pytest.mark.asyncio
    async def test_owner_deletes(self, test_client, session_factory, users):
        [created] = await seed(session_factory, users.client.id)

        response = await test_client.delete(
            f"/api/notifications/{created.id}", headers=auth("client@example.com")
        )

        assert response.status_code == 200
        assert response.json()["message"] == "Notification deleted successfully"
        async with session_factory() as db:
            assert await notification_store.count_all(db, users.client.id) == 0

    @pytest.mark.asyncio
    async def test_non_owner_cannot_delete(self, test_client, session_factory, users):
        [created] = await seed(session_factory, users.client.id)

        response = await test_client.delete(
            f"/api/notifications/{created.id}", headers=auth("photo@example.com")
        )

        assert response.status_code == 403
        async with session_factory() as db:
            assert await notification_store.count_all(db, users.client.id) == 1


class TestCreation:

    @pytest.mark.asyncio
    async def test_admin_creates_notification(self, test_client, session_factory, users):
        response = await test_client.post(
            "/api/notifications",
            json={
                "userId": str(users.client.id),
                "type": "STATUS_CHANGE",
                "title": "Schedule Update",
                "message": "Your shoot moved to 3pm.",
            },
            headers=auth("admin@example.com"),
        )

        assert response.status_code == 201
        assert response.json()["userId"] == str(users.client.id)
        assert response.json()["isRead"] is False
        async with session_factory() as db:
            assert await notification_store.count_all(db, users.client.id) == 1

    @pytest.mark.asyncio
    async def test_non_admin_is_forbidden(self, test_client, session_factory, users):
        response = await test_client.post(
            "/api/notifications",
            json={
                "userId": str(users.photographer.id),
                "type": "STATUS_CHANGE",
                "title": "Hi",
                "message": "Hello",
            },
            headers=auth("client@example.com"),
        )

        assert response.status_code == 403
        async with session_factory() as db:
            assert await notification_store.count_all(db, users.photographer.id) == 0

    @pytest.mark.asyncio
    async def test_unknown_type_is_rejected(self, test_client, users):
        response = await test_client.post(
            "/api/notifications",
            json={"userId": str(users.client.id), "type": "PARTY", "title": "t", "message": "m"},
            headers=auth("admin@example.com"),
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_work_completed(self, test_client, session_factory, users):
        booking_id = uuid4()
        response = await test_client.post(
            "/api/notifications/work-completed",
            json={
                "bookingId": str(booking_id),
                "clientId": str(users.client.id),
                "photographerName": "Pat Photographer",
                "bookingReference": "SB-5001",
            },
            headers=auth("photo@example.com"),
        )

        assert response.status_code == 200
        assert response.json()["success"] is True
        async with session_factory() as db:
            [row] = await notification_store.list_by_user(db, users.client.id)
            assert row.type == "BOOKING_COMPLETED"
            assert row.booking_id == booking_id


# ══════════════════════════════════════════════════════════════════════════
# Health
# ══════════════════════════════════════════════════════════════════════════


class TestHealth:

    @pytest.mark.asyncio
    async def test_healthy(self, test_client, db_engine, monkeypatch):
        monkeypatch.setattr("shutterbook.routes.health.engine", db_engine)

        response = await test_client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] == "connected"
        assert body["change_feed"] == "listening"
        assert body["active_streams"] == 0

    @pytest.mark.asyncio
    async def test_degraded_when_feed_is_down(self, test_client, db_engine, monkeypatch):
        monkeypatch.setattr("shutterbook.routes.health.engine", db_engine)
        test_client.app.state.change_feed = InMemoryChangeFeed()

        response = await test_client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "degraded"
        assert response.json()["change_feed"] == "stopped"

    @pytest.mark.asyncio
    async def test_unhealthy_when_database_is_down(self, test_client, monkeypatch):
        broken = MagicMock()
        broken.connect.side_effect = OSError("connection refused")
        monkeypatch.setattr("shutterbook.routes.health.engine", broken)

        response = await test_client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"
