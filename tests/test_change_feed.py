"""
Shutterbook Notifications — Change Feed Tests
===============================================

What we test:
    ✅ Subscriptions filter by table, event kind and row predicate
    ✅ DELETE filters are evaluated against the old row
    ✅ A raising subscriber is logged and does not starve the others
    ✅ unsubscribe() is idempotent and stops delivery immediately
    ✅ subscribe() on a stopped feed raises ChangeFeedError
    ✅ Postgres payload parsing (valid, malformed, unknown kinds)
    ✅ Postgres feed LISTENs on start, retries, reconnects and stops cleanly
"""

import asyncio
import json
import logging
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from shutterbook.exceptions import ChangeFeedError
from shutterbook.services.change_feed import (
    ALL_CHANGE_KINDS,
    ChangeEvent,
    ChangeKind,
    InMemoryChangeFeed,
    PostgresChangeFeed,
    RowFilter,
)


class TestRowFilter:

    def test_matches_across_uuid_and_string(self):
        user_id = uuid4()
        row_filter = RowFilter("user_id", user_id)
        assert row_filter.matches({"user_id": str(user_id)})
        assert row_filter.matches({"user_id": user_id})

    def test_rejects_other_values_and_missing_rows(self):
        row_filter = RowFilter("user_id", uuid4())
        assert not row_filter.matches({"user_id": str(uuid4())})
        assert not row_filter.matches({"id": "x"})
        assert not row_filter.matches(None)
        assert not row_filter.matches({"user_id": None})


class TestInMemoryChangeFeed:

    @pytest.mark.asyncio
    async def test_subscribe_requires_running_feed(self):
        feed = InMemoryChangeFeed()
        with pytest.raises(ChangeFeedError):
            feed.subscribe("notifications", ALL_CHANGE_KINDS, None, lambda e: None)
        assert feed.subscription_count == 0

    @pytest.mark.asyncio
    async def test_delivers_matching_events_only(self, change_feed):
        user_id = uuid4()
        received = []
        change_feed.subscribe(
            "notifications",
            {ChangeKind.INSERT},
            RowFilter("user_id", user_id),
            received.append,
        )

        mine = ChangeEvent("notifications", ChangeKind.INSERT, record={"id": "1", "user_id": str(user_id)})
        change_feed.publish(mine)
        change_feed.publish(ChangeEvent("notifications", ChangeKind.INSERT, record={"id": "2", "user_id": str(uuid4())}))
        change_feed.publish(ChangeEvent("bookings", ChangeKind.INSERT, record={"id": "3", "user_id": str(user_id)}))
        change_feed.publish(ChangeEvent("notifications", ChangeKind.UPDATE, record={"id": "1", "user_id": str(user_id)}))

        assert received == [mine]

    @pytest.mark.asyncio
    async def test_delete_filter_uses_old_row(self, change_feed):
        user_id = uuid4()
        received = []
        change_feed.subscribe("notifications", ALL_CHANGE_KINDS, RowFilter("user_id", user_id), received.append)

        change_feed.publish(
            ChangeEvent("notifications", ChangeKind.DELETE, old_record={"id": "9", "user_id": str(user_id)})
        )

        assert len(received) == 1
        assert received[0].row == {"id": "9", "user_id": str(user_id)}

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_block_others(self, change_feed, caplog):
        def explode(event):
            raise RuntimeError("subscriber bug")

        received = []
        change_feed.subscribe("notifications", ALL_CHANGE_KINDS, None, explode)
        change_feed.subscribe("notifications", ALL_CHANGE_KINDS, None, received.append)

        with caplog.at_level(logging.ERROR, logger="shutterbook.services.change_feed"):
            change_feed.publish(ChangeEvent("notifications", ChangeKind.INSERT, record={"id": "1"}))

        assert len(received) == 1
        assert "subscriber bug" in caplog.text

    @pytest.mark.asyncio
    async def test_unsubscribe_is_idempotent_and_immediate(self, change_feed):
        received = []
        subscription = change_feed.subscribe("notifications", ALL_CHANGE_KINDS, None, received.append)

        change_feed.unsubscribe(subscription)
        change_feed.unsubscribe(subscription)
        change_feed.publish(ChangeEvent("notifications", ChangeKind.INSERT, record={"id": "1"}))

        assert received == []
        assert not subscription.active
        assert change_feed.subscription_count == 0

    @pytest.mark.asyncio
    async def test_subscriber_may_unsubscribe_during_dispatch(self, change_feed):
        received = []
        holder = {}

        def once(event):
            received.append(event)
            change_feed.unsubscribe(holder["sub"])

        holder["sub"] = change_feed.subscribe("notifications", ALL_CHANGE_KINDS, None, once)
        change_feed.publish(ChangeEvent("notifications", ChangeKind.INSERT, record={"id": "1"}))
        change_feed.publish(ChangeEvent("notifications", ChangeKind.INSERT, record={"id": "2"}))

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_stop_drops_subscriptions_and_events(self):
        feed = InMemoryChangeFeed()
        await feed.start()
        received = []
        subscription = feed.subscribe("notifications", ALL_CHANGE_KINDS, None, received.append)

        await feed.stop()
        feed.publish(ChangeEvent("notifications", ChangeKind.INSERT, record={"id": "1"}))

        assert received == []
        assert not subscription.active
        assert not feed.is_running


class TestPostgresPayloadParsing:

    def test_insert_payload(self):
        payload = json.dumps({
            "table": "notifications",
            "type": "INSERT",
            "record": {"id": "1", "user_id": "u"},
            "old_record": None,
        })
        event = PostgresChangeFeed.parse_payload(payload)
        assert event == ChangeEvent("notifications", ChangeKind.INSERT, record={"id": "1", "user_id": "u"})

    def test_update_payload_without_old_row(self):
        payload = json.dumps({
            "table": "notifications",
            "type": "UPDATE",
            "record": {"id": "1", "user_id": "u", "is_read": True},
            "old_record": None,
        })
        event = PostgresChangeFeed.parse_payload(payload)
        assert event.kind is ChangeKind.UPDATE
        assert event.old_record is None
        assert event.row == {"id": "1", "user_id": "u", "is_read": True}

    def test_delete_payload_keeps_old_row(self):
        payload = json.dumps({
            "table": "notifications",
            "type": "DELETE",
            "record": None,
            "old_record": {"id": "1", "user_id": "u"},
        })
        event = PostgresChangeFeed.parse_payload(payload)
        assert event.kind is ChangeKind.DELETE
        assert event.row == {"id": "1", "user_id": "u"}

    @pytest.mark.parametrize("payload", [
        "not json",
        "[]",
        json.dumps({"table": "notifications", "type": "TRUNCATE", "record": {}}),
        json.dumps({"table": "", "type": "INSERT", "record": {"id": "1"}}),
        json.dumps({"table": "notifications", "type": "INSERT", "record": None}),
        json.dumps({"table": "notifications", "type": "DELETE", "record": {"id": "1"}}),
        json.dumps({"table": "notifications", "type": "UPDATE", "record": "oops"}),
    ])
    def test_malformed_payloads_are_rejected(self, payload):
        assert PostgresChangeFeed.parse_payload(payload) is None


def _fake_connection():
    connection = MagicMock()
    connection.add_listener = AsyncMock()
    connection.remove_listener = AsyncMock()
    connection.close = AsyncMock()
    connection.is_closed = MagicMock(return_value=False)
    connection.add_termination_listener = MagicMock()
    return connection


class TestPostgresChangeFeed:

    def _feed(self, connect, attempts=3):
        return PostgresChangeFeed(
            dsn="postgresql://test/test",
            channel="notification_changes",
            retry_max_attempts=attempts,
            retry_min_wait=0.01,
            retry_max_wait=0.02,
            connect=connect,
        )

    @pytest.mark.asyncio
    async def test_start_listens_and_dispatches_notifies(self):
        connection = _fake_connection()
        feed = self._feed(AsyncMock(return_value=connection))

        await feed.start()
        assert feed.is_running
        connection.add_listener.assert_awaited_once_with("notification_changes", feed._on_notify)

        received = []
        feed.subscribe("notifications", ALL_CHANGE_KINDS, RowFilter("user_id", "u1"), received.append)
        feed._on_notify(connection, 42, "notification_changes", json.dumps({
            "table": "notifications", "type": "INSERT",
            "record": {"id": "n1", "user_id": "u1"}, "old_record": None,
        }))
        feed._on_notify(connection, 42, "notification_changes", "{broken")

        assert [e.record["id"] for e in received] == ["n1"]

    @pytest.mark.asyncio
    async def test_start_retries_then_raises(self):
        connect = AsyncMock(side_effect=OSError("connection refused"))
        feed = self._feed(connect, attempts=2)

        with pytest.raises(ChangeFeedError):
            await feed.start()

        assert connect.await_count == 2
        assert not feed.is_running

    @pytest.mark.asyncio
    async def test_start_recovers_after_transient_failure(self):
        connection = _fake_connection()
        connect = AsyncMock(side_effect=[OSError("not yet"), connection])
        feed = self._feed(connect)

        await feed.start()

        assert feed.is_running
        assert connect.await_count == 2

    @pytest.mark.asyncio
    async def test_lost_connection_reconnects_and_keeps_subscriptions(self):
        first, second = _fake_connection(), _fake_connection()
        connect = AsyncMock(side_effect=[first, second])
        feed = self._feed(connect)
        await feed.start()
        subscription = feed.subscribe("notifications", ALL_CHANGE_KINDS, None, lambda e: None)

        on_lost = first.add_termination_listener.call_args.args[0]
        on_lost(first)
        assert not feed.is_running
        await asyncio.wait_for(feed._reconnect_task, timeout=1)

        assert feed.is_running
        assert subscription.active
        assert feed.subscription_count == 1
        second.add_listener.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stop_unlistens_and_closes(self):
        connection = _fake_connection()
        feed = self._feed(AsyncMock(return_value=connection))
        await feed.start()
        feed.subscribe("notifications", ALL_CHANGE_KINDS, None, lambda e: None)

        await feed.stop()

        connection.remove_listener.assert_awaited_once_with("notification_changes", feed._on_notify)
        connection.close.assert_awaited_once()
        assert feed.subscription_count == 0
        assert not feed.is_running
        with pytest.raises(ChangeFeedError):
            feed.subscribe("notifications", ALL_CHANGE_KINDS, None, lambda e: None)
