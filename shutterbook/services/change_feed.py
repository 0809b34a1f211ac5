"""
Shutterbook Notifications — Change Feed Source
================================================

What:  Row-level change notifications (INSERT / UPDATE / DELETE) for database
       tables, with per-subscriber table, event-kind and row filtering.
Why:   Stream sessions learn about new, updated and deleted notifications
       without polling and without any coupling to the code that wrote them.
How:   `ChangeFeed` defines the contract; two implementations:
       - PostgresChangeFeed: one process-wide asyncpg connection LISTENs on
         a channel fed by a `pg_notify` trigger (see alembic revision 002).
       - InMemoryChangeFeed: process-local fan-out; events are published by
         OrmChangeCapture (SQLAlchemy session hooks) or directly by tests.
Who:   Created in the app lifespan, injected into every StreamSession.

Subscription Model:
    subscribe(table, kinds, row_filter, callback) -> Subscription
    unsubscribe(subscription)                      (idempotent, synchronous)

    Dispatch runs on the event loop thread. Because unsubscribe flips the
    subscription inactive and removes it in one synchronous step, no callback
    can reach a subscription after unsubscribe() has returned.

Failure Isolation:
    A callback that raises is logged with its traceback and skipped; other
    subscribers still receive the event. A malformed NOTIFY payload is logged
    and dropped. Neither stops the feed.
"""

import asyncio
import enum
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional

import asyncpg
from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    stop_after_attempt,
    wait_exponential_jitter,
)

from shutterbook.exceptions import ChangeFeedError

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Events, Filters and Subscriptions
# ══════════════════════════════════════════════════════════════════════════

class ChangeKind(str, enum.Enum):
    """Row mutation kinds, named as Postgres reports them in TG_OP."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


ALL_CHANGE_KINDS: FrozenSet[ChangeKind] = frozenset(ChangeKind)


@dataclass(frozen=True)
class ChangeEvent:
    """
    One observed row mutation.

    record:      the row after the change (INSERT, UPDATE)
    old_record:  id and user_id of the deleted row (DELETE)
    """

    table: str
    kind: ChangeKind
    record: Optional[Dict[str, Any]] = None
    old_record: Optional[Dict[str, Any]] = None

    @property
    def row(self) -> Optional[Dict[str, Any]]:
        """The row a filter is evaluated against: old row for deletes, new row otherwise."""
        if self.kind is ChangeKind.DELETE:
            return self.old_record
        return self.record


@dataclass(frozen=True)
class RowFilter:
    """
    Equality predicate on one column (`user_id = <value>`).

    Values are compared as strings: the Postgres feed delivers JSON (UUIDs as
    strings) while the ORM capture delivers uuid.UUID objects.
    """

    column: str
    value: Any

    def matches(self, row: Optional[Dict[str, Any]]) -> bool:
        if not row or self.column not in row or row[self.column] is None:
            return False
        return str(row[self.column]) == str(self.value)


ChangeCallback = Callable[[ChangeEvent], None]


class Subscription:
    """Handle returned by ChangeFeed.subscribe(); owned by the subscriber."""

    def __init__(
        self,
        table: str,
        kinds: Iterable[ChangeKind],
        row_filter: Optional[RowFilter],
        callback: ChangeCallback,
    ):
        self.id = uuid.uuid4().hex
        self.table = table
        self.kinds: FrozenSet[ChangeKind] = frozenset(kinds)
        self.row_filter = row_filter
        self.callback = callback
        self.active = True

    def wants(self, event: ChangeEvent) -> bool:
        if not self.active or event.table != self.table or event.kind not in self.kinds:
            return False
        return self.row_filter is None or self.row_filter.matches(event.row)

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, table='{self.table}', active={self.active})>"


# ══════════════════════════════════════════════════════════════════════════
# Abstract Feed
# ══════════════════════════════════════════════════════════════════════════

class ChangeFeed(ABC):
    """
    Abstract change feed: subscription bookkeeping and fan-out.

    Concrete feeds only decide where events come from; they hand every
    decoded event to `_dispatch`.
    """

    def __init__(self):
        self._subscriptions: Dict[str, Subscription] = {}

    @property
    @abstractmethod
    def is_running(self) -> bool:
        """True while the feed can deliver events to new subscribers."""
        ...

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(
        self,
        table: str,
        kinds: Iterable[ChangeKind],
        row_filter: Optional[RowFilter],
        callback: ChangeCallback,
    ) -> Subscription:
        """
        Register `callback` for changes on `table` of the given kinds.

        Raises:
            ChangeFeedError: the feed is not running, so the subscriber would
                never hear anything. Raised before any state is recorded.
        """
        if not self.is_running:
            raise ChangeFeedError(context={"table": table})

        subscription = Subscription(table, kinds, row_filter, callback)
        self._subscriptions[subscription.id] = subscription
        logger.debug("Subscribed %s to %s %s", subscription.id, table, sorted(k.value for k in subscription.kinds))
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Release a subscription. Safe to call more than once."""
        subscription.active = False
        if self._subscriptions.pop(subscription.id, None) is not None:
            logger.debug("Unsubscribed %s from %s", subscription.id, subscription.table)

    def _dispatch(self, event: ChangeEvent) -> None:
        # Snapshot: callbacks may unsubscribe (a session closing itself)
        for subscription in list(self._subscriptions.values()):
            if not subscription.wants(event):
                continue
            try:
                subscription.callback(event)
            except Exception:
                logger.exception(
                    "Change feed subscriber %s failed on %s %s",
                    subscription.id,
                    event.kind.value,
                    event.table,
                )

    def _drop_all_subscriptions(self) -> None:
        for subscription in self._subscriptions.values():
            subscription.active = False
        self._subscriptions.clear()


# ══════════════════════════════════════════════════════════════════════════
# In-Memory Feed
# ══════════════════════════════════════════════════════════════════════════

class InMemoryChangeFeed(ChangeFeed):
    """
    Process-local feed. Events enter through publish().

    Suitable for a single worker process: a notification written by another
    process is never observed. Use PostgresChangeFeed for multi-worker
    deployments.
    """

    def __init__(self):
        super().__init__()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        self._running = True
        logger.info("In-memory change feed started")

    async def stop(self) -> None:
        self._running = False
        self._drop_all_subscriptions()
        logger.info("In-memory change feed stopped")

    def publish(self, event: ChangeEvent) -> None:
        if not self._running:
            logger.debug("Dropping %s on %s: feed not running", event.kind.value, event.table)
            return
        self._dispatch(event)


# ══════════════════════════════════════════════════════════════════════════
# PostgreSQL LISTEN/NOTIFY Feed
# ══════════════════════════════════════════════════════════════════════════

class PostgresChangeFeed(ChangeFeed):
    """
    Change feed backed by PostgreSQL LISTEN/NOTIFY.

    Payload (built by the trigger in alembic revision 002):
        {"table": "notifications", "type": "INSERT"|"UPDATE"|"DELETE",
         "record": {...} | null, "old_record": {"id", "user_id"} | null}

    Connection Lifecycle:
        start()  → connect + LISTEN, retried with exponential backoff + jitter
        lost     → termination listener schedules the same retrying connect;
                   subscriptions are kept, so open streams resume delivery
        stop()   → UNLISTEN + close; no reconnect afterwards

    NOTIFY is delivered on commit only, so subscribers never see rows from a
    transaction that rolled back. Events raised while the connection is down
    are lost; clients recover them by re-fetching after reconnecting.
    """

    def __init__(
        self,
        dsn: str,
        channel: str,
        retry_max_attempts: int = 5,
        retry_min_wait: float = 1.0,
        retry_max_wait: float = 30.0,
        connect: Callable[..., Any] = asyncpg.connect,
    ):
        super().__init__()
        self._dsn = dsn
        self._channel = channel
        self._retry_max_attempts = retry_max_attempts
        self._retry_min_wait = retry_min_wait
        self._retry_max_wait = retry_max_wait
        self._connect_fn = connect
        self._connection: Optional[asyncpg.Connection] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._stopping = False

    @property
    def channel(self) -> str:
        return self._channel

    @property
    def is_running(self) -> bool:
        return (
            not self._stopping
            and self._connection is not None
            and not self._connection.is_closed()
        )

    async def start(self) -> None:
        """
        Open the LISTEN connection.

        Raises:
            ChangeFeedError: every connection attempt failed.
        """
        self._stopping = False
        await self._connect()

    async def stop(self) -> None:
        self._stopping = True
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None

        connection, self._connection = self._connection, None
        if connection is not None and not connection.is_closed():
            try:
                await connection.remove_listener(self._channel, self._on_notify)
                await connection.close()
            except Exception as e:
                logger.warning("Error closing change feed connection: %s", str(e))

        self._drop_all_subscriptions()
        logger.info("Postgres change feed stopped (channel=%s)", self._channel)

    async def _connect(self) -> None:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._retry_max_attempts),
            wait=wait_exponential_jitter(
                initial=self._retry_min_wait,
                max=self._retry_max_wait,
                jitter=self._retry_min_wait,
            ),
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    connection = await self._connect_fn(self._dsn)
                    try:
                        await connection.add_listener(self._channel, self._on_notify)
                    except Exception:
                        await connection.close()
                        raise
        except RetryError as e:
            last = e.last_attempt.exception() if e.last_attempt else None
            logger.error(
                "Could not LISTEN on %s after %d attempts: %s",
                self._channel,
                self._retry_max_attempts,
                str(last),
            )
            raise ChangeFeedError(
                message="Could not connect to the database change feed",
                context={"channel": self._channel, "error_type": type(last).__name__},
            ) from last

        connection.add_termination_listener(self._on_connection_lost)
        self._connection = connection
        logger.info("Postgres change feed listening (channel=%s)", self._channel)

    def _on_connection_lost(self, connection: asyncpg.Connection) -> None:
        if self._stopping or connection is not self._connection:
            return
        logger.warning("Change feed connection lost; reconnecting (channel=%s)", self._channel)
        self._connection = None
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect())

    async def _reconnect(self) -> None:
        try:
            await self._connect()
        except ChangeFeedError:
            # Already logged; streams stay open but silent until restart
            logger.error(
                "Change feed is down with %d active subscriptions",
                self.subscription_count,
            )

    def _on_notify(self, connection: Any, pid: int, channel: str, payload: str) -> None:
        event = self.parse_payload(payload)
        if event is None:
            logger.warning("Ignoring malformed change payload on %s: %.200s", channel, payload)
            return
        self._dispatch(event)

    @staticmethod
    def parse_payload(payload: str) -> Optional[ChangeEvent]:
        """Decode a trigger payload. Returns None for anything malformed."""
        try:
            data = json.loads(payload)
        except (TypeError, ValueError):
            return None
        if not isinstance(data, dict):
            return None

        table = data.get("table")
        try:
            kind = ChangeKind(str(data.get("type", "")).upper())
        except ValueError:
            return None
        record = data.get("record")
        old_record = data.get("old_record")
        if not isinstance(table, str) or not table:
            return None
        if record is not None and not isinstance(record, dict):
            return None
        if old_record is not None and not isinstance(old_record, dict):
            return None
        if kind is ChangeKind.DELETE and old_record is None:
            return None
        if kind is not ChangeKind.DELETE and record is None:
            return None

        return ChangeEvent(table=table, kind=kind, record=record, old_record=old_record)
