"""
Shutterbook Notifications — Per-User Stream Session
=====================================================

What:  Bridges one authenticated user's change feed subscription to one
       outbound event stream.
Why:   Each connected client gets its own independently scheduled session;
       sessions share nothing except the feed they subscribe to.
How:   Three producers feed ONE asyncio.Queue:
           open()          → the `connected` frame
           heartbeat task  → `: heartbeat` every N seconds
           feed callback   → notification / update / delete frames
       and one consumer, `frames()`, drains it into the HTTP response. The
       queue is the only path to the transport, so frames are never
       interleaved mid-write.
Who:   Created by the stream route, tracked by SessionRegistry.

State Machine:
    NEW ──open()──► OPEN ──close()──► CLOSED
                      │                 ▲
                      └─ transport gone / consumer stalled / shutdown_all()

    close() is synchronous and idempotent: the first call cancels the
    heartbeat, releases the feed subscription, drops undelivered frames,
    wakes the consumer with a sentinel and unregisters. Later calls return
    immediately. Nothing is emitted after close() returns.

De-duplication:
    Insert events are forwarded at most once per notification id for the
    lifetime of the session. The remembered ids are kept in insertion order
    and capped (settings.stream_dedup_max_ids, 0 = unbounded); the oldest id
    is forgotten first. Updates and deletes are never de-duplicated.

Backpressure:
    The queue is not size-limited. One commit (mark-all-read on hundreds of
    rows) delivers all its events before the consumer gets to run, and each
    of them must reach the client. A consumer is stalled when frames have
    been waiting for settings.stream_stall_seconds without it taking any;
    this is checked on every emit and on every heartbeat tick.
"""

import asyncio
import logging
import time
import uuid
from collections import OrderedDict
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

from shutterbook.config import settings
from shutterbook.services.change_feed import (
    ALL_CHANGE_KINDS,
    ChangeEvent,
    ChangeFeed,
    ChangeKind,
    RowFilter,
    Subscription,
)
from shutterbook.services.session_registry import SessionRegistry
from shutterbook.services.sse import (
    connected_frame,
    heartbeat_frame,
    notification_delete_frame,
    notification_frame,
    notification_update_frame,
)

logger = logging.getLogger(__name__)

NOTIFICATIONS_TABLE = "notifications"


class StreamSession:
    """One open notification stream for one user."""

    def __init__(
        self,
        user_id: uuid.UUID,
        feed: ChangeFeed,
        registry: SessionRegistry,
        heartbeat_seconds: Optional[float] = None,
        dedup_max_ids: Optional[int] = None,
        stall_seconds: Optional[float] = None,
    ):
        self.user_id = user_id
        self.session_id = uuid.uuid4().hex
        self.created_at = datetime.now(timezone.utc)

        self._feed = feed
        self._registry = registry
        self._heartbeat_seconds = (
            heartbeat_seconds if heartbeat_seconds is not None else settings.stream_heartbeat_seconds
        )
        self._dedup_max_ids = (
            dedup_max_ids if dedup_max_ids is not None else settings.stream_dedup_max_ids
        )
        self._stall_seconds = (
            stall_seconds if stall_seconds is not None else settings.stream_stall_seconds
        )
        self._queue: "asyncio.Queue[Optional[bytes]]" = asyncio.Queue()
        # monotonic time since which the oldest queued frame has been waiting
        # without progress; None while the queue is empty
        self._waiting_since: Optional[float] = None

        self._seen_ids: "OrderedDict[str, None]" = OrderedDict()
        self._subscription: Optional[Subscription] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._opened = False
        self._closed = False
        self.forwarded_count = 0

    @property
    def is_open(self) -> bool:
        return self._opened and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def heartbeat_seconds(self) -> float:
        return self._heartbeat_seconds

    @property
    def backlog(self) -> int:
        """Frames queued but not yet written to the client."""
        return self._queue.qsize()

    def has_seen(self, notification_id: object) -> bool:
        return str(notification_id) in self._seen_ids

    # ── Lifecycle ─────────────────────────────────────────────────────────

    def open(self) -> "StreamSession":
        """
        Start the session. Must run inside the event loop.

        Raises:
            ChangeFeedError: the feed cannot take a subscription. Nothing has
                been queued, started or registered at that point.
        """
        if self._opened:
            raise RuntimeError(f"Stream session {self.session_id} was already opened")
        self._opened = True

        # No await between subscribing and queueing `connected`, so no
        # feed callback can get ahead of it
        self._subscription = self._feed.subscribe(
            NOTIFICATIONS_TABLE,
            ALL_CHANGE_KINDS,
            RowFilter("user_id", self.user_id),
            self._on_change,
        )
        self._emit(connected_frame())
        self._heartbeat_task = asyncio.get_running_loop().create_task(
            self._heartbeat_loop(),
            name=f"stream-heartbeat-{self.session_id}",
        )
        self._registry.register(self)

        logger.info("Opened notification stream %s for user %s", self.session_id, self.user_id)
        return self

    def close(self) -> None:
        """Tear the session down. Safe to call any number of times."""
        if self._closed:
            return
        self._closed = True

        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

        if self._subscription is not None:
            try:
                self._feed.unsubscribe(self._subscription)
            except Exception:
                logger.exception("Failed to release subscription of stream %s", self.session_id)
            self._subscription = None

        # Undelivered frames are dropped; the sentinel ends frames()
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        self._waiting_since = None
        self._queue.put_nowait(None)

        self._registry.unregister(self.session_id)
        logger.info(
            "Closed notification stream %s for user %s (%d forwarded)",
            self.session_id,
            self.user_id,
            self.forwarded_count,
        )

    async def aclose(self) -> None:
        """Awaitable form of close(), for response background tasks."""
        self.close()

    async def frames(self) -> AsyncIterator[bytes]:
        """
        Yield encoded frames until the session closes.

        Cancellation (client disconnect) or an early aclose() of this
        generator closes the session.
        """
        try:
            while True:
                frame = await self._queue.get()
                if frame is None:
                    break
                # Taking a frame is progress: the wait restarts for what is left
                self._waiting_since = None if self._queue.empty() else time.monotonic()
                yield frame
        finally:
            self.close()

    # ── Producers ─────────────────────────────────────────────────────────

    def _is_stalled(self) -> bool:
        return (
            self._waiting_since is not None
            and time.monotonic() - self._waiting_since > self._stall_seconds
        )

    def _close_if_stalled(self) -> bool:
        if not self._is_stalled():
            return False
        logger.warning(
            "Stream %s is not draining (%d frames queued for over %.0fs); closing it",
            self.session_id,
            self._queue.qsize(),
            self._stall_seconds,
        )
        self.close()
        return True

    def _emit(self, frame: bytes) -> bool:
        if self._closed or self._close_if_stalled():
            return False
        if self._waiting_since is None:
            self._waiting_since = time.monotonic()
        self._queue.put_nowait(frame)
        return True

    async def _heartbeat_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self._heartbeat_seconds)
            self._emit(heartbeat_frame())

    def _on_change(self, event: ChangeEvent) -> None:
        if self._closed:
            return
        try:
            self._forward(event)
        except Exception:
            logger.exception(
                "Stream %s dropped a %s event on %s",
                self.session_id,
                event.kind.value,
                event.table,
            )

    def _forward(self, event: ChangeEvent) -> None:
        row = event.row
        if not row or str(row.get("user_id")) != str(self.user_id):
            return

        if event.kind is ChangeKind.INSERT:
            notification_id = str(row["id"])
            if notification_id in self._seen_ids:
                logger.debug("Stream %s skipped duplicate insert %s", self.session_id, notification_id)
                return
            frame = notification_frame(row)
            self._remember(notification_id)
            if self._emit(frame):
                self.forwarded_count += 1

        elif event.kind is ChangeKind.UPDATE:
            self._emit(notification_update_frame(row))

        elif event.kind is ChangeKind.DELETE:
            self._emit(notification_delete_frame(row["id"]))

    def _remember(self, notification_id: str) -> None:
        self._seen_ids[notification_id] = None
        if self._dedup_max_ids and len(self._seen_ids) > self._dedup_max_ids:
            self._seen_ids.popitem(last=False)

    def __repr__(self) -> str:
        state = "closed" if self._closed else ("open" if self._opened else "new")
        return f"<StreamSession(id={self.session_id}, user_id={self.user_id}, state={state})>"
