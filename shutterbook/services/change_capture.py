"""
Shutterbook Notifications — ORM Change Capture
================================================

What:  Turns committed ORM writes to `notifications` into ChangeEvents on an
       InMemoryChangeFeed.
Why:   Gives the in-memory feed the same commit semantics the Postgres trigger
       has: rows from a rolled-back transaction or savepoint are never
       announced.
How:   SQLAlchemy session events.
       after_flush           → snapshot new / modified / deleted rows into
                               session.info, tagged with the innermost
                               savepoint (None outside one)
       after_rollback        → inside a savepoint: discard that savepoint's
                               snapshots; otherwise discard all of them
       after_transaction_end → a released savepoint hands its snapshots to
                               the enclosing savepoint or the root
       after_commit          → on the root transaction only: publish the
                               snapshots in flush order

Only ORM unit-of-work changes are observed. Bulk `update()` / `delete()`
statements bypass the hooks, which is why NotificationStore mutates loaded
objects instead of issuing bulk statements.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple, Type

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session, SessionTransaction

from shutterbook.models.notification import Notification
from shutterbook.services.change_feed import ChangeEvent, ChangeKind, InMemoryChangeFeed

logger = logging.getLogger(__name__)

_PENDING_KEY = "shutterbook.pending_changes"

# (savepoint the change was flushed in, or None for the root transaction; change)
_Pending = List[Tuple[Optional[SessionTransaction], ChangeEvent]]


def snapshot_row(obj: Any) -> Dict[str, Any]:
    """Column values currently loaded on `obj`, without triggering a lazy load."""
    state = inspect(obj)
    loaded = state.dict
    return {
        attr.key: loaded.get(attr.key)
        for attr in state.mapper.column_attrs
    }


def deleted_row(obj: Any) -> Dict[str, Any]:
    """The part of a deleted row a subscriber needs: its id and owner."""
    loaded = inspect(obj).dict
    return {"id": loaded.get("id"), "user_id": loaded.get("user_id")}


class OrmChangeCapture:
    """Publishes committed changes of one mapped class to an in-memory feed."""

    _HOOKS = ("after_flush", "after_rollback", "after_transaction_end", "after_commit")

    def __init__(self, feed: InMemoryChangeFeed, model: Type = Notification):
        self._feed = feed
        self._model = model
        self._table = model.__tablename__
        self._installed = False

    @property
    def installed(self) -> bool:
        return self._installed

    def install(self) -> None:
        if self._installed:
            return
        for name in self._HOOKS:
            event.listen(Session, name, getattr(self, f"_{name}"))
        self._installed = True
        logger.debug("ORM change capture installed for %s", self._table)

    def uninstall(self) -> None:
        if not self._installed:
            return
        for name in self._HOOKS:
            event.remove(Session, name, getattr(self, f"_{name}"))
        self._installed = False
        logger.debug("ORM change capture removed for %s", self._table)

    # ── Session hooks ─────────────────────────────────────────────────────

    def _after_flush(self, session: Session, flush_context: Any) -> None:
        pending: _Pending = session.info.setdefault(_PENDING_KEY, [])
        savepoint = session.get_nested_transaction()

        for obj in session.new:
            if isinstance(obj, self._model):
                change = ChangeEvent(self._table, ChangeKind.INSERT, record=snapshot_row(obj))
                pending.append((savepoint, change))

        for obj in session.dirty:
            if isinstance(obj, self._model) and session.is_modified(obj, include_collections=False):
                change = ChangeEvent(self._table, ChangeKind.UPDATE, record=snapshot_row(obj))
                pending.append((savepoint, change))

        for obj in session.deleted:
            if isinstance(obj, self._model):
                change = ChangeEvent(self._table, ChangeKind.DELETE, old_record=deleted_row(obj))
                pending.append((savepoint, change))

    def _after_rollback(self, session: Session) -> None:
        pending: Optional[_Pending] = session.info.get(_PENDING_KEY)
        if not pending:
            return

        # Fired before the rolled-back transaction closes, so a savepoint
        # being rolled back is still the current nested transaction
        savepoint = session.get_nested_transaction()
        if savepoint is None:
            session.info.pop(_PENDING_KEY, None)
            logger.debug("Discarded %d uncommitted change(s) on rollback", len(pending))
            return

        kept = [(owner, change) for owner, change in pending if owner is not savepoint]
        logger.debug(
            "Discarded %d change(s) on savepoint rollback", len(pending) - len(kept)
        )
        session.info[_PENDING_KEY] = kept

    def _after_transaction_end(self, session: Session, transaction: SessionTransaction) -> None:
        if not transaction.nested:
            return
        pending: Optional[_Pending] = session.info.get(_PENDING_KEY)
        if not pending:
            return
        # The session already points at the enclosing savepoint (or None)
        parent = session.get_nested_transaction()
        session.info[_PENDING_KEY] = [
            (parent if owner is transaction else owner, change)
            for owner, change in pending
        ]

    def _after_commit(self, session: Session) -> None:
        # Releasing a savepoint also fires after_commit
        if session.in_nested_transaction():
            return
        pending: Optional[_Pending] = session.info.pop(_PENDING_KEY, None)
        if not pending:
            return
        for _, change in pending:
            self._feed.publish(change)
