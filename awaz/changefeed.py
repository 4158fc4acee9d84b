"""
Change notifications for the store.

Services never talk to subscribers directly: inserts are captured by a mapper
hook, guarded bulk updates are recorded explicitly, and everything queued on a
session is published only once that session commits.
"""
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session, object_session

from .database import Base
from .timeutils import utcnow

logger = logging.getLogger(__name__)

INSERT = "INSERT"
UPDATE = "UPDATE"

_PENDING_KEY = "awaz_pending_changes"


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    event_type: str
    record: Dict[str, Any]
    timestamp: Any = field(default_factory=utcnow)


Callback = Callable[[ChangeEvent], None]


class ChangeFeed:
    """Observer registry: subscribe(table, event_types) -> callbacks receive ChangeEvents."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: List[tuple] = []

    def subscribe(self, table: str, event_types: Iterable[str], callback: Callback):
        entry = (table, frozenset(event_types), callback)
        with self._lock:
            self._subscribers.append(entry)

        def unsubscribe():
            with self._lock:
                if entry in self._subscribers:
                    self._subscribers.remove(entry)

        return unsubscribe

    def publish(self, change: ChangeEvent) -> None:
        with self._lock:
            targets = [cb for table, types, cb in self._subscribers
                       if table == change.table and change.event_type in types]
        for callback in targets:
            try:
                callback(change)
            except Exception:
                # a broken subscriber must not fail the request that committed
                logger.exception("Change feed subscriber failed for %s %s", change.event_type, change.table)


feed = ChangeFeed()


def record_change(db: Session, table: str, event_type: str, record: Dict[str, Any]) -> None:
    """Queue a change on the session; it is published after commit."""
    db.info.setdefault(_PENDING_KEY, []).append(ChangeEvent(table, event_type, dict(record)))


def _row_dict(target) -> Dict[str, Any]:
    mapper = inspect(target).mapper
    return {attr.key: getattr(target, attr.key) for attr in mapper.column_attrs}


@event.listens_for(Base, "after_insert", propagate=True)
def _capture_insert(mapper, connection, target):
    db = object_session(target)
    if db is not None:
        record_change(db, target.__tablename__, INSERT, _row_dict(target))


@event.listens_for(Session, "after_commit")
def _publish_pending(db):
    pending = db.info.pop(_PENDING_KEY, [])
    for change in pending:
        feed.publish(change)


@event.listens_for(Session, "after_rollback")
def _discard_pending(db):
    db.info.pop(_PENDING_KEY, None)
