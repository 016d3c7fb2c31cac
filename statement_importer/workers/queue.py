"""Durable work queue stored in the ``work_items`` table.

Delivery is at-least-once: a claimed item is leased for ``lease_seconds`` and becomes claimable
again when the lease expires without an ``ack``/``release``/``bury``. Items are keyed by a dedupe
key per queue, so enqueueing the same key twice does not create a second item.
"""

import time
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel
from sqlalchemy import ColumnElement, and_, func, or_, select, update
from sqlalchemy.orm import Session

from statement_importer.core.db import Database, WorkItem
from statement_importer.core.utils import get_logger, truncate

logger = get_logger("statement-importer.queue")

IMPORT_QUEUE = "import"
CATEGORIZATION_QUEUE = "categorization"

QUEUED = "queued"
LEASED = "leased"
DONE = "done"
BURIED = "buried"

PENDING_STATES = (QUEUED, LEASED)


class QueuedItem(BaseModel):
    """A work item handed to a consumer."""

    id: int
    queue: str
    key: str
    payload: dict[str, Any]
    attempts: int


class WorkQueue:
    """One named queue on top of the shared ``work_items`` table."""

    def __init__(
        self,
        db: Database,
        name: str,
        lease_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Bind the queue ``name`` to a database."""
        self.db = db
        self.name = name
        self.lease_seconds = lease_seconds
        self.clock = clock

    def _claimable(self, now: float) -> ColumnElement[bool]:
        return and_(
            WorkItem.queue == self.name,
            or_(
                and_(WorkItem.state == QUEUED, WorkItem.available_at <= now),
                and_(WorkItem.state == LEASED, WorkItem.leased_until < now),
            ),
        )

    def _enqueue(self, session: Session, key: str, payload: dict[str, Any], delay: float, *, force: bool) -> bool:
        existing = session.execute(
            select(WorkItem).where(WorkItem.queue == self.name, WorkItem.dedupe_key == key)
        ).scalar_one_or_none()
        available_at = self.clock() + delay
        if existing is None:
            session.add(WorkItem(queue=self.name, dedupe_key=key, payload=payload, available_at=available_at))
            session.flush()
            return True
        if existing.state in PENDING_STATES or not force:
            return False
        existing.payload = payload
        existing.state = QUEUED
        existing.attempts = 0
        existing.available_at = available_at
        existing.leased_until = None
        existing.leased_by = None
        existing.last_error = None
        return True

    def enqueue(
        self,
        key: str,
        payload: dict[str, Any],
        *,
        delay: float = 0.0,
        force: bool = False,
        session: Session | None = None,
    ) -> bool:
        """Add a work item unless one with the same key exists; return whether it was (re)queued.

        Items still queued or leased are never duplicated. Finished (done or buried) items are only
        requeued with ``force``. Passing ``session`` makes the enqueue part of the caller's
        transaction.
        """
        if session is not None:
            added = self._enqueue(session, key, payload, delay, force=force)
        else:
            with self.db.session_scope() as own_session:
                added = self._enqueue(own_session, key, payload, delay, force=force)
        if added:
            logger.debug(f"[{self.name}] enqueued {key}")
        return added

    def claim(self, worker_id: str) -> QueuedItem | None:
        """Lease the oldest available item, or return None when nothing is due."""
        with self.db.session_scope() as session:
            for _ in range(3):
                now = self.clock()
                candidate = session.execute(
                    select(WorkItem.id)
                    .where(self._claimable(now))
                    .order_by(WorkItem.available_at, WorkItem.id)
                    .limit(1)
                ).scalar_one_or_none()
                if candidate is None:
                    return None
                claimed = session.execute(
                    update(WorkItem)
                    .where(WorkItem.id == candidate, self._claimable(now))
                    .values(
                        state=LEASED,
                        attempts=WorkItem.attempts + 1,
                        leased_until=now + self.lease_seconds,
                        leased_by=worker_id,
                    )
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount == 1:
                    item = session.get(WorkItem, candidate, populate_existing=True)
                    return QueuedItem(
                        id=item.id,
                        queue=item.queue,
                        key=item.dedupe_key,
                        payload=item.payload,
                        attempts=item.attempts,
                    )
            return None

    def _finish(self, item_id: int, **values: Any) -> None:
        with self.db.session_scope() as session:
            session.execute(
                update(WorkItem)
                .where(WorkItem.id == item_id)
                .values(leased_until=None, leased_by=None, **values)
                .execution_options(synchronize_session=False)
            )

    def ack(self, item_id: int) -> None:
        """Mark an item as processed."""
        self._finish(item_id, state=DONE)

    def release(self, item_id: int, delay: float = 0.0, error: str | None = None) -> None:
        """Return a leased item to the queue, claimable again after ``delay`` seconds."""
        self._finish(
            item_id,
            state=QUEUED,
            available_at=self.clock() + delay,
            last_error=truncate(error) if error else None,
        )

    def bury(self, item_id: int, error: str | None = None) -> None:
        """Park an item that exhausted its attempts; it is kept for inspection only."""
        self._finish(item_id, state=BURIED, last_error=truncate(error) if error else None)

    def stats(self) -> dict[str, int]:
        """Count this queue's items per state."""
        return queue_stats(self.db).get(self.name, {})


def queue_stats(db: Database) -> dict[str, dict[str, int]]:
    """Count items per queue and state."""
    with db.session_scope() as session:
        rows = session.execute(
            select(WorkItem.queue, WorkItem.state, func.count()).group_by(WorkItem.queue, WorkItem.state)
        ).all()
    stats: dict[str, dict[str, int]] = {}
    for queue, state, count in rows:
        stats.setdefault(queue, {})[state] = count
    return stats
