"""
Non-blocking aggregate locks.

A batch locks its parent profile and every child it touches for the lifetime
of the session transaction. Acquisition never waits: a key held by another
transaction raises ResourceBusy at once. Locks are released by the session's
own transaction-end event, so commit and rollback are the only unlock paths.

On PostgreSQL the rows are additionally selected ``FOR UPDATE NOWAIT`` so the
guarantee holds across worker processes; SQLite relies on the in-process
registry plus the optimistic version counter.
"""
from __future__ import annotations
import logging
import threading
from typing import Dict, Iterable, Set

from sqlalchemy import event, select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from .errors import ResourceBusy
from .models import Person

logger = logging.getLogger(__name__)

LOCK_NOT_AVAILABLE = "55P03"
_SESSION_KEYS = "lineage.locks"


def aggregate_keys(table: str, ids: Iterable[int]) -> list[str]:
    return sorted({f"{table}:{i}" for i in ids if i is not None})


class RowLockManager:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._held: Dict[str, int] = {}

    def held_keys(self) -> Set[str]:
        with self._guard:
            return set(self._held)

    def is_locked(self, key: str) -> bool:
        with self._guard:
            return key in self._held

    def lock_aggregate(self, session: Session, parent_id: int, child_ids: Iterable[int] = ()) -> list[str]:
        """Lock a parent profile and its children, all or nothing."""
        ids = [parent_id, *child_ids]
        keys = aggregate_keys(Person.__tablename__, ids)
        self._acquire(session, keys)
        if session.get_bind().dialect.name == "postgresql":
            self._lock_rows(session, ids)
        return keys

    def _acquire(self, session: Session, keys: list[str]) -> None:
        if not session.in_transaction():
            session.begin()
        owner = id(session)
        with self._guard:
            busy = [k for k in keys if self._held.get(k, owner) != owner]
            if busy:
                logger.warning("Aggregate busy", extra={"lock_keys": busy})
                raise ResourceBusy(f"locked: {', '.join(busy)}")
            for key in keys:
                self._held[key] = owner
        self._track(session, keys)

    def _lock_rows(self, session: Session, ids: list[int]) -> None:
        stmt = select(Person.id).where(Person.id.in_(ids)).with_for_update(nowait=True)
        try:
            session.execute(stmt).all()
        except DBAPIError as exc:
            if getattr(exc.orig, "pgcode", None) == LOCK_NOT_AVAILABLE:
                raise ResourceBusy("row lock not available") from exc
            raise

    def _track(self, session: Session, keys: list[str]) -> None:
        slot = (_SESSION_KEYS, id(self))
        tracked = session.info.get(slot)
        if tracked is None:
            tracked = session.info[slot] = set()
            event.listen(session, "after_transaction_end", self._on_transaction_end)
        tracked.update(keys)

    def _on_transaction_end(self, session: Session, transaction) -> None:
        if transaction.parent is not None:
            return
        tracked = session.info.get((_SESSION_KEYS, id(self))) or set()
        owner = id(session)
        with self._guard:
            for key in tracked:
                if self._held.get(key) == owner:
                    del self._held[key]
        tracked.clear()


default_lock_manager = RowLockManager()
