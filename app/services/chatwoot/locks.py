"""Per-key mutual exclusion for identity resolution.

``KeyedLock`` serializes threads of one process; ``hold_chat_row`` serializes
worker processes through a row lock on ``chatwoot_chat_locks``.
"""

from __future__ import annotations

import logging
from collections.abc import Hashable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from threading import Lock

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from app.models.chatwoot import ChatLock

logger = logging.getLogger(__name__)


class LockTimeoutError(RuntimeError):
    pass


@dataclass
class _Entry:
    lock: Lock
    holders: int = 0


class KeyedLock:
    """Registry of locks keyed by (session_id, jid).

    Entries are dropped once no thread holds or waits on them, so the registry
    only grows with the number of keys in flight.
    """

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout
        self._entries: dict[Hashable, _Entry] = {}
        self._guard = Lock()

    def _checkout(self, key: Hashable) -> _Entry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = _Entry(lock=Lock())
                self._entries[key] = entry
            entry.holders += 1
            return entry

    def _checkin(self, key: Hashable, entry: _Entry) -> None:
        with self._guard:
            entry.holders -= 1
            if entry.holders <= 0 and self._entries.get(key) is entry:
                del self._entries[key]

    @contextmanager
    def hold(self, key: Hashable, timeout: float | None = None) -> Iterator[None]:
        wait = self.timeout if timeout is None else timeout
        entry = self._checkout(key)
        try:
            if not entry.lock.acquire(timeout=wait):
                raise LockTimeoutError(f"Timed out waiting for lock {key!r}")
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(key, entry)

    def active_keys(self) -> int:
        with self._guard:
            return len(self._entries)


def _ensure_lock_row(db: Session, session_id: str, jid: str) -> None:
    exists = (
        db.query(ChatLock.id)
        .filter(ChatLock.session_id == session_id)
        .filter(ChatLock.whatsapp_jid == jid)
        .first()
    )
    if exists:
        return
    db.add(ChatLock(session_id=session_id, whatsapp_jid=jid))
    try:
        db.commit()
    except IntegrityError:
        # Another worker inserted it first
        db.rollback()


@contextmanager
def hold_chat_row(db: Session, session_id: str, jid: str, timeout: float) -> Iterator[None]:
    """Hold the chat's lock row ``FOR UPDATE`` for the duration of the block.

    The lock lives on its own connection so the commits ``db`` makes inside the
    block do not release it. Databases without row locks (SQLite) only get the
    row created.
    """
    _ensure_lock_row(db, session_id, jid)
    bind = db.get_bind()
    if bind.dialect.name != "postgresql":
        yield
        return
    with Session(bind=bind) as lock_db:
        lock_db.execute(
            text("SELECT set_config('lock_timeout', :value, true)"),
            {"value": f"{max(int(timeout * 1000), 1)}ms"},
        )
        try:
            (
                lock_db.query(ChatLock.id)
                .filter(ChatLock.session_id == session_id)
                .filter(ChatLock.whatsapp_jid == jid)
                .with_for_update()
                .one()
            )
        except OperationalError as exc:
            lock_db.rollback()
            logger.warning("chatwoot_chat_row_lock_timeout session_id=%s jid=%s", session_id, jid)
            raise LockTimeoutError(f"Timed out waiting for chat row {session_id}/{jid}") from exc
        try:
            yield
        finally:
            lock_db.rollback()
