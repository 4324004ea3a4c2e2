"""
Named, transaction-scoped locks.

Shared counters (document sequences, batch instance codes) are serialized
with a named exclusive lock that is released when the surrounding
transaction commits or rolls back. Nothing here keeps state in the process,
so the locks hold across any number of API instances.

PostgreSQL uses ``pg_advisory_xact_lock`` on a stable 64-bit hash of the
name. Other databases fall back to a row in ``named_lock`` that is updated
inside the transaction; the row write lock is the mutex. On SQLite every
transaction already begins with BEGIN IMMEDIATE (see ``db.py``), so writers
are serialized before any lock is requested.

Lock order
----------
Every mutating operation acquires its locks in this order and never goes
back to an earlier class:

1. named locks (sequence numbers, instance codes)
2. the order / return / purchase header row
3. inventory batch rows, in processing order (FIFO: created_at, id;
   restores and explicit picks: the order in which lines are processed)
4. the contact row (ledger balance)

Ledger writes are always the last step of an operation, which is what keeps
the contact lock at the end.
"""

import hashlib
from abc import ABC, abstractmethod
from datetime import datetime, timezone

from sqlalchemy import text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from erp_engine.logging_config import get_logger
from erp_engine.models import NamedLock

logger = get_logger(__name__)


def lock_key(name: str) -> int:
    """Signed 64-bit key for ``name``, stable across processes and restarts."""
    digest = hashlib.blake2b(name.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


class LockManager(ABC):
    @abstractmethod
    def acquire(self, db: Session, name: str) -> None:
        """Block until the named lock is held by the current transaction."""


class AdvisoryLockManager(LockManager):
    def acquire(self, db: Session, name: str) -> None:
        # Blocks until granted or lock_timeout (set per transaction) fires.
        db.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": lock_key(name)})
        logger.debug("advisory lock %s acquired", name)


class TableLockManager(LockManager):
    def acquire(self, db: Session, name: str) -> None:
        now = _now()
        result = db.execute(
            update(NamedLock).where(NamedLock.name == name).values(acquired_at=now)
        )
        if result.rowcount:
            logger.debug("named lock %s acquired", name)
            return
        try:
            with db.begin_nested():
                db.add(NamedLock(name=name, acquired_at=now))
        except IntegrityError:
            # Another transaction created the row first; queue behind it.
            db.execute(update(NamedLock).where(NamedLock.name == name).values(acquired_at=now))
        logger.debug("named lock %s acquired", name)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def get_lock_manager(db: Session) -> LockManager:
    if db.get_bind().dialect.name == "postgresql":
        return AdvisoryLockManager()
    return TableLockManager()


def acquire(db: Session, name: str) -> None:
    get_lock_manager(db).acquire(db, name)
