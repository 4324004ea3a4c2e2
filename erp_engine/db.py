from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from erp_engine.config import settings
from erp_engine.errors import BusinessRuleViolation, ConflictError, LockTimeout, NotFound
from erp_engine.logging_config import get_logger

logger = get_logger(__name__)

# lock_not_available, deadlock_detected, serialization_failure
RETRYABLE_PGCODES = {"55P03": LockTimeout, "40P01": ConflictError, "40001": ConflictError}
UNIQUE_VIOLATION_PGCODE = "23505"


class Base(DeclarativeBase):
    pass


def enable_sqlite_transactions(engine: Engine) -> None:
    """Make SQLite open every transaction with BEGIN IMMEDIATE.

    pysqlite defers BEGIN until the first DML statement and never emits it for
    SAVEPOINT. Taking the write lock up front serializes writers for the whole
    transaction, which is the single-writer equivalent of row locks.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def enable_sqlite_foreign_keys(engine: Engine) -> None:
    """SQLite ignores FOREIGN KEY clauses unless asked per connection."""

    @event.listens_for(engine, "connect")
    def _foreign_keys_on(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def make_engine(database_url: str, **kwargs) -> Engine:
    engine = create_engine(database_url, pool_pre_ping=True, **kwargs)
    if engine.dialect.name == "sqlite":
        enable_sqlite_foreign_keys(engine)
        enable_sqlite_transactions(engine)
    return engine


engine = make_engine(settings.database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


def is_unique_violation(exc: IntegrityError) -> bool:
    if getattr(exc.orig, "pgcode", None) == UNIQUE_VIOLATION_PGCODE:
        return True
    return "UNIQUE constraint failed" in str(exc.orig)


def _set_lock_timeout(db: Session) -> None:
    if db.get_bind().dialect.name == "postgresql":
        db.execute(text(f"SET LOCAL lock_timeout = '{int(settings.lock_timeout_ms)}ms'"))


@contextmanager
def unit_of_work(db: Session) -> Iterator[Session]:
    """Run one engine operation as a single transaction.

    Commits on success, rolls back on any exception. Unique collisions and
    PostgreSQL lock/deadlock/serialization failures come out as retryable
    conflicts. Any other integrity failure (CHECK, NOT NULL, foreign key) is
    permanent and raised as a non-retryable business rule violation.
    """
    try:
        _set_lock_timeout(db)
        yield db
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        if is_unique_violation(exc):
            logger.warning("unique conflict, transaction rolled back: %s", exc.orig)
            raise ConflictError("conflicting concurrent change, retry the request") from exc
        logger.error("integrity violation, transaction rolled back: %s", exc.orig)
        raise BusinessRuleViolation("integrity constraint violated, the change was not applied") from exc
    except DBAPIError as exc:
        db.rollback()
        pgcode = getattr(exc.orig, "pgcode", None)
        error_cls = RETRYABLE_PGCODES.get(pgcode)
        if error_cls is None and "database is locked" in str(exc.orig):
            error_cls = LockTimeout
        if error_cls is None:
            raise
        logger.warning("transaction aborted by database contention (%s)", pgcode)
        raise error_cls("could not acquire lock in time, retry the request") from exc
    except BaseException:
        db.rollback()
        raise


def get_or_raise(db: Session, model, ident, label: str):
    row = db.get(model, ident)
    if row is None:
        raise NotFound(label, ident)
    return row
