# Overview: Row locking and bounded retry for transactional service operations.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import TransactionConflict
from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    On SQLite the version_id columns on products/variants/orders turn a lost
    update into a StaleDataError, which run_with_retry handles the same way.
    """
    return query.with_for_update()


def begin_immediate():
    """Take the SQLite write lock up front; other dialects rely on row locks."""
    if db.engine.dialect.name == "sqlite":
        db.session.execute(text("BEGIN IMMEDIATE"))


def lock_rows_in_order(model, ids):
    """
    Lock `model` rows for the given ids in ascending id order.

    Every transaction that touches several stock rows goes through here, so
    two orders with overlapping items always acquire locks in the same
    sequence and cannot deadlock on each other.
    """
    unique_ids = sorted({i for i in ids if i is not None})
    if not unique_ids:
        return {}
    rows = (
        lock_for_update(db.session.query(model).filter(model.id.in_(unique_ids)))
        .order_by(model.id.asc())
        .all()
    )
    return {row.id: row for row in rows}


# SQLSTATEs / driver codes for lock waits, deadlocks and serialization failures
_LOCK_SQLSTATES = frozenset({"40P01", "55P03", "40001"})
_LOCK_MYSQL_CODES = frozenset({1205, 1213})
_LOCK_SQLITE_MESSAGES = ("database is locked", "database table is locked", "database is busy")


def is_lock_error(exc: OperationalError) -> bool:
    """True when the driver error is a lock timeout, deadlock or SQLite busy."""
    orig = getattr(exc, "orig", None)
    if orig is None:
        return False
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if sqlstate in _LOCK_SQLSTATES:
        return True
    args = getattr(orig, "args", ())
    if args and args[0] in _LOCK_MYSQL_CODES:
        return True
    message = str(orig).lower()
    return any(fragment in message for fragment in _LOCK_SQLITE_MESSAGES)


def _retry_settings(attempts, backoff_base):
    try:
        config = current_app.config
    except RuntimeError:
        config = {}
    if attempts is None:
        attempts = config.get("ORDER_RETRY_ATTEMPTS", 3)
    if backoff_base is None:
        backoff_base = config.get("ORDER_RETRY_BACKOFF", 0.1)
    return max(1, int(attempts)), float(backoff_base)


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries lock timeouts, deadlocks and SQLite busy errors (see
    is_lock_error) and StaleDataError (optimistic locking conflicts), with
    exponential backoff. When the attempts run out the failure surfaces as
    TransactionConflict.

    Any other exception, other OperationalErrors included, rolls the session
    back and propagates unchanged, so a failed business check never leaves
    half-flushed rows in the session.
    """
    attempts, backoff_base = _retry_settings(attempts, backoff_base)
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if isinstance(exc, OperationalError) and not is_lock_error(exc):
                raise
            if attempt >= attempts - 1:
                raise TransactionConflict(attempts=attempts) from exc
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
