# Overview: Transaction helpers shared by the cart, checkout and sequence services.

from __future__ import annotations

import time

from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def is_sqlite() -> bool:
    return db.engine.dialect.name == "sqlite"


def begin_write_transaction() -> None:
    """
    Take the database write lock before the first read of a critical section.

    SQLite has no row locks and ignores FOR UPDATE, so the transaction is
    started with BEGIN IMMEDIATE instead. Other dialects keep the implicit
    transaction and rely on lock_for_update on the rows they read.
    """
    if not is_sqlite():
        return
    # A pending implicit transaction would make BEGIN fail
    db.session.rollback()
    db.session.execute(text("BEGIN IMMEDIATE"))


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    if is_sqlite():
        return query
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on transient failures.

    Retries on OperationalError (database locked, deadlocks) and
    StaleDataError. Domain errors propagate on the first attempt.
    """
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError):
            db.session.rollback()
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))