# Overview: Service-layer operations for concurrency; encapsulates business logic and database work.

from __future__ import annotations

import time

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


TRANSIENT_ERRORS = (OperationalError, StaleDataError)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1, retry_on: tuple = TRANSIENT_ERRORS):
    """
    Execute a DB unit of work with retry on concurrency-related failures.

    The session is rolled back before each retry, so `func` must redo all
    of its reads and writes from scratch.
    """
    for attempt in range(attempts):
        try:
            return func()
        except retry_on:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))


def run_with_sequence_retry(func, *, attempts: int = 5, backoff_base: float = 0.05):
    """
    Like run_with_retry, but also retries IntegrityError.

    Used by units of work that may lose the race to create a day's Sequence
    row; the loser rolls back and finds the row on the next attempt.
    """
    return run_with_retry(
        func,
        attempts=attempts,
        backoff_base=backoff_base,
        retry_on=TRANSIENT_ERRORS + (IntegrityError,),
    )
