# Overview: Service-layer operations for payment codes; encapsulates business logic and database work.

"""
Payment Code Generator

Codes look like PD-YYMMDD-NNNNNNN: the business-timezone calendar day and a
7-digit, zero-padded daily counter.

INVARIANTS:
- The Sequence row for a day is the only source of uniqueness.
- The increment is a single UPDATE ... SET value = value + 1. The row stays
  locked until the enclosing transaction ends, so concurrent checkouts on
  the same day queue behind each other instead of reading the same value.
- The first code of a day inserts the row. Two writers racing on that insert
  collide on the primary key; the loser's unit of work is rolled back and
  re-run (run_with_sequence_retry) and takes the UPDATE path.
- A rolled-back transaction takes its increment with it, so a value is never
  handed out twice. Committed values are consecutive.
"""

from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy import update

from ..extensions import db
from ..models import Sequence
from storefront.time_utils import business_day_key
from .concurrency import run_with_sequence_retry


PAYMENT_CODE_PREFIX = "PD"
PAYMENT_CODE_PAD = 7


class SequenceError(Exception):
    """Raised when the day counter cannot be allocated."""
    pass


def format_payment_code(day_key: str, value: int) -> str:
    return f"{PAYMENT_CODE_PREFIX}-{day_key}-{value:0{PAYMENT_CODE_PAD}d}"


def next_sequence_value(day_key: str) -> int:
    """
    Increment-or-create the counter for `day_key` inside the current transaction.

    Does not commit. IntegrityError from a lost insert race propagates so
    the caller's retry wrapper can redo the whole unit of work.
    """
    if not day_key or len(day_key) != 6 or not day_key.isdigit():
        raise SequenceError(f"Invalid day key: {day_key!r}")

    stmt = (
        update(Sequence)
        .where(Sequence.day_key == day_key)
        .values(value=Sequence.value + 1)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    if result.rowcount:
        value = (
            db.session.query(Sequence.value)
            .filter(Sequence.day_key == day_key)
            .scalar()
        )
        if value >= 10 ** PAYMENT_CODE_PAD:
            raise SequenceError(f"Daily payment code space exhausted for {day_key}")
        return value

    db.session.add(Sequence(day_key=day_key, value=1))
    db.session.flush()
    return 1


def allocate_payment_code(now: datetime | None = None) -> str:
    """Allocate a code inside the caller's transaction (no commit)."""
    day_key = business_day_key(current_app.config["BUSINESS_TIMEZONE"], now)
    return format_payment_code(day_key, next_sequence_value(day_key))


def generate_payment_code(now: datetime | None = None) -> str:
    """
    Allocate and commit a standalone payment code.

    Checkout uses allocate_payment_code so the code and the order commit
    together; this entry point is for callers that need a code on its own.
    """
    def _op() -> str:
        code = allocate_payment_code(now)
        db.session.commit()
        return code

    return run_with_sequence_retry(_op)
