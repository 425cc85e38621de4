# Overview: Allocation of human-readable order numbers (O-YYYYMMDD-NNN).

from __future__ import annotations

from datetime import date

from sqlalchemy import update

from ..extensions import db
from ..models import Order, OrderSequence
from ..time_utils import order_date_stamp

ORDER_PREFIX = "O"
MIN_PAD = 3


def format_order_number(day_stamp: str, number: int) -> str:
    """O-YYYYMMDD-NNN; the counter widens past 999 rather than wrapping."""
    return f"{ORDER_PREFIX}-{day_stamp}-{number:0{MIN_PAD}d}"


def _allocate(day_stamp: str) -> int:
    """
    Take the next counter value for a day inside the caller's transaction.

    UPDATE-then-INSERT: the increment is a single statement, and the first
    order of a day inserts the row. A concurrent first insert loses on the
    unique constraint and surfaces as IntegrityError for the caller to retry
    the whole transaction.
    """
    stmt = (
        update(OrderSequence)
        .where(OrderSequence.sequence_date == day_stamp)
        .values(next_number=OrderSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )
    if db.session.execute(stmt).rowcount:
        current = (
            db.session.query(OrderSequence.next_number)
            .filter_by(sequence_date=day_stamp)
            .scalar()
        )
        return current - 1

    db.session.add(OrderSequence(sequence_date=day_stamp, next_number=2))
    db.session.flush()
    return 1


def next_order_number(day: date | None = None) -> str:
    """
    Allocate an unused order number for the given UTC day (default today).

    Numbers that are already taken (e.g. orders imported or created before
    the counter existed) are skipped. Must run inside the checkout
    transaction; does not commit.

    Raises IntegrityError when another transaction created the day's counter
    first.
    """
    day_stamp = order_date_stamp(day)
    while True:
        candidate = format_order_number(day_stamp, _allocate(day_stamp))
        taken = db.session.query(Order.id).filter_by(order_number=candidate).first()
        if taken is None:
            return candidate
