# Overview: Atomic document numbering for job cards, payments, stock transactions and SKUs.

from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence
from ..time_utils import day_stamp


SCOPE_JOB = "job"
SCOPE_PAYMENT = "payment"
SCOPE_STOCK_TXN = "stock_txn"


class DocumentSequenceError(Exception):
    """Raised when document sequence operations fail."""


def _increment(scope: str, day: str) -> int | None:
    stmt = (
        update(DocumentSequence)
        .where(DocumentSequence.scope == scope, DocumentSequence.day == day)
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    if not result.rowcount:
        return None
    current = db.session.execute(
        select(DocumentSequence.next_number).where(
            DocumentSequence.scope == scope,
            DocumentSequence.day == day,
        )
    ).scalar_one()
    return current - 1


def allocate(scope: str, *, daily: bool = True, on=None) -> int:
    """
    Allocate the next counter value for (scope, day) inside the caller's unit of work.

    The increment is a single UPDATE ... SET next_number = next_number + 1, so
    two concurrent allocations can never read the same value. The first
    allocation of a day inserts the row under a savepoint; losing that insert
    race falls back to the increment.

    Does not commit: the number is only consumed if the caller's document commits.
    """
    if not scope:
        raise DocumentSequenceError("scope is required")
    day = day_stamp(on) if daily else ""

    number = _increment(scope, day)
    if number is not None:
        return number

    try:
        with db.session.begin_nested():
            db.session.add(DocumentSequence(scope=scope, day=day, next_number=2))
        return 1
    except IntegrityError:
        number = _increment(scope, day)
        if number is None:
            raise DocumentSequenceError(f"Unable to allocate sequence for {scope}/{day}")
        return number


def next_document_number(scope: str, prefix: str, *, pad: int = 4, daily: bool = True, on=None) -> str:
    """
    Format the next number for a scope.

    Daily scopes render as PREFIX + YYYYMMDD + zero-padded counter
    (JOB202601150001); non-daily scopes as PREFIX + counter (SPA000001).
    """
    number = allocate(scope, daily=daily, on=on)
    if daily:
        return f"{prefix}{day_stamp(on)}{number:0{pad}d}"
    return f"{prefix}{number:0{pad}d}"
