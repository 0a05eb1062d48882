# Overview: Row locking, unit-of-work retry and commit helpers shared by all services.

from __future__ import annotations

import time

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from . import notification_service


def lock_for_update(query):
    """
    Lock the rows a unit of work reads before writing them.

    NOTE: SQLite ignores SELECT ... FOR UPDATE and serializes writers at the
    database level instead; version_id_col still catches lost updates there.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Run one unit of work; the whole unit is retried on concurrency failures.

    OperationalError (deadlock, lock timeout) and StaleDataError (version_id
    mismatch) are retried with exponential backoff. Any other exception rolls
    the session back and propagates unchanged.
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
    if last_exc:
        raise last_exc


def commit_unit(result=None):
    """
    Commit the unit of work, then hand its queued notifications to the sender.

    The send runs in-process after the commit, on the caller's thread: it
    cannot undo the commit and its failures are only logged, but a slow
    sender adds to request latency. NOTIFICATION_DISPATCH_INLINE=false
    moves delivery to `flask outbox dispatch`.
    """
    db.session.commit()
    notification_service.dispatch_queued()
    return result
