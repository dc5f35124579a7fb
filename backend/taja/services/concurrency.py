# Overview: Service-layer operations for concurrency; guarded updates and retries.

from __future__ import annotations

import time

from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def guarded_update(model, criteria: list, values: dict) -> bool:
    """
    Single conditional UPDATE ... WHERE <criteria>.

    Returns True when exactly one row matched. This is the compare-and-set
    primitive for state machines and counters: the check and the write happen
    in one statement, so two callers racing on the same row cannot both win.
    The in-memory instance is NOT synchronized; refresh or commit afterwards.
    """
    stmt = (
        update(model)
        .where(*criteria)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    return result.rowcount == 1


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). Only for operations that are safe to
    run again from scratch.
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
    if last_exc:
        raise last_exc
