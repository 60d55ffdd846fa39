# Overview: Unit-of-work helpers; every ledger command runs as one transaction.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db

# Failures worth replaying: lock timeouts/deadlocks and version conflicts
RETRYABLE_ERRORS = (OperationalError, StaleDataError)


def lock_for_update(query):
    """
    Row-lock the rows a command is about to guard (batch, lot).

    SQLite has no SELECT ... FOR UPDATE and compiles this away; Postgres
    holds the lock until the command's transaction ends.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Call func, replaying it after a rollback when the database reports a
    lock conflict. The last conflict is re-raised once attempts run out.
    """
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except RETRYABLE_ERRORS as exc:
            db.session.rollback()
            if attempt == attempts:
                raise
            current_app.logger.warning(
                "Ledger command conflicted (attempt %s/%s): %s", attempt, attempts, exc
            )
            time.sleep(backoff_base * (2 ** (attempt - 1)))


def run_in_transaction(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Run one command as a single transaction.

    Commits when func returns. When func raises, everything it wrote
    (movements, records, sequence bumps) is rolled back before the error
    propagates, so a failed command leaves no ledger rows behind.
    """
    def _unit_of_work():
        try:
            result = func()
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        return result

    return run_with_retry(_unit_of_work, attempts=attempts, backoff_base=backoff_base)
