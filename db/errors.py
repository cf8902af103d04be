"""
db/errors.py -- Infrastructure error taxonomy for the Connection Manager.

Every SQLAlchemy/DBAPI exception is translated into one of these at the
ConnectionManager edge. Nothing above db/ should catch sqlalchemy.exc types.

  TransientError        -- retrying may help (timeout, reset, refused, lock).
  PermanentError        -- retrying cannot help (syntax, constraint, auth).
  ExhaustedRetriesError -- a TransientError that outlived the retry budget.
"""

from __future__ import annotations


class DatabaseError(Exception):
    """Base class for all errors surfaced by db.connection."""


class TransientError(DatabaseError):
    """Infrastructure failure plausibly resolved by retrying."""


class PermanentError(DatabaseError):
    """Failure that retrying cannot fix.

    unique_violation is True when the statement broke a UNIQUE constraint,
    which the auth layer maps to a duplicate-email outcome. attempts is the
    attempt on which it happened; above 1, an earlier attempt may have
    committed before its connection failed.
    """

    def __init__(self, message: str, sqlstate: str | None = None, unique_violation: bool = False) -> None:
        super().__init__(message)
        self.sqlstate = sqlstate
        self.unique_violation = unique_violation
        self.attempts = 1


class ExhaustedRetriesError(DatabaseError):
    """Raised after the last retry of a transient failure."""

    def __init__(self, attempts: int, last_error: TransientError) -> None:
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error
