"""
tests/test_connection.py -- Unit tests for db/connection.py.

Covers:
  - execute() returns buffered rows, rowcount and attempt count
  - every lease is released on success, permanent failure and transient failure
  - transient failure on the first attempt -> success with attempts == 2
  - transient failure beyond the retry budget -> ExhaustedRetriesError
  - PermanentError is never retried
  - pool exhaustion (connection timeout) is a transient failure
  - classify_error() mapping for SQLite and PostgreSQL style errors
  - one log record per execution with structured fields
"""

from __future__ import annotations

import logging

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError, ProgrammingError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from db.connection import ConnectionManager, classify_error
from db.errors import ExhaustedRetriesError, PermanentError, TransientError


def _reset_error() -> OperationalError:
    return OperationalError("SELECT 1", {}, ConnectionResetError("connection reset by peer"))


class _PgError(Exception):
    """Stand-in for a psycopg2 error carrying a SQLSTATE code."""

    def __init__(self, message: str, pgcode: str) -> None:
        super().__init__(message)
        self.pgcode = pgcode


@pytest.fixture
def items_db(db: ConnectionManager) -> ConnectionManager:
    db.execute("CREATE TABLE items (id INTEGER PRIMARY KEY, label TEXT UNIQUE NOT NULL)")
    return db


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestExecute:
    def test_select_returns_rows(self, items_db: ConnectionManager) -> None:
        items_db.execute("INSERT INTO items (label) VALUES (:label)", {"label": "a"})
        items_db.execute("INSERT INTO items (label) VALUES (:label)", {"label": "b"})

        result = items_db.execute("SELECT label FROM items ORDER BY label")

        assert [r.label for r in result.rows] == ["a", "b"]
        assert result.rowcount == 2
        assert result.attempts == 1
        assert result.first().label == "a"

    def test_write_reports_rowcount(self, items_db: ConnectionManager) -> None:
        items_db.execute("INSERT INTO items (label) VALUES ('x')")
        result = items_db.execute("DELETE FROM items WHERE label = :label", {"label": "x"})
        assert result.rowcount == 1
        assert result.rows == []
        assert result.first() is None

    def test_lease_released_after_success(self, items_db: ConnectionManager) -> None:
        items_db.execute("SELECT 1")
        assert items_db.leased == 0

    def test_check_reports_reachable_database(self, db: ConnectionManager) -> None:
        assert db.check() is True


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------


class TestPermanentFailures:
    def test_syntax_error_is_permanent_and_not_retried(self, db: ConnectionManager, monkeypatch) -> None:
        calls = []
        original = db._acquire

        def counting_acquire():
            calls.append(1)
            return original()

        monkeypatch.setattr(db, "_acquire", counting_acquire)

        with pytest.raises(PermanentError):
            db.execute("SELEC nonsense")
        assert len(calls) == 1
        assert db.leased == 0

    def test_unique_violation_flagged(self, items_db: ConnectionManager) -> None:
        items_db.execute("INSERT INTO items (label) VALUES ('dup')")
        with pytest.raises(PermanentError) as exc_info:
            items_db.execute("INSERT INTO items (label) VALUES ('dup')")
        assert exc_info.value.unique_violation is True
        assert exc_info.value.attempts == 1
        assert items_db.leased == 0

    def test_failed_write_leaves_no_partial_row(self, items_db: ConnectionManager) -> None:
        items_db.execute("INSERT INTO items (label) VALUES ('dup')")
        with pytest.raises(PermanentError):
            items_db.execute("INSERT INTO items (label) VALUES ('dup')")
        assert items_db.execute("SELECT COUNT(*) AS n FROM items").first().n == 1


class TestTransientFailures:
    def test_retry_after_single_disconnect(self, items_db: ConnectionManager, monkeypatch) -> None:
        """First attempt loses the connection, second succeeds -> attempts == 2."""
        original = items_db._acquire
        failures = iter([_reset_error()])

        def flaky_acquire():
            err = next(failures, None)
            if err is not None:
                raise err
            return original()

        monkeypatch.setattr(items_db, "_acquire", flaky_acquire)

        result = items_db.execute("SELECT COUNT(*) AS n FROM items")

        assert result.attempts == 2
        assert result.first().n == 0
        assert items_db.leased == 0

    def test_persistent_disconnect_exhausts_retries(self, db: ConnectionManager, monkeypatch) -> None:
        def broken_acquire():
            raise _reset_error()

        monkeypatch.setattr(db, "_acquire", broken_acquire)

        with pytest.raises(ExhaustedRetriesError) as exc_info:
            db.execute("SELECT 1")

        err = exc_info.value
        assert err.attempts == db.max_retries + 1 == 3
        assert isinstance(err.last_error, TransientError)
        assert err.__cause__ is err.last_error
        assert db.leased == 0

    def test_insert_committed_before_reset_resurfaces_as_duplicate(
        self, items_db: ConnectionManager, monkeypatch
    ) -> None:
        """The retry of a committed INSERT hits the unique index on attempt 2."""
        original = items_db._execute_once
        resets = iter([TransientError("connection reset after commit")])

        def reset_after_commit(statement, parameters):
            rowset = original(statement, parameters)
            err = next(resets, None)
            if err is not None:
                raise err
            return rowset

        monkeypatch.setattr(items_db, "_execute_once", reset_after_commit)

        with pytest.raises(PermanentError) as exc_info:
            items_db.execute("INSERT INTO items (label) VALUES ('once')")

        assert exc_info.value.unique_violation is True
        assert exc_info.value.attempts == 2
        assert items_db.execute("SELECT COUNT(*) AS n FROM items").first().n == 1

    def test_zero_retry_budget_fails_after_one_attempt(self, monkeypatch) -> None:
        manager = ConnectionManager("sqlite://", max_retries=0, retry_base_delay=0)

        def broken_acquire():
            raise _reset_error()

        monkeypatch.setattr(manager, "_acquire", broken_acquire)
        try:
            with pytest.raises(ExhaustedRetriesError) as exc_info:
                manager.execute("SELECT 1")
            assert exc_info.value.attempts == 1
        finally:
            manager.dispose()

    def test_pool_exhaustion_times_out_as_transient(self) -> None:
        """With the only connection leased elsewhere, acquisition times out and is retried."""
        manager = ConnectionManager("sqlite://", pool_size=1, pool_timeout=0.05, max_retries=1, retry_base_delay=0)
        held = manager.engine.connect()
        try:
            with pytest.raises(ExhaustedRetriesError) as exc_info:
                manager.execute("SELECT 1")
            assert exc_info.value.attempts == 2
        finally:
            held.close()
        assert manager.execute("SELECT 1").attempts == 1
        manager.dispose()

    def test_check_returns_false_when_unreachable(self, db: ConnectionManager, monkeypatch) -> None:
        def broken_acquire():
            raise _reset_error()

        monkeypatch.setattr(db, "_acquire", broken_acquire)
        assert db.check() is False


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class TestClassifyError:
    def test_connection_reset_is_transient(self) -> None:
        assert isinstance(classify_error(_reset_error()), TransientError)

    def test_pool_timeout_is_transient(self) -> None:
        assert isinstance(classify_error(PoolTimeoutError("QueuePool limit reached")), TransientError)

    def test_postgres_connection_sqlstate_is_transient(self) -> None:
        exc = OperationalError("SELECT 1", {}, _PgError("server closed", "08006"))
        assert isinstance(classify_error(exc), TransientError)

    def test_timeout_message_is_transient(self) -> None:
        exc = OperationalError("SELECT 1", {}, Exception("canceling statement due to statement timeout"))
        assert isinstance(classify_error(exc), TransientError)

    def test_postgres_unique_violation(self) -> None:
        exc = IntegrityError("INSERT", {}, _PgError("duplicate key value", "23505"))
        err = classify_error(exc)
        assert isinstance(err, PermanentError)
        assert err.unique_violation is True
        assert err.sqlstate == "23505"

    def test_not_null_violation_is_not_unique(self) -> None:
        exc = IntegrityError("INSERT", {}, _PgError("null value in column", "23502"))
        err = classify_error(exc)
        assert isinstance(err, PermanentError)
        assert err.unique_violation is False

    def test_programming_error_is_permanent(self) -> None:
        exc = ProgrammingError("SELEC", {}, _PgError("syntax error at or near", "42601"))
        assert isinstance(classify_error(exc), PermanentError)

    def test_auth_failure_is_permanent(self) -> None:
        exc = OperationalError("connect", {}, _PgError("password authentication failed", "28P01"))
        assert isinstance(classify_error(exc), PermanentError)


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


class TestExecutionLogging:
    def test_one_record_per_execution_with_fields(self, db: ConnectionManager, caplog) -> None:
        with caplog.at_level(logging.DEBUG, logger="authflow.db"):
            db.execute("SELECT 1")

        records = [r for r in caplog.records if r.name == "authflow.db" and hasattr(r, "statement_digest")]
        assert len(records) == 1
        record = records[0]
        assert len(record.statement_digest) == 12
        assert record.rowcount == 1
        assert record.attempts == 1
        assert record.duration_ms >= 0

    def test_production_mode_logs_at_debug(self, caplog) -> None:
        manager = ConnectionManager("sqlite://", verbose=False)
        try:
            with caplog.at_level(logging.INFO, logger="authflow.db"):
                manager.execute("SELECT 1")
        finally:
            manager.dispose()
        assert not [r for r in caplog.records if hasattr(r, "statement_digest")]
