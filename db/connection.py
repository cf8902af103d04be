"""
db/connection.py -- Pooled database access with retry on transient failures.

Pattern: Gateway. ConnectionManager is the only object in AuthFlow that talks
to a DBAPI connection. The store hands it SQLAlchemy Core statements (or raw
SQL text) and gets back a RowSet; it never sees a Connection or an
sqlalchemy.exc type.

Lifecycle:
  Built once in the FastAPI lifespan (api/main.py) or the CLI (main.py),
  passed explicitly to UserStore, disposed on shutdown. There is no module
  level engine.

Per-call lifecycle (one attempt):
  acquire connection -> execute -> commit -> release
  Release happens on every exit path. A connection that failed with a
  transient error is invalidated first so the pool never hands it out again.

Retry policy (tenacity):
  Only TransientError is retried, up to max_retries extra attempts, with an
  exponential wait of retry_base_delay * 2^n between them. PermanentError is
  raised on the first occurrence. When the budget runs out the last
  TransientError is wrapped in ExhaustedRetriesError.

Pool:
  QueuePool with max_overflow=0, so pool_size is a hard cap on concurrent
  leases. Callers beyond the cap wait pool_timeout seconds, then get a
  TransientError (sqlalchemy.exc.TimeoutError underneath).

Layer rule: db/ imports only stdlib + third-party libraries.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from dataclasses import dataclass, field
from functools import partial
from typing import Any

from sqlalchemy import MetaData, create_engine, event, text
from sqlalchemy.engine import Connection, Engine, Row
from sqlalchemy.exc import DBAPIError, DisconnectionError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.pool import QueuePool
from sqlalchemy.sql.expression import Executable
from tenacity import RetryCallState, RetryError, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from db.errors import DatabaseError, ExhaustedRetriesError, PermanentError, TransientError

logger = logging.getLogger("authflow.db")

# SQLSTATE prefixes that indicate a retryable condition:
#   08xxx connection exception, 57P01-03 server shutdown / cannot connect now,
#   53300 too many connections, 40001 serialization failure, 40P01 deadlock.
_TRANSIENT_SQLSTATES = ("08", "57P", "53300", "40001", "40P01")

# Message fragments for drivers that do not expose SQLSTATE (SQLite, and
# psycopg2 errors raised before a server response exists).
_TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "connection reset",
    "connection refused",
    "could not connect",
    "server closed the connection",
    "terminating connection",
    "connection already closed",
    "database is locked",
)

_UNIQUE_VIOLATION_SQLSTATE = "23505"

_RETRY_MAX_DELAY = 5.0


@dataclass
class RowSet:
    """Buffered result of one execute() call.

    rows are fully fetched before the connection is released, so they stay
    readable after the lease ends. attempts counts every try, including the
    one that succeeded.
    """

    rows: list[Row] = field(default_factory=list)
    rowcount: int = 0
    attempts: int = 1

    def first(self) -> Row | None:
        return self.rows[0] if self.rows else None


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = exc.orig
    # psycopg2 exposes pgcode, psycopg 3 exposes sqlstate.
    return getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)


def _is_unique_violation(exc: IntegrityError, sqlstate: str | None) -> bool:
    if sqlstate == _UNIQUE_VIOLATION_SQLSTATE:
        return True
    return "unique constraint" in str(exc.orig).lower()


def classify_error(exc: SQLAlchemyError) -> TransientError | PermanentError:
    """Translate a SQLAlchemy exception into the db.errors taxonomy.

    Order matters: pool timeouts and invalidated connections are transient no
    matter what the driver says; an IntegrityError is always permanent.
    """
    if isinstance(exc, (PoolTimeoutError, DisconnectionError)):
        return TransientError(str(exc))
    if not isinstance(exc, DBAPIError):
        return PermanentError(str(exc))

    sqlstate = _sqlstate(exc)
    if isinstance(exc, IntegrityError):
        return PermanentError(str(exc.orig), sqlstate=sqlstate, unique_violation=_is_unique_violation(exc, sqlstate))
    if exc.connection_invalidated:
        return TransientError(str(exc.orig))
    if sqlstate and sqlstate.startswith(_TRANSIENT_SQLSTATES):
        return TransientError(str(exc.orig))
    if isinstance(exc.orig, (ConnectionError, TimeoutError)):
        return TransientError(str(exc.orig))
    if isinstance(exc, (OperationalError, InterfaceError)):
        message = str(exc.orig).lower()
        if any(marker in message for marker in _TRANSIENT_MARKERS):
            return TransientError(str(exc.orig))
    return PermanentError(str(exc.orig), sqlstate=sqlstate)


def statement_digest(statement: Executable) -> str:
    """Short, stable fingerprint of a statement's SQL text for log correlation."""
    return hashlib.sha256(str(statement).encode("utf-8")).hexdigest()[:12]


# ---------------------------------------------------------------------------
# SQLite tuning
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _log_retry(digest: str, retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Transient database error on attempt %d (statement %s), retrying in %.2fs: %s",
        retry_state.attempt_number,
        digest,
        retry_state.next_action.sleep if retry_state.next_action else 0.0,
        exc,
    )


# ---------------------------------------------------------------------------
# Connection manager
# ---------------------------------------------------------------------------


class ConnectionManager:
    """Bounded connection pool with a single execute() entry point.

    Usage:
        db = ConnectionManager("postgresql+psycopg2://user:pw@host/authflow_db")
        rows = db.execute("SELECT id FROM users WHERE email = :email", {"email": "a@b.com"}).rows
        db.dispose()
    """

    def __init__(
        self,
        url: str,
        *,
        pool_size: int = 1,
        pool_timeout: float = 2.0,
        max_retries: int = 2,
        retry_base_delay: float = 0.1,
        connect_timeout: int = 10,
        require_tls: bool = False,
        verbose: bool = True,
    ) -> None:
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.verbose = verbose
        self._lease_lock = threading.Lock()
        self._leased = 0

        connect_args: dict = {}
        if url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        elif url.startswith("postgresql"):
            connect_args["connect_timeout"] = connect_timeout
            if require_tls:
                connect_args["sslmode"] = "require"

        self.engine: Engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=pool_size,
            max_overflow=0,
            pool_timeout=pool_timeout,
            connect_args=connect_args,
        )
        if url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)

    @classmethod
    def from_settings(cls, settings) -> ConnectionManager:
        """Build a manager from core.config.Settings.

        Production (DEBUG=false) requires TLS on PostgreSQL links and keeps
        per-query log records at DEBUG level.
        """
        return cls(
            settings.resolved_database_url,
            pool_size=settings.db_pool_size,
            pool_timeout=settings.db_pool_timeout,
            max_retries=settings.db_max_retries,
            retry_base_delay=settings.db_retry_base_delay,
            connect_timeout=settings.db_connect_timeout,
            require_tls=settings.production,
            verbose=settings.debug,
        )

    @property
    def leased(self) -> int:
        """Number of connections currently checked out through execute()."""
        with self._lease_lock:
            return self._leased

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(self, statement: str | Executable, parameters: dict[str, Any] | None = None) -> RowSet:
        """Run one statement with retry on transient failures.

        Raises:
            PermanentError: on the first non-retryable failure.
            ExhaustedRetriesError: when every attempt failed transiently.
        """
        if isinstance(statement, str):
            statement = text(statement)
        digest = statement_digest(statement)
        start = time.perf_counter()

        retrying = Retrying(
            retry=retry_if_exception_type(TransientError),
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.retry_base_delay, max=_RETRY_MAX_DELAY),
            before_sleep=partial(_log_retry, digest),
        )
        try:
            for attempt in retrying:
                with attempt:
                    try:
                        rowset = self._execute_once(statement, parameters)
                    except PermanentError as exc:
                        exc.attempts = attempt.retry_state.attempt_number
                        raise
                    rowset.attempts = attempt.retry_state.attempt_number
        except RetryError as exc:
            last_attempt = exc.last_attempt
            last_error = last_attempt.exception()
            logger.error(
                "Statement %s failed after %d attempt(s): %s",
                digest,
                last_attempt.attempt_number,
                last_error,
                extra={"statement_digest": digest, "attempts": last_attempt.attempt_number},
            )
            raise ExhaustedRetriesError(last_attempt.attempt_number, last_error) from last_error

        ms = (time.perf_counter() - start) * 1000
        logger.log(
            logging.INFO if self.verbose else logging.DEBUG,
            "Executed statement %s in %.1fms (rows=%d, attempts=%d)",
            digest,
            ms,
            rowset.rowcount,
            rowset.attempts,
            extra={
                "statement_digest": digest,
                "duration_ms": round(ms, 1),
                "rowcount": rowset.rowcount,
                "attempts": rowset.attempts,
            },
        )
        return rowset

    def _execute_once(self, statement: Executable, parameters: dict[str, Any] | None) -> RowSet:
        conn: Connection | None = None
        try:
            conn = self._acquire()
            result = conn.execute(statement, parameters or {})
            if result.returns_rows:
                rows = list(result.fetchall())
                rowcount = len(rows)
            else:
                rows = []
                rowcount = result.rowcount
            conn.commit()
            return RowSet(rows=rows, rowcount=rowcount)
        except SQLAlchemyError as exc:
            error = classify_error(exc)
            if conn is not None and isinstance(error, TransientError):
                # The connection may be poisoned; drop it instead of pooling it.
                conn.invalidate()
            raise error from exc
        finally:
            if conn is not None:
                self._release(conn)

    def _acquire(self) -> Connection:
        conn = self.engine.connect()
        with self._lease_lock:
            self._leased += 1
        return conn

    def _release(self, conn: Connection) -> None:
        try:
            conn.close()
        finally:
            with self._lease_lock:
                self._leased -= 1

    # ------------------------------------------------------------------
    # Lifecycle helpers
    # ------------------------------------------------------------------

    def create_schema(self, metadata: MetaData) -> None:
        """Create any missing tables. Idempotent; called once at startup."""
        try:
            metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise classify_error(exc) from exc

    def check(self) -> bool:
        """Return True if a trivial query succeeds. Never raises."""
        try:
            self.execute("SELECT 1")
        except DatabaseError:
            logger.warning("Database connectivity check failed", exc_info=True)
            return False
        return True

    def dispose(self) -> None:
        """Close every pooled connection. Call on shutdown."""
        self.engine.dispose()
