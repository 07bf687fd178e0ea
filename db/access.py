"""
db/access.py -- Pooled, retrying SQLAlchemy access for the auth stores.

Uses SQLAlchemy Core with an explicitly constructed engine. Nothing here is a
module-level singleton: the API lifespan (or a test) builds one DataAccess
and hands it to the stores, then closes it on shutdown.

Two entry points:

  execute(statement)        -- one statement on a pooled connection, committed,
                               rows buffered before the connection goes back.
  run_transaction(work)     -- work(conn) inside BEGIN/COMMIT, rolled back on
                               any exception, re-run on transient faults.

Both acquire connections with `with` blocks, so a connection is returned to
the pool on every exit path, exceptions included.

Pool discipline (QueuePool, used for file and server databases):
  pool_size     = DB_POOL_MIN  (kept open; warm() pre-opens them)
  max_overflow  = DB_POOL_MAX - DB_POOL_MIN
  pool_timeout  = DB_CONNECT_TIMEOUT
  A checkout listener discards connections that sat idle longer than
  DB_IDLE_TIMEOUT or served DB_MAX_USES checkouts. Raising DisconnectionError
  from a checkout handler is SQLAlchemy's documented way to make the pool
  drop that connection and hand out a fresh one.

SQLite specifics:
  WAL journal mode is set per connection (PRAGMAs are not inherited).
  pysqlite's implicit BEGIN is disabled and SQLAlchemy's begin event emits
  our own. run_transaction() starts with BEGIN IMMEDIATE, so a multi-statement
  unit of work takes the write lock up front and waits on the busy timeout
  (DB_STATEMENT_TIMEOUT) instead of failing mid-transaction. Single
  statements from execute() use a plain deferred BEGIN, so reads never queue
  behind a writer.
  In-memory databases use SQLAlchemy's per-thread pool and skip the
  QueuePool settings.

Security: statements and bound parameters are never logged -- see
db.errors.describe().
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from sqlalchemy import create_engine, event, text
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import Connection, Engine, make_url

from core.config import Settings
from core.errors import AuthKeepError, FatalDataError
from db.errors import describe, is_transient
from db.retry import NO_RETRY, RetryPolicy

logger = logging.getLogger("authkeep.db")

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Result buffer
# ---------------------------------------------------------------------------


@dataclass
class QueryResult:
    """Rows and rowcount captured before the connection is released."""

    rows: list = field(default_factory=list)
    rowcount: int = 0

    def first(self):
        return self.rows[0] if self.rows else None

    def scalar(self):
        row = self.first()
        return row[0] if row is not None else None

    def all(self) -> list:
        return list(self.rows)


# ---------------------------------------------------------------------------
# Engine construction
# ---------------------------------------------------------------------------


def _is_memory_sqlite(url) -> bool:
    return url.get_backend_name() == "sqlite" and (
        not url.database or url.database == ":memory:" or url.query.get("mode") == "memory"
    )


def _sqlite_connect(dbapi_conn, connection_record) -> None:
    """Enable WAL and hand transaction control to SQLAlchemy.

    WAL (Write-Ahead Logging) lets readers proceed while a writer holds the
    lock. Setting isolation_level = None stops pysqlite from emitting its own
    deferred BEGIN; _sqlite_begin emits the BEGIN instead.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")
    dbapi_conn.isolation_level = None


_IMMEDIATE = "sqlite_begin_immediate"


def _sqlite_begin(conn: Connection) -> None:
    if conn.get_execution_options().get(_IMMEDIATE):
        conn.exec_driver_sql("BEGIN IMMEDIATE")
    else:
        conn.exec_driver_sql("BEGIN")


def _install_connection_limits(engine: Engine, max_uses: int, idle_timeout: float) -> None:
    """Retire pooled connections that are too old in use count or idle time."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_conn, record) -> None:
        record.info["uses"] = 0
        record.info["checked_in_at"] = None

    @event.listens_for(engine, "checkout")
    def _on_checkout(dbapi_conn, record, proxy) -> None:
        checked_in_at = record.info.get("checked_in_at")
        if checked_in_at is not None and time.monotonic() - checked_in_at > idle_timeout:
            raise sa_exc.DisconnectionError("connection idle longer than the idle timeout")
        uses = record.info.get("uses", 0)
        if uses >= max_uses:
            raise sa_exc.DisconnectionError("connection reached its maximum use count")
        record.info["uses"] = uses + 1

    @event.listens_for(engine, "checkin")
    def _on_checkin(dbapi_conn, record) -> None:
        record.info["checked_in_at"] = time.monotonic()


def build_engine(settings: Settings) -> Engine:
    """Create the SQLAlchemy engine described by settings."""
    url = make_url(settings.database_url)
    backend = url.get_backend_name()
    connect_args: dict[str, Any] = {}
    kwargs: dict[str, Any] = {"pool_pre_ping": True}
    memory = _is_memory_sqlite(url)

    if backend == "sqlite":
        connect_args["check_same_thread"] = False
        # Seconds a statement waits on a locked database before failing.
        connect_args["timeout"] = settings.db_statement_timeout
    elif backend == "postgresql":
        connect_args["connect_timeout"] = max(1, int(settings.db_connect_timeout))
        connect_args["options"] = f"-c statement_timeout={int(settings.db_statement_timeout * 1000)}"

    if not memory:
        kwargs.update(
            pool_size=settings.db_pool_min,
            max_overflow=settings.db_pool_max - settings.db_pool_min,
            pool_timeout=settings.db_connect_timeout,
        )

    engine = create_engine(settings.database_url, connect_args=connect_args, **kwargs)

    if backend == "sqlite":
        event.listen(engine, "connect", _sqlite_connect)
        event.listen(engine, "begin", _sqlite_begin)
    if not memory:
        _install_connection_limits(engine, settings.db_max_uses, settings.db_idle_timeout)
    return engine


# ---------------------------------------------------------------------------
# Data access
# ---------------------------------------------------------------------------


class DataAccess:
    """Bounded connection pool with retrying execute() and run_transaction().

    Usage:
        data = DataAccess(settings)
        data.warm()
        result = data.execute(select(accounts).where(...))
        data.run_transaction(lambda conn: conn.execute(...))
        data.close()

    `sleep` is injectable so tests can observe backoff without waiting.
    """

    def __init__(
        self,
        settings: Settings,
        sleep: Callable[[float], None] = time.sleep,
        engine: Engine | None = None,
    ) -> None:
        self.settings = settings
        self.engine: Engine = engine if engine is not None else build_engine(settings)
        self.query_policy = RetryPolicy.for_queries(settings)
        self.transaction_policy = RetryPolicy.for_transactions(settings)
        self._sleep = sleep
        self._lock = threading.Lock()
        self._total_queries = 0
        self._error_count = 0
        self._retry_count = 0
        self._last_error: str | None = None
        self._healthy = True

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def warm(self) -> int:
        """Open DB_POOL_MIN connections so the first requests skip connect cost.

        All connections are checked out together, then returned, so the pool
        ends up holding that many idle connections. Returns the number opened.
        """
        if _is_memory_sqlite(self.engine.url):
            return 0
        opened: list[Connection] = []
        try:
            for _ in range(self.settings.db_pool_min):
                opened.append(self.engine.connect())
        finally:
            for conn in opened:
                conn.close()
        logger.info("Connection pool warmed (%d connections)", len(opened))
        return len(opened)

    def execute(self, statement, params: dict | None = None, retry_policy: RetryPolicy | None = None) -> QueryResult:
        """Run one statement on a pooled connection and commit it.

        Transient failures are retried per retry_policy (default: the query
        policy from settings). Returns a QueryResult whose rows were fetched
        before the connection was released.
        """

        def run() -> QueryResult:
            with self.engine.connect() as conn:
                result = conn.execute(statement, params or {})
                rows = result.fetchall() if result.returns_rows else []
                rowcount = result.rowcount
                conn.commit()
            return QueryResult(rows=rows, rowcount=rowcount)

        return self._with_retry(run, retry_policy or self.query_policy, "query")

    def run_transaction(self, work: Callable[[Connection], T], retry_policy: RetryPolicy | None = None) -> T:
        """Run work(conn) inside one transaction.

        Commits when work returns, rolls back when it raises. Only transient
        faults re-run the transaction (default: the transaction policy from
        settings); domain errors raised by work propagate after rollback, so
        no partial transaction is ever observable.
        """

        def run() -> T:
            with self.engine.connect() as conn:
                conn.execution_options(**{_IMMEDIATE: True})
                with conn.begin():
                    return work(conn)

        return self._with_retry(run, retry_policy or self.transaction_policy, "transaction")

    def health(self) -> dict:
        """Counters and pool occupancy for monitoring."""
        pool = self.engine.pool
        pool_info: dict[str, Any] = {"class": type(pool).__name__}
        for name in ("size", "checkedin", "checkedout", "overflow"):
            fn = getattr(pool, name, None)
            if callable(fn):
                pool_info[name] = fn()
        with self._lock:
            return {
                "status": "ok" if self._healthy else "degraded",
                "total_queries": self._total_queries,
                "error_count": self._error_count,
                "retry_count": self._retry_count,
                "last_error": self._last_error,
                "pool": pool_info,
            }

    def ping(self) -> bool:
        """Return True when a trivial round-trip succeeds."""
        try:
            self.execute(text("SELECT 1"), retry_policy=NO_RETRY)
        except FatalDataError:
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Retry loop
    # ------------------------------------------------------------------

    def _with_retry(self, run: Callable[[], T], policy: RetryPolicy, label: str) -> T:
        attempt = 0
        while True:
            attempt += 1
            self._count_query()
            try:
                result = run()
            except AuthKeepError as exc:
                # Domain outcome raised by transactional work. TransientDataError
                # asks for a retry; everything else is the caller's business.
                if not is_transient(exc):
                    raise
                last = exc
            except sa_exc.IntegrityError:
                # Constraint violations are caller-level conflicts, not faults.
                self._count_error(None)
                raise
            except sa_exc.SQLAlchemyError as exc:
                if not is_transient(exc):
                    self._count_error(exc)
                    logger.error("Database %s failed: %s", label, describe(exc))
                    raise FatalDataError() from exc
                last = exc
            except (ConnectionError, TimeoutError) as exc:
                last = exc
            else:
                with self._lock:
                    self._healthy = True
                return result

            self._count_error(last)
            if attempt > policy.max_retries:
                logger.error(
                    "Database %s failed after %d attempt(s): %s",
                    label,
                    attempt,
                    describe(last),
                )
                raise FatalDataError() from last
            delay = policy.backoff(attempt)
            with self._lock:
                self._retry_count += 1
            logger.warning(
                "Transient database error on %s (attempt %d/%d), retrying in %.2fs: %s",
                label,
                attempt,
                policy.attempts,
                delay,
                describe(last),
            )
            self._sleep(delay)

    def _count_query(self) -> None:
        with self._lock:
            self._total_queries += 1

    def _count_error(self, exc: BaseException | None) -> None:
        with self._lock:
            self._error_count += 1
            if exc is not None:
                self._last_error = describe(exc)
                self._healthy = False
