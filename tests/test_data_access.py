"""
tests/test_data_access.py -- Tests for the resilient data-access layer (db/).

Covers:
  - Capped exponential backoff schedule
  - Transient vs fatal classification of driver errors
  - run_transaction: retry on transient faults, rollback on domain errors,
    FatalDataError once retries are exhausted
  - execute: fatal SQL errors surface immediately, IntegrityError unchanged
  - Health counters and pool occupancy
  - Pool discipline: max-uses and idle-timeout retirement, warm-up
  - Log text never carries bound parameters
"""

from __future__ import annotations

import time

import pytest
from sqlalchemy import event, text
from sqlalchemy import exc as sa_exc

from core.config import Settings
from core.errors import DuplicateError, FatalDataError, TransientDataError
from db.access import DataAccess
from db.errors import describe, is_transient
from db.retry import RetryPolicy


class _DriverError(Exception):
    """Stand-in for a DBAPI exception carrying a SQLSTATE."""

    def __init__(self, message: str, pgcode: str | None = None) -> None:
        super().__init__(message)
        self.pgcode = pgcode


def _operational(message: str, pgcode: str | None = None) -> sa_exc.OperationalError:
    return sa_exc.OperationalError("SELECT 1", {}, _DriverError(message, pgcode))


class _Sleeps(list):
    def __call__(self, seconds: float) -> None:
        self.append(seconds)


def _settings(url: str = "sqlite://", **overrides) -> Settings:
    values = dict(debug=True, database_url=url)
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def sleeps() -> _Sleeps:
    return _Sleeps()


@pytest.fixture
def access(sleeps):
    da = DataAccess(_settings(), sleep=sleeps)
    da.execute(text("CREATE TABLE items (id INTEGER PRIMARY KEY, name TEXT)"))
    yield da
    da.close()


# ---------------------------------------------------------------------------
# Backoff and classification
# ---------------------------------------------------------------------------


class TestRetryPolicy:
    def test_backoff_doubles_and_caps(self) -> None:
        policy = RetryPolicy(max_retries=5, base_delay=1.0, max_delay=5.0)
        assert [policy.backoff(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_transaction_defaults(self) -> None:
        policy = RetryPolicy.for_transactions(_settings())
        assert policy.max_retries == 2
        assert [policy.backoff(n) for n in (1, 2)] == [0.5, 1.0]
        assert policy.attempts == 3


class TestClassification:
    @pytest.mark.parametrize("code", ["40001", "40P01", "53300", "57014", "08006"])
    def test_transient_sqlstates(self, code: str) -> None:
        assert is_transient(_operational("server says no", pgcode=code))

    def test_fatal_sqlstate(self) -> None:
        # 42P01 undefined_table -- retrying cannot help.
        assert not is_transient(sa_exc.ProgrammingError("SELECT 1", {}, _DriverError("nope", "42P01")))

    def test_sqlite_lock_is_transient(self) -> None:
        assert is_transient(_operational("database is locked"))

    def test_missing_table_is_fatal(self) -> None:
        assert not is_transient(_operational("no such table: accounts"))

    def test_integrity_error_never_transient(self) -> None:
        assert not is_transient(sa_exc.IntegrityError("INSERT", {}, _DriverError("UNIQUE constraint failed")))

    def test_pool_timeout_and_connection_errors_transient(self) -> None:
        assert is_transient(sa_exc.TimeoutError("QueuePool limit reached"))
        assert is_transient(ConnectionResetError("reset by peer"))
        assert is_transient(TransientDataError())

    def test_describe_omits_parameters(self) -> None:
        exc = sa_exc.IntegrityError(
            "INSERT INTO refresh_tokens (token_hash) VALUES (?)",
            ("super-secret-hash",),
            _DriverError("UNIQUE constraint failed: refresh_tokens.token_hash"),
        )
        text_ = describe(exc)
        assert "super-secret-hash" not in text_
        assert "UNIQUE constraint failed" in text_


# ---------------------------------------------------------------------------
# Retry behaviour
# ---------------------------------------------------------------------------


class TestRunTransaction:
    def test_transient_fault_retried_then_succeeds(self, access: DataAccess, sleeps: _Sleeps) -> None:
        attempts = []

        def work(conn):
            attempts.append(1)
            if len(attempts) < 3:
                raise TransientDataError()
            conn.execute(text("INSERT INTO items (name) VALUES ('ok')"))
            return "done"

        assert access.run_transaction(work) == "done"
        assert len(attempts) == 3
        assert sleeps == [0.5, 1.0]
        health = access.health()
        assert health["retry_count"] == 2
        assert health["status"] == "ok"

    def test_driver_level_transient_fault_retried(self, access: DataAccess, sleeps: _Sleeps) -> None:
        attempts = []

        def work(conn):
            attempts.append(1)
            if len(attempts) == 1:
                raise _operational("database is locked")
            return conn.execute(text("SELECT 42")).scalar()

        assert access.run_transaction(work) == 42
        assert sleeps == [0.5]

    def test_exhausted_retries_surface_as_fatal(self, access: DataAccess, sleeps: _Sleeps) -> None:
        attempts = []

        def work(conn):
            attempts.append(1)
            raise TransientDataError()

        with pytest.raises(FatalDataError):
            access.run_transaction(work)
        assert len(attempts) == 3  # first try + 2 retries
        assert sleeps == [0.5, 1.0]
        assert access.health()["status"] == "degraded"

    def test_domain_error_rolls_back_without_retry(self, access: DataAccess, sleeps: _Sleeps) -> None:
        def work(conn):
            conn.execute(text("INSERT INTO items (name) VALUES ('partial')"))
            raise DuplicateError()

        with pytest.raises(DuplicateError):
            access.run_transaction(work)
        assert sleeps == []
        assert access.execute(text("SELECT COUNT(*) FROM items")).scalar() == 0

    def test_custom_policy_overrides_default(self, access: DataAccess, sleeps: _Sleeps) -> None:
        def work(conn):
            raise TransientDataError()

        with pytest.raises(FatalDataError):
            access.run_transaction(work, retry_policy=RetryPolicy(max_retries=1, base_delay=0.1, max_delay=1.0))
        assert sleeps == [0.1]


class TestExecute:
    def test_rows_buffered_after_release(self, access: DataAccess) -> None:
        access.execute(text("INSERT INTO items (name) VALUES (:name)"), {"name": "a"})
        access.execute(text("INSERT INTO items (name) VALUES (:name)"), {"name": "b"})
        result = access.execute(text("SELECT name FROM items ORDER BY id"))
        assert [row.name for row in result.all()] == ["a", "b"]
        assert result.first().name == "a"

    def test_rowcount_reported(self, access: DataAccess) -> None:
        access.execute(text("INSERT INTO items (name) VALUES ('a'), ('b')"))
        assert access.execute(text("UPDATE items SET name = 'c'")).rowcount == 2

    def test_fatal_sql_error_not_retried(self, access: DataAccess, sleeps: _Sleeps) -> None:
        with pytest.raises(FatalDataError):
            access.execute(text("SELECT * FROM no_such_table"))
        assert sleeps == []
        health = access.health()
        assert health["error_count"] == 1
        assert health["last_error"] is not None

    def test_integrity_error_propagates_unchanged(self, access: DataAccess) -> None:
        access.execute(text("INSERT INTO items (id, name) VALUES (1, 'a')"))
        with pytest.raises(sa_exc.IntegrityError):
            access.execute(text("INSERT INTO items (id, name) VALUES (1, 'b')"))

    def test_ping(self, access: DataAccess) -> None:
        assert access.ping() is True


# ---------------------------------------------------------------------------
# Pool discipline (file database -> QueuePool)
# ---------------------------------------------------------------------------


class TestPool:
    def _file_access(self, tmp_path, **overrides) -> DataAccess:
        return DataAccess(_settings(f"sqlite:///{tmp_path / 'pool.db'}", **overrides), sleep=_Sleeps())

    def test_warm_opens_min_connections(self, tmp_path) -> None:
        da = self._file_access(tmp_path, db_pool_min=3, db_pool_max=5)
        try:
            assert da.warm() == 3
            pool = da.health()["pool"]
            assert pool["class"] == "QueuePool"
            assert pool["checkedin"] == 3
            assert pool["checkedout"] == 0
        finally:
            da.close()

    def test_connection_retired_after_max_uses(self, tmp_path) -> None:
        da = self._file_access(tmp_path, db_pool_min=1, db_pool_max=1, db_max_uses=2)
        connects = []
        event.listen(da.engine, "connect", lambda dbapi_conn, record: connects.append(1))
        try:
            for _ in range(3):
                da.execute(text("SELECT 1"))
            assert len(connects) >= 2
        finally:
            da.close()

    def test_idle_connection_retired(self, tmp_path) -> None:
        da = self._file_access(tmp_path, db_pool_min=1, db_pool_max=1, db_idle_timeout=0.01)
        connects = []
        event.listen(da.engine, "connect", lambda dbapi_conn, record: connects.append(1))
        try:
            da.execute(text("SELECT 1"))
            time.sleep(0.05)
            da.execute(text("SELECT 1"))
            assert len(connects) >= 2
        finally:
            da.close()

    def test_wal_mode_enabled(self, tmp_path) -> None:
        da = self._file_access(tmp_path)
        try:
            assert da.execute(text("PRAGMA journal_mode")).scalar().lower() == "wal"
        finally:
            da.close()


class TestConnectionRelease:
    """Every exit path hands the connection back to the pool."""

    @pytest.fixture
    def pooled(self, tmp_path):
        da = DataAccess(_settings(f"sqlite:///{tmp_path / 'release.db'}", db_pool_min=1, db_pool_max=2), sleep=_Sleeps())
        da.execute(text("CREATE TABLE items (id INTEGER PRIMARY KEY, name TEXT)"))
        yield da
        da.close()

    @staticmethod
    def _checked_out(da: DataAccess) -> int:
        return da.health()["pool"]["checkedout"]

    def test_after_fatal_sql_error(self, pooled: DataAccess) -> None:
        with pytest.raises(FatalDataError):
            pooled.execute(text("SELECT * FROM no_such_table"))
        assert self._checked_out(pooled) == 0

    def test_after_domain_error_in_transaction(self, pooled: DataAccess) -> None:
        def work(conn):
            conn.execute(text("INSERT INTO items (name) VALUES ('partial')"))
            raise DuplicateError()

        with pytest.raises(DuplicateError):
            pooled.run_transaction(work)
        assert self._checked_out(pooled) == 0
        assert pooled.execute(text("SELECT COUNT(*) FROM items")).scalar() == 0

    def test_after_retries_exhausted(self, pooled: DataAccess) -> None:
        def work(conn):
            raise TransientDataError()

        with pytest.raises(FatalDataError):
            pooled.run_transaction(work)
        assert self._checked_out(pooled) == 0

    def test_after_integrity_error(self, pooled: DataAccess) -> None:
        pooled.execute(text("INSERT INTO items (id, name) VALUES (1, 'a')"))
        with pytest.raises(sa_exc.IntegrityError):
            pooled.execute(text("INSERT INTO items (id, name) VALUES (1, 'b')"))
        assert self._checked_out(pooled) == 0


def test_reads_proceed_while_a_transaction_holds_the_write_lock(tmp_path) -> None:
    da = DataAccess(
        _settings(f"sqlite:///{tmp_path / 'wal.db'}", db_pool_min=1, db_pool_max=3, db_statement_timeout=0.2),
        sleep=_Sleeps(),
    )
    try:
        da.execute(text("CREATE TABLE items (id INTEGER PRIMARY KEY, name TEXT)"))
        da.execute(text("INSERT INTO items (name) VALUES ('a')"))
        entered = []

        def work(conn):
            conn.execute(text("INSERT INTO items (name) VALUES ('b')"))
            # Still inside BEGIN IMMEDIATE: the write lock is held here.
            entered.append(da.execute(text("SELECT COUNT(*) FROM items")).scalar())
            return None

        da.run_transaction(work)
        assert entered == [1]
        assert da.execute(text("SELECT COUNT(*) FROM items")).scalar() == 2
    finally:
        da.close()
