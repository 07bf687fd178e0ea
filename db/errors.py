"""
db/errors.py -- Classification of database failures as transient or fatal.

Transient means "expected to clear on its own": the pool was momentarily
exhausted, the server reset the connection, two transactions deadlocked, a
serializable transaction lost a conflict, or a statement hit its timeout.
Everything else (syntax errors, missing tables, type mismatches) is fatal --
retrying would only repeat the failure.

PostgreSQL drivers expose the SQLSTATE as `pgcode` (psycopg2) or `sqlstate`
(psycopg 3). SQLite has no SQLSTATE; its lock timeouts surface as
OperationalError("database is locked"), matched by message.
"""

from __future__ import annotations

from sqlalchemy import exc as sa_exc

from core.errors import TransientDataError

# SQLSTATE codes worth retrying.
_TRANSIENT_SQLSTATES: frozenset[str] = frozenset(
    {
        "40001",  # serialization_failure
        "40P01",  # deadlock_detected
        "53300",  # too_many_connections
        "53400",  # configuration_limit_exceeded
        "57014",  # query_canceled (statement_timeout)
        "57P01",  # admin_shutdown
    }
)

# Class 08 -- connection exceptions.
_TRANSIENT_SQLSTATE_CLASSES: tuple[str, ...] = ("08",)

_TRANSIENT_MESSAGES: tuple[str, ...] = (
    "database is locked",
    "database table is locked",
    "connection reset",
    "connection refused",
    "server closed the connection",
    "could not serialize access",
    "deadlock detected",
    "too many connections",
    "timeout expired",
    "timed out",
)


def sqlstate_of(exc: BaseException) -> str | None:
    """Return the SQLSTATE carried by a DBAPI error, if the driver exposes one."""
    orig = getattr(exc, "orig", None)
    if orig is None:
        return None
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    return str(code) if code else None


def is_transient(exc: BaseException) -> bool:
    """Return True when exc is a database fault eligible for retry."""
    if isinstance(exc, TransientDataError):
        return True
    # Pool checkout waited longer than pool_timeout.
    if isinstance(exc, sa_exc.TimeoutError):
        return True
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return True
    if isinstance(exc, sa_exc.IntegrityError):
        return False
    if isinstance(exc, sa_exc.DBAPIError):
        if exc.connection_invalidated:
            return True
        code = sqlstate_of(exc)
        if code is not None:
            return code in _TRANSIENT_SQLSTATES or code.startswith(_TRANSIENT_SQLSTATE_CLASSES)
        if isinstance(exc, (sa_exc.OperationalError, sa_exc.InterfaceError)):
            text = str(exc.orig).lower()
            return any(fragment in text for fragment in _TRANSIENT_MESSAGES)
    return False


def describe(exc: BaseException) -> str:
    """Short, parameter-free description of a failure for the log.

    SQLAlchemy's str() of a DBAPIError includes the statement and its bound
    parameters, which may hold password hashes or token hashes. Only the
    driver's own message and the SQLSTATE are kept.
    """
    if isinstance(exc, sa_exc.DBAPIError):
        code = sqlstate_of(exc)
        orig = exc.orig
        prefix = f"[{code}] " if code else ""
        lines = str(orig).splitlines()
        first_line = lines[0] if lines else ""
        return f"{type(orig).__name__}: {prefix}{first_line}".rstrip()
    return f"{type(exc).__name__}: {exc}"
