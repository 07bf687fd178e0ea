"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. CredentialStore is the repository;
_row_to_account / _row_to_refresh_token / _row_to_event are the mappers.
The façade and the token service never touch SQL directly.

Ownership:
  accounts and security_events belong to this store.
  refresh_tokens belong to TokenService; the store only persists them on its
  behalf. Those methods take an optional `conn` so the token service can run
  them inside its own transaction (revoke-old + insert-new in one commit).

Every statement goes through DataAccess, which supplies pooling, retries and
transaction boundaries. Methods that touch more than one entity (password
change, account closure, registration via the façade) run in a single
transaction.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Emails are stored normalized (stripped, lowercase), which makes the UNIQUE
  constraint case-insensitive without a functional index.
  Failed-login accounting is a relative UPDATE (failed_logins + 1) so
  concurrent failures are never under-counted.

Timestamps are stored as fixed-width ISO-8601 UTC strings with microseconds,
so string comparison in SQL is time comparison on every backend.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Callable
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    case,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from auth.lockout import LockoutPolicy
from auth.models import Account, RefreshToken, SecurityEvent, SecurityEventKind
from auth.validation import normalize_email
from core.errors import DuplicateError
from db.access import DataAccess

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("username", String(30), nullable=False, unique=True),
    Column("email", String(254), nullable=False, unique=True),  # normalized lowercase
    Column("password_hash", Text, nullable=False),
    Column("email_verified", Integer, nullable=False, server_default="0"),  # boolean stored as 0/1
    Column("failed_logins", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),
    Column("last_login", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("password_changed_at", String(32)),
    Column("deleted_at", String(32)),  # soft delete marker
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("account_id", String(36), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("revoked_at", String(32)),
    Column("last_used", String(32)),
    Column("user_agent", Text),
    Column("ip_address", String(45)),
    Index("idx_refresh_tokens_account_id", "account_id"),
    Index("idx_refresh_tokens_expires_at", "expires_at"),
)

_security_events = Table(
    "security_events",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("kind", String(40), nullable=False),
    Column("account_id", String(36), ForeignKey("accounts.id", ondelete="SET NULL")),
    Column("detail", Text),  # JSON object serialized as text
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("created_at", String(32), nullable=False),
    Index("idx_security_events_account_id", "account_id"),
    Index("idx_security_events_kind", "kind"),
    Index("idx_security_events_created_at", "created_at"),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse(value: str | None) -> datetime | None:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        # Naive value -- stored before timestamps were normalized; assume UTC.
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for Account, RefreshToken and SecurityEvent rows.

    Usage:
        store = CredentialStore(data, LockoutPolicy())
        store.create_schema()
        account = store.create_account("alice", "alice@example.com", hash_password("..."))
        store.record_login_outcome("alice@example.com", success=False)
    """

    def __init__(
        self,
        data: DataAccess,
        lockout: LockoutPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.data = data
        self.lockout = lockout or LockoutPolicy()
        self._clock = clock

    def create_schema(self) -> None:
        """Create all tables and indexes. Idempotent -- safe on every startup."""
        self.data.run_transaction(lambda conn: _metadata.create_all(conn))

    def _write(self, work: Callable[[Connection], object], conn: Connection | None = None):
        """Run work on conn when the caller already holds a transaction, else in a new one."""
        if conn is not None:
            return work(conn)
        return self.data.run_transaction(work)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_account(
        self,
        username: str,
        email: str,
        password_hash: str,
        conn: Connection | None = None,
    ) -> Account:
        """Insert a new account and return it.

        Raises DuplicateError if the username or the normalized email is
        already taken. The pre-check gives the common case a clean error;
        the UNIQUE constraints catch the race where two registrations pass
        the check at the same time.
        """
        now = self._clock()
        account = Account(
            id=_new_id(),
            username=username,
            email=normalize_email(email),
            password_hash=password_hash,
            created_at=now,
            updated_at=now,
            password_changed_at=now,
        )

        def work(c: Connection) -> Account:
            taken = c.execute(
                select(_accounts.c.id).where(
                    or_(_accounts.c.username == account.username, _accounts.c.email == account.email)
                )
            ).first()
            if taken is not None:
                raise DuplicateError()
            try:
                c.execute(
                    _accounts.insert().values(
                        id=account.id,
                        username=account.username,
                        email=account.email,
                        password_hash=account.password_hash,
                        email_verified=0,
                        failed_logins=0,
                        created_at=_iso(now),
                        updated_at=_iso(now),
                        password_changed_at=_iso(now),
                    )
                )
            except IntegrityError as exc:
                raise DuplicateError() from exc
            return account

        return self._write(work, conn)

    def find_by_email(self, email: str) -> Account | None:
        """Look up a live account by email (case-insensitive). Returns None if absent or closed."""
        row = self.data.execute(
            _accounts.select().where(
                (_accounts.c.email == normalize_email(email)) & _accounts.c.deleted_at.is_(None)
            )
        ).first()
        return _row_to_account(row) if row is not None else None

    def find_by_id(self, account_id: str) -> Account | None:
        """Look up a live account by id. Returns None if absent or closed."""
        row = self.data.execute(
            _accounts.select().where((_accounts.c.id == account_id) & _accounts.c.deleted_at.is_(None))
        ).first()
        return _row_to_account(row) if row is not None else None

    def record_login_outcome(self, email: str, success: bool) -> None:
        """Update the lockout counters for one login attempt.

        Failure: failed_logins + 1, and locked_until = now + lockout duration
        when the incremented counter reaches the threshold. Success: reset the
        counter, clear locked_until and stamp last_login.

        Both are a single relative UPDATE, so the row lock taken by the
        database serializes concurrent attempts on the same account. An
        unknown email matches no row and is a no-op.
        """
        now = self._clock()
        live = (_accounts.c.email == normalize_email(email)) & _accounts.c.deleted_at.is_(None)
        if success:
            stmt = (
                _accounts.update()
                .where(live)
                .values(failed_logins=0, locked_until=None, last_login=_iso(now), updated_at=_iso(now))
            )
        else:
            next_count = _accounts.c.failed_logins + 1
            stmt = (
                _accounts.update()
                .where(live)
                .values(
                    failed_logins=next_count,
                    locked_until=case(
                        (next_count >= self.lockout.threshold, _iso(now + self.lockout.duration)),
                        else_=_accounts.c.locked_until,
                    ),
                    updated_at=_iso(now),
                )
            )
        self.data.execute(stmt)

    def release_expired_lockout(self, email: str) -> bool:
        """Clear a lockout whose timer has run out, together with its counter.

        Returns True when a row was released. Rows locked by the counter alone
        (no timer) are left as they are.
        """
        now = _iso(self._clock())
        result = self.data.execute(
            _accounts.update()
            .where(
                (_accounts.c.email == normalize_email(email))
                & _accounts.c.deleted_at.is_(None)
                & _accounts.c.locked_until.is_not(None)
                & (_accounts.c.locked_until <= now)
            )
            .values(failed_logins=0, locked_until=None, updated_at=now)
        )
        return result.rowcount > 0

    def update_password(self, account_id: str, new_hash: str) -> int | None:
        """Replace the password hash and revoke every refresh token, atomically.

        Returns the number of refresh tokens revoked, or None when no live
        account has this id (nothing is changed in that case).
        """
        now = self._clock()

        def work(conn: Connection) -> int | None:
            result = conn.execute(
                _accounts.update()
                .where((_accounts.c.id == account_id) & _accounts.c.deleted_at.is_(None))
                .values(password_hash=new_hash, password_changed_at=_iso(now), updated_at=_iso(now))
            )
            if result.rowcount == 0:
                return None
            return self.revoke_all_refresh_tokens(account_id, now, conn=conn)

        return self.data.run_transaction(work)

    def soft_delete(self, account_id: str) -> bool:
        """Mark an account closed and revoke all its refresh tokens, atomically.

        The row stays for audit; every lookup skips it from now on. Returns
        False if the account was already closed or never existed.
        """
        now = self._clock()

        def work(conn: Connection) -> bool:
            result = conn.execute(
                _accounts.update()
                .where((_accounts.c.id == account_id) & _accounts.c.deleted_at.is_(None))
                .values(deleted_at=_iso(now), updated_at=_iso(now))
            )
            if result.rowcount == 0:
                return False
            self.revoke_all_refresh_tokens(account_id, now, conn=conn)
            return True

        return self.data.run_transaction(work)

    # ------------------------------------------------------------------
    # Refresh tokens (persisted on behalf of TokenService)
    # ------------------------------------------------------------------

    def insert_refresh_token(self, token: RefreshToken, conn: Connection | None = None) -> None:
        def work(c: Connection) -> None:
            c.execute(
                _refresh_tokens.insert().values(
                    id=token.id,
                    account_id=token.account_id,
                    token_hash=token.token_hash,
                    issued_at=_iso(token.issued_at),
                    expires_at=_iso(token.expires_at),
                    revoked=1 if token.revoked else 0,
                    user_agent=token.user_agent,
                    ip_address=token.ip_address,
                )
            )

        self._write(work, conn)

    def consume_refresh_token(self, token_hash: str, now: datetime, conn: Connection | None = None) -> str | None:
        """Revoke the active, unexpired row matching token_hash; return its account id.

        The revoke is a conditional UPDATE, so of two transactions presenting
        the same hash only the first to commit matches a row -- the second
        sees revoked = 1 and gets None. Returns None also when the owning
        account has been closed.
        """

        def work(c: Connection) -> str | None:
            result = c.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.token_hash == token_hash)
                    & (_refresh_tokens.c.revoked == 0)
                    & (_refresh_tokens.c.expires_at > _iso(now))
                )
                .values(revoked=1, revoked_at=_iso(now), last_used=_iso(now))
            )
            if result.rowcount != 1:
                return None
            row = c.execute(
                select(_refresh_tokens.c.account_id)
                .select_from(_refresh_tokens.join(_accounts, _refresh_tokens.c.account_id == _accounts.c.id))
                .where((_refresh_tokens.c.token_hash == token_hash) & _accounts.c.deleted_at.is_(None))
            ).first()
            return row.account_id if row is not None else None

        return self._write(work, conn)

    def find_refresh_token(self, token_hash: str) -> RefreshToken | None:
        row = self.data.execute(_refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)).first()
        return _row_to_refresh_token(row) if row is not None else None

    def list_refresh_tokens(self, account_id: str) -> list[RefreshToken]:
        """Return every stored refresh token of an account, oldest first."""
        rows = self.data.execute(
            _refresh_tokens.select()
            .where(_refresh_tokens.c.account_id == account_id)
            .order_by(_refresh_tokens.c.issued_at, _refresh_tokens.c.id)
        ).all()
        return [_row_to_refresh_token(r) for r in rows]

    def revoke_refresh_token(self, token_hash: str, now: datetime) -> bool:
        """Revoke one row by hash. Returns True only if an active row was revoked."""
        result = self.data.execute(
            _refresh_tokens.update()
            .where((_refresh_tokens.c.token_hash == token_hash) & (_refresh_tokens.c.revoked == 0))
            .values(revoked=1, revoked_at=_iso(now))
        )
        return result.rowcount > 0

    def revoke_all_refresh_tokens(self, account_id: str, now: datetime, conn: Connection | None = None) -> int:
        """Revoke every active row of an account. Returns the number revoked."""

        def work(c: Connection) -> int:
            result = c.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.account_id == account_id) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1, revoked_at=_iso(now))
            )
            return result.rowcount

        return self._write(work, conn)

    def purge_refresh_tokens(self, cutoff: datetime) -> int:
        """Delete rows that expired, or were revoked, before cutoff. Returns rows removed."""
        result = self.data.execute(
            _refresh_tokens.delete().where(
                (_refresh_tokens.c.expires_at < _iso(cutoff))
                | ((_refresh_tokens.c.revoked == 1) & (_refresh_tokens.c.revoked_at < _iso(cutoff)))
            )
        )
        return result.rowcount

    # ------------------------------------------------------------------
    # Security events
    # ------------------------------------------------------------------

    def log_event(self, event: SecurityEvent) -> SecurityEvent:
        """Append one security event. Returns it with id and created_at filled in."""
        event.id = event.id or _new_id()
        event.created_at = event.created_at or self._clock()
        self.data.execute(
            _security_events.insert().values(
                id=event.id,
                kind=SecurityEventKind(event.kind).value,
                account_id=event.account_id,
                detail=json.dumps(event.detail, default=str, sort_keys=True),
                ip_address=event.ip_address,
                user_agent=event.user_agent,
                created_at=_iso(event.created_at),
            )
        )
        return event

    def list_events(
        self,
        account_id: str | None = None,
        kind: SecurityEventKind | str | None = None,
        limit: int = 100,
    ) -> list[SecurityEvent]:
        """Return events newest first, optionally filtered by account and kind."""
        stmt = _security_events.select()
        if account_id is not None:
            stmt = stmt.where(_security_events.c.account_id == account_id)
        if kind is not None:
            stmt = stmt.where(_security_events.c.kind == SecurityEventKind(kind).value)
        stmt = stmt.order_by(_security_events.c.created_at.desc(), _security_events.c.id).limit(limit)
        return [_row_to_event(r) for r in self.data.execute(stmt).all()]

    def count_events(self, kind: SecurityEventKind | str | None = None) -> int:
        stmt = select(func.count()).select_from(_security_events)
        if kind is not None:
            stmt = stmt.where(_security_events.c.kind == SecurityEventKind(kind).value)
        return self.data.execute(stmt).scalar() or 0

    def purge_events(self, cutoff: datetime) -> int:
        """Delete events older than cutoff (retention sweep). Returns rows removed."""
        result = self.data.execute(_security_events.delete().where(_security_events.c.created_at < _iso(cutoff)))
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        username=row.username,
        email=row.email,
        password_hash=row.password_hash,
        email_verified=bool(row.email_verified),
        failed_logins=row.failed_logins or 0,
        locked_until=_parse(row.locked_until),
        last_login=_parse(row.last_login),
        created_at=_parse(row.created_at),
        updated_at=_parse(row.updated_at),
        password_changed_at=_parse(row.password_changed_at),
        deleted_at=_parse(row.deleted_at),
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        account_id=row.account_id,
        token_hash=row.token_hash,
        issued_at=_parse(row.issued_at),
        expires_at=_parse(row.expires_at),
        revoked=bool(row.revoked),
        revoked_at=_parse(row.revoked_at),
        last_used=_parse(row.last_used),
        user_agent=row.user_agent,
        ip_address=row.ip_address,
    )


def _row_to_event(row) -> SecurityEvent:
    return SecurityEvent(
        id=row.id,
        kind=SecurityEventKind(row.kind),
        account_id=row.account_id,
        detail=json.loads(row.detail) if row.detail else {},
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        created_at=_parse(row.created_at),
    )
