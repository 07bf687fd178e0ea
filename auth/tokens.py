"""
auth/tokens.py -- Password hashing, JWT access tokens and refresh secrets.

Security design decisions:
  Passwords: bcrypt used directly (no passlib wrapper), cost factor from
       BCRYPT_ROUNDS. The _DUMMY_HASH constant enables timing equalization in
       the login path so response time does not reveal whether an email is
       registered.

  Access tokens: python-jose with HS256, signed with ACCESS_TOKEN_SECRET.
       Claims are sub (account id), type ("access"), iat, exp and a random
       jti. They are never stored; verification is signature + expiry +
       declared type.

  Refresh secrets: secrets.token_urlsafe(32) gives 256 bits of entropy.
       We store HMAC-SHA256(REFRESH_TOKEN_SECRET, secret) so a database leak
       does not yield usable secrets, and lookup by hash is O(1). bcrypt's
       intentional slowness is unnecessary for high-entropy secrets.

  Rotation: revoke-old and insert-new run in one transaction. The revoke is
       a conditional UPDATE (see CredentialStore.consume_refresh_token), so
       concurrent rotations of one secret produce exactly one new pair.

Layer rule: no imports from api/. Persistence goes through CredentialStore.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from functools import lru_cache

import bcrypt
from jose import JWTError, jwt
from sqlalchemy.engine import Connection

from auth.models import ClientContext, RefreshToken, TokenPair
from auth.store import CredentialStore, utcnow
from core.config import Settings
from core.errors import ExpiredTokenError, InvalidTokenError, WrongTokenTypeError

logger = logging.getLogger("authkeep.auth")

_ALGORITHM = "HS256"
ACCESS_TOKEN_TYPE = "access"  # noqa: S105 # nosec B105 -- JWT type claim, not a password

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage)
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Callers validate length first: bcrypt only looks at the first 72 bytes.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash or a password bcrypt refuses (> 72 bytes).
        return False


# Timing equalization dummy hash.
# When the email is unknown the login path still runs verify_password()
# against a dummy hash of the same cost as real ones, so bcrypt's work
# factor hides whether the account exists. One hash per cost, computed once.


@lru_cache(maxsize=4)
def dummy_hash(rounds: int = 12) -> str:
    return hash_password("authkeep_timing_dummy", rounds)


_DUMMY_HASH: str = dummy_hash()


def generate_refresh_secret() -> str:
    return secrets.token_urlsafe(32)


# ---------------------------------------------------------------------------
# Token service
# ---------------------------------------------------------------------------


class TokenService:
    """Issues, rotates, revokes and verifies tokens.

    Usage:
        tokens = TokenService(store, settings)
        pair = tokens.issue_pair(account.id, client)
        account_id, pair = tokens.rotate(pair.refresh_token, client)
        account_id = tokens.verify_access(pair.access_token)
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.data = store.data
        self._access_secret = settings.access_token_secret
        self._refresh_key = settings.refresh_token_secret.encode()
        self.access_ttl: timedelta = settings.access_token_ttl
        self.refresh_ttl: timedelta = settings.refresh_token_ttl
        self._clock = clock

    def hash_refresh_secret(self, secret: str) -> str:
        """Return HMAC-SHA256(REFRESH_TOKEN_SECRET, secret) as a hex string."""
        return hmac.new(self._refresh_key, secret.encode(), hashlib.sha256).hexdigest()

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def create_access_token(self, account_id: str, now: datetime | None = None) -> str:
        now = now or self._clock()
        payload = {
            "sub": account_id,
            "type": ACCESS_TOKEN_TYPE,
            "iat": int(now.timestamp()),
            "exp": int((now + self.access_ttl).timestamp()),
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(payload, self._access_secret, algorithm=_ALGORITHM)

    def verify_access(self, token: str) -> str:
        """Return the account id carried by a valid access token.

        Raises ExpiredTokenError past exp, WrongTokenTypeError when the token
        declares a type other than "access", InvalidTokenError for anything
        else (bad signature, malformed, missing claims). Expiry is checked
        against the service clock, not the wall clock.
        """
        if not isinstance(token, str) or not token:
            raise InvalidTokenError()
        try:
            claims = jwt.decode(
                token,
                self._access_secret,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False},
            )
        except JWTError as exc:
            raise InvalidTokenError() from exc

        account_id = claims.get("sub")
        exp = claims.get("exp")
        if not isinstance(account_id, str) or not account_id or not isinstance(exp, (int, float)):
            raise InvalidTokenError()
        if claims.get("type") != ACCESS_TOKEN_TYPE:
            raise WrongTokenTypeError()
        if exp <= self._clock().timestamp():
            raise ExpiredTokenError()
        return account_id

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def issue_pair(
        self,
        account_id: str,
        client: ClientContext | None = None,
        conn: Connection | None = None,
    ) -> TokenPair:
        """Mint an access token and a fresh refresh secret for account_id.

        Only the keyed hash of the secret is persisted. Pass conn to make the
        insert part of the caller's transaction (registration, rotation).
        """
        client = client or ClientContext()
        now = self._clock()
        secret = generate_refresh_secret()
        expires_at = now + self.refresh_ttl
        self.store.insert_refresh_token(
            RefreshToken(
                id=str(uuid.uuid4()),
                account_id=account_id,
                token_hash=self.hash_refresh_secret(secret),
                issued_at=now,
                expires_at=expires_at,
                user_agent=client.user_agent,
                ip_address=client.ip,
            ),
            conn=conn,
        )
        return TokenPair(
            access_token=self.create_access_token(account_id, now),
            refresh_token=secret,
            expires_in=int(self.access_ttl.total_seconds()),
            refresh_expires_at=expires_at,
        )

    def rotate(self, refresh_secret: str, client: ClientContext | None = None) -> tuple[str, TokenPair]:
        """Exchange an active refresh secret for a new pair.

        Raises InvalidTokenError when no active, unexpired row matches --
        unknown, already rotated (replay), revoked, expired, or owned by a
        closed account. The old row is revoked and the new one inserted in
        the same transaction.
        """
        if not isinstance(refresh_secret, str) or not refresh_secret:
            raise InvalidTokenError()
        token_hash = self.hash_refresh_secret(refresh_secret)

        def work(conn: Connection) -> tuple[str, TokenPair]:
            account_id = self.store.consume_refresh_token(token_hash, self._clock(), conn=conn)
            if account_id is None:
                raise InvalidTokenError()
            return account_id, self.issue_pair(account_id, client, conn=conn)

        return self.data.run_transaction(work)

    def revoke(self, refresh_secret: str) -> bool:
        """Revoke one refresh secret. Idempotent; True only if an active row was revoked."""
        if not isinstance(refresh_secret, str) or not refresh_secret:
            return False
        return self.store.revoke_refresh_token(self.hash_refresh_secret(refresh_secret), self._clock())

    def revoke_all(self, account_id: str, conn: Connection | None = None) -> int:
        return self.store.revoke_all_refresh_tokens(account_id, self._clock(), conn=conn)

    def owner_of(self, refresh_secret: str) -> str | None:
        """Account id of the stored row for refresh_secret, whatever its state."""
        row = self.store.find_refresh_token(self.hash_refresh_secret(refresh_secret))
        return row.account_id if row is not None else None

    def purge(self, now: datetime | None = None, retention: timedelta = timedelta(hours=24)) -> int:
        """Delete refresh rows that expired or were revoked more than `retention` ago."""
        now = now or self._clock()
        removed = self.store.purge_refresh_tokens(now - retention)
        if removed:
            logger.info("Purged %d stale refresh token(s)", removed)
        return removed
