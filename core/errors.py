"""
core/errors.py -- Error taxonomy shared by every layer of authkeep.

Two branches hang off AuthKeepError:

  Expected outcomes -- ValidationError, DuplicateError, AuthenticationError,
      LockedAccountError, RateLimitedError and the TokenError family. These
      are normal results of user input; callers branch on them and the API
      maps each to a status code.

  Infrastructure faults -- DataError and its TransientDataError /
      FatalDataError subclasses. Transient faults are retried inside db/;
      only FatalDataError ever reaches a caller.

Every error carries a stable machine-readable `code` and a `message` that is
safe to show a client. The message never names the account, the query or
the underlying driver error -- that detail goes to the log only.

Layer rule: core/ is the kernel. No imports from api/, auth/ or db/.
"""

from __future__ import annotations


class AuthKeepError(Exception):
    """Base class for every error raised deliberately by authkeep."""

    code = "error"
    message = "Request failed."

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


# ---------------------------------------------------------------------------
# Expected outcomes
# ---------------------------------------------------------------------------


class ValidationError(AuthKeepError):
    """Malformed input. `field` names the offending input when known."""

    code = "validation_error"
    message = "Invalid input data."

    def __init__(self, message: str | None = None, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class DuplicateError(AuthKeepError):
    code = "duplicate"
    message = "User already exists."


class AuthenticationError(AuthKeepError):
    """Bad credential.

    The default message is identical for "no such account" and "wrong
    password" so responses never reveal whether an email is registered.
    """

    code = "bad_credentials"
    message = "Invalid email or password."


class LockedAccountError(AuthKeepError):
    code = "account_locked"
    message = "Account temporarily locked due to too many failed attempts."

    def __init__(self, retry_after: int = 0, message: str | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class RateLimitedError(AuthKeepError):
    code = "rate_limited"
    message = "Too many attempts, please try again later."

    def __init__(self, retry_after: int = 0, message: str | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class TokenError(AuthKeepError):
    code = "invalid_token"
    message = "Invalid token."


class InvalidTokenError(TokenError):
    """Bad signature, malformed token, or an unknown / revoked / expired refresh secret."""

    code = "invalid_token"
    message = "Invalid or expired token."


class ExpiredTokenError(TokenError):
    code = "token_expired"
    message = "Token has expired."


class WrongTokenTypeError(TokenError):
    code = "invalid_token_type"
    message = "Invalid token type."


# ---------------------------------------------------------------------------
# Infrastructure faults
# ---------------------------------------------------------------------------


class DataError(AuthKeepError):
    code = "data_error"
    message = "Service temporarily unavailable."


class TransientDataError(DataError):
    """A fault expected to clear on its own (reset connection, deadlock, timeout).

    Work functions passed to DataAccess.run_transaction may raise this to ask
    for the whole transaction to be retried.
    """

    code = "transient_data_error"


class FatalDataError(DataError):
    """A fault that retrying will not fix, or a transient one that exhausted its retries."""

    code = "fatal_data_error"
