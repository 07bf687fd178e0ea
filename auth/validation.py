"""
auth/validation.py -- Semantic input checks for usernames, emails and passwords.

The HTTP layer only checks request shape. These functions re-validate every
value the core acts on, because the core never trusts its caller.

Password policy: at least PASSWORD_MIN_LENGTH characters, at most 72 UTF-8
bytes (bcrypt ignores anything past that, so a longer password would be
silently truncated), with at least one uppercase letter, one lowercase
letter, one digit and one symbol. Messages never echo the password.
"""

from __future__ import annotations

import re

from core.errors import ValidationError

USERNAME_MIN = 3
USERNAME_MAX = 30
EMAIL_MAX = 254
PASSWORD_MAX_BYTES = 72

_USERNAME_RE = re.compile(r"^[A-Za-z0-9_]+$")
# One "@", no whitespace, a dot in the domain part.
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(email: str) -> str:
    """Strip surrounding whitespace and lowercase, so lookups are case-insensitive."""
    return email.strip().lower()


def validate_username(username: str) -> str:
    if not isinstance(username, str):
        raise ValidationError("Username is required.", field="username")
    username = username.strip()
    if not USERNAME_MIN <= len(username) <= USERNAME_MAX or not _USERNAME_RE.match(username):
        raise ValidationError(
            f"Username must be {USERNAME_MIN}-{USERNAME_MAX} characters, letters, digits and underscores only.",
            field="username",
        )
    return username


def validate_email(email: str) -> str:
    """Return the normalized email or raise ValidationError."""
    if not isinstance(email, str):
        raise ValidationError("Valid email required.", field="email")
    normalized = normalize_email(email)
    if len(normalized) > EMAIL_MAX or not _EMAIL_RE.match(normalized):
        raise ValidationError("Valid email required.", field="email")
    return normalized


def validate_password(password: str, min_length: int = 8) -> str:
    if not isinstance(password, str) or not password:
        raise ValidationError("Password is required.", field="password")
    if len(password) < min_length:
        raise ValidationError(f"Password must be at least {min_length} characters.", field="password")
    if len(password.encode("utf-8")) > PASSWORD_MAX_BYTES:
        raise ValidationError(f"Password must be at most {PASSWORD_MAX_BYTES} bytes.", field="password")
    missing = [
        label
        for label, present in (
            ("an uppercase letter", any(c.isupper() for c in password)),
            ("a lowercase letter", any(c.islower() for c in password)),
            ("a digit", any(c.isdigit() for c in password)),
            ("a symbol", any(not c.isalnum() and not c.isspace() for c in password)),
        )
        if not present
    ]
    if missing:
        raise ValidationError("Password must contain " + ", ".join(missing) + ".", field="password")
    return password


def require_present(value: str | None, field: str) -> str:
    """Presence check for secrets we compare rather than validate (current password, tokens)."""
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{field.replace('_', ' ').capitalize()} is required.", field=field)
    return value
