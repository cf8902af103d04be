"""
auth/validation.py -- Email normalization and credential input checks.

normalize_email() is the single normalization contract for the whole system.
The store applies it on every write and lookup, AuthService applies it before
pre-checks, and the OAuth path goes through the same store method. Keeping one
implementation is what makes the UNIQUE(email) index meaningful: two spellings
of the same address can never reach the table as different strings.

Normalization is strip() + lower(). str.casefold() is deliberately not used:
it folds characters such as "ß" to "ss", which would merge mailboxes that the
mail provider treats as distinct.

Layer rule: stdlib only.
"""

from __future__ import annotations

import re

from auth.models import AuthErrorCode, AuthFailure

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

MIN_PASSWORD_LENGTH = 6
# bcrypt only looks at the first 72 bytes and bcrypt>=5 rejects longer input.
MAX_PASSWORD_BYTES = 72


def normalize_email(email: str) -> str:
    return email.strip().lower()


def is_valid_email(email: str) -> bool:
    return EMAIL_PATTERN.match(email.strip()) is not None


def _invalid(field: str, message: str) -> AuthFailure:
    return AuthFailure(code=AuthErrorCode.validation_error, message=message, field=field)


def check_password(password: str) -> AuthFailure | None:
    """Return a failure if password violates the length policy."""
    if len(password) < MIN_PASSWORD_LENGTH:
        return _invalid("password", f"Password must be at least {MIN_PASSWORD_LENGTH} characters long.")
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        return _invalid("password", f"Password must be at most {MAX_PASSWORD_BYTES} bytes long.")
    return None


def validate_registration(name: str | None, email: str | None, password: str | None) -> AuthFailure | None:
    """Validate a registration request.

    Checks run in a fixed order and stop at the first failure:
      1. name, email and password are all present and non-empty
      2. email looks like local@domain.tld
      3. password length policy
    """
    if not name or not name.strip():
        return _invalid("name", "Name is required.")
    if not email or not email.strip():
        return _invalid("email", "Email is required.")
    if not password:
        return _invalid("password", "Password is required.")
    if not is_valid_email(email):
        return _invalid("email", "Please enter a valid email address.")
    return check_password(password)


def validate_login(email: str | None, password: str | None) -> AuthFailure | None:
    """Presence checks only. Format problems fall through to invalid_credentials."""
    if not email or not email.strip():
        return _invalid("email", "Email is required.")
    if not password:
        return _invalid("password", "Password is required.")
    return None


def validate_update(name: str | None, email: str | None, password: str | None) -> AuthFailure | None:
    """Validate the fields present in a partial profile update."""
    if name is not None and not name.strip():
        return _invalid("name", "Name cannot be empty.")
    if email is not None and not is_valid_email(email):
        return _invalid("email", "Please enter a valid email address.")
    if password is not None:
        return check_password(password)
    return None
