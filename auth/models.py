"""
auth/models.py -- Domain dataclasses for authentication entities and outcomes.

Pattern: Data class (pure data container, zero logic). Dataclasses own the
domain shape; the store, service and routes do the work.

Outcome types:
  AuthService never raises for expected failures (bad input, duplicate email,
  wrong password). It returns AuthSuccess or AuthFailure and the route layer
  maps AuthFailure.code to an HTTP status. Infrastructure errors from db/ are
  not outcomes and propagate as exceptions.

Layer rule: no imports from api/ or db/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Union


@dataclass
class User:
    """A row of the users table.

    email is always the normalized form (see auth.validation.normalize_email).
    password holds the bcrypt hash, or None once AuthService has stripped it
    from a value that is about to leave the auth layer.
    """

    name: str
    email: str
    id: int | None = None
    password: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class NewUser:
    """Input to UserStore.create_user. password is plaintext; the store hashes it."""

    name: str
    email: str
    password: str


@dataclass(frozen=True)
class UserUpdate:
    """Partial update for UserStore.update_user.

    Each field is independent: None means "leave unchanged". A present
    password is re-hashed, a present email is re-normalized.
    """

    name: str | None = None
    email: str | None = None
    password: str | None = None

    def is_empty(self) -> bool:
        return self.name is None and self.email is None and self.password is None


@dataclass(frozen=True)
class TokenClaims:
    """Verified claims from an access token."""

    user_id: int
    email: str
    issuer: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class FederatedIdentity:
    """An identity asserted by an OAuth provider after a successful handshake."""

    provider: str  # "google", "facebook"
    email: str
    name: str | None = None
    subject: str | None = None  # provider's stable user ID, informational only


class AuthErrorCode(str, Enum):
    validation_error = "validation_error"
    duplicate_email = "duplicate_email"
    invalid_credentials = "invalid_credentials"


@dataclass(frozen=True)
class AuthSuccess:
    """A completed authentication. user.password is always None here."""

    user: User
    token: str
    created: bool = False


@dataclass(frozen=True)
class AuthFailure:
    """An expected, user-visible failure. field names the offending input, if any."""

    code: AuthErrorCode
    message: str
    field: str | None = None


AuthOutcome = Union[AuthSuccess, AuthFailure]
