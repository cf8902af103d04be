"""
auth/passwords.py -- bcrypt password hashing.

Using bcrypt directly rather than passlib[bcrypt] because passlib's internal
wrap-bug detection creates a password longer than 72 bytes, which bcrypt 4.x
rejects with an explicit error. Direct bcrypt usage is simpler and has no
compatibility shim.

Every hash_password() call draws a new salt, so the same plaintext never
hashes to the same string twice, yet every such hash verifies.

Layer rule: no imports from api/ or db/. Import from core/ is allowed.
"""

from __future__ import annotations

import secrets
from functools import lru_cache

import bcrypt

from core.config import get_settings


def hash_password(plain: str, rounds: int | None = None) -> str:
    """Return a bcrypt hash of the given plaintext password.

    rounds defaults to Settings.bcrypt_rounds (10). Inputs longer than 72
    bytes are rejected upstream by auth.validation.check_password.
    """
    cost = rounds if rounds is not None else get_settings().bcrypt_rounds
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=cost)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    Never raises: a malformed hash or an over-long password is a mismatch.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


@lru_cache(maxsize=1)
def _dummy_hash() -> str:
    return hash_password("authflow_timing_dummy")


def equalize_timing(plain: str) -> None:
    """Spend one bcrypt verification when there is no real hash to check.

    Called on the "unknown email" branch of login so its response time
    matches the "wrong password" branch and does not reveal which emails are
    registered.
    """
    verify_password(plain, _dummy_hash())


def generate_placeholder_password() -> str:
    """Random secret for accounts provisioned through OAuth.

    256 bits of entropy. It is hashed and stored like any password but never
    shown to anyone, so the account cannot be used with password login until
    the owner sets a password of their own.
    """
    return secrets.token_urlsafe(32)
