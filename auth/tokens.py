"""
auth/tokens.py -- JWT issuance, verification and the auth cookie helper.

Token format:
  HS256 (python-jose), signed with SECRET_KEY. Claims: sub (user id as a
  string), user_id, email, iat, exp, iss=TOKEN_ISSUER. Lifetime defaults to
  TOKEN_EXPIRE_SECONDS, seven days.

verify_access_token() fails closed. A bad signature, expiry, a wrong or
missing issuer, a missing required claim, or sub disagreeing with user_id
all give None, never an exception. The route layer turns None into 401.

decode_unverified() skips the signature check. It backs the decode-token CLI
command and must never gate access.

Tokens are stateless; there is no server-side revocation.

Layer rule: no imports from api/ or db/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.models import TokenClaims
from core.config import get_settings

logger = logging.getLogger("authflow.auth.tokens")

_ALGORITHM = "HS256"

_REQUIRED_CLAIMS = {
    "require_exp": True,
    "require_iat": True,
    "require_sub": True,
    "require_iss": True,
}


def create_access_token(
    user_id: int,
    email: str,
    expire_seconds: int = 0,
    *,
    secret_key: str | None = None,
    issued_at: datetime | None = None,
) -> str:
    """Encode a signed JWT binding a user id to an email address.

    Args:
        user_id:        Numeric user ID stored in the DB.
        email:          Normalized email of the user.
        expire_seconds: Token lifetime in seconds. If 0 (default), uses
                        Settings.token_expire_seconds.
        secret_key:     Signing key override. Defaults to Settings.secret_key.
        issued_at:      Issue time override. Defaults to now (UTC).
    """
    settings = get_settings()
    duration = expire_seconds if expire_seconds > 0 else settings.token_expire_seconds
    iat = issued_at or datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "user_id": user_id,
        "email": email,
        "iat": iat,
        "exp": iat + timedelta(seconds=duration),
        "iss": settings.token_issuer,
    }
    return jwt.encode(payload, secret_key or settings.secret_key, algorithm=_ALGORITHM)


def verify_access_token(token: str, *, secret_key: str | None = None) -> TokenClaims | None:
    """Verify a JWT and return its claims, or None on any failure."""
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            secret_key or settings.secret_key,
            algorithms=[_ALGORITHM],
            issuer=settings.token_issuer,
            options=_REQUIRED_CLAIMS,
        )
    except JWTError as exc:
        logger.debug("Token rejected: %s", exc)
        return None

    user_id = payload.get("user_id")
    email = payload.get("email")
    if type(user_id) is not int or not isinstance(email, str):
        return None
    if payload["sub"] != str(user_id):
        return None
    return TokenClaims(
        user_id=user_id,
        email=email,
        issuer=payload["iss"],
        issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
        expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
    )


def decode_unverified(token: str) -> dict | None:
    """Return the token's claims WITHOUT verifying the signature.

    For introspection only. Anything returned here may have been forged.
    """
    try:
        return jwt.get_unverified_claims(token)
    except JWTError:
        return None


def set_auth_cookie(response, token: str, expire_seconds: int = 0) -> None:
    """Store token in the "access_token" cookie.

    The cookie is hidden from page scripts and withheld from cross-site
    POSTs. It is HTTPS-only when SECURE_COOKIES is set, and lives exactly as
    long as the token.
    """
    settings = get_settings()
    duration = expire_seconds if expire_seconds > 0 else settings.token_expire_seconds
    response.set_cookie(
        "access_token",
        value=token,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=duration,
    )
