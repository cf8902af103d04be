"""
auth/dependencies.py -- Request-scoped helpers for FastAPI Depends().

A request may carry its access token in one of two places, checked in order:
  1. the "access_token" cookie set by login, register and the OAuth callback
  2. an "Authorization: Bearer <token>" header, for API clients

Resolving the token goes through AuthService.authenticate_token, so a valid
signature for a deleted account still yields no user.

Layer rule: no imports from api/ or db/. fastapi is allowed here because
these functions exist to be used as FastAPI dependencies.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import User
from auth.service import AuthService

_BEARER_PREFIX = "Bearer "


def get_auth_service(request: Request) -> AuthService:
    """AuthService built by the application lifespan."""
    return request.app.state.auth_service


def _extract_token(request: Request) -> str | None:
    cookie = request.cookies.get("access_token")
    if cookie:
        return cookie
    header = request.headers.get("Authorization", "")
    if header.startswith(_BEARER_PREFIX):
        return header[len(_BEARER_PREFIX) :].strip() or None
    return None


def try_get_current_user(request: Request) -> User | None:
    """The caller's account, or None when no usable token was presented."""
    token = _extract_token(request)
    if token is None:
        return None
    return get_auth_service(request).authenticate_token(token)


def get_current_user(request: Request) -> User:
    """Like try_get_current_user, but a missing or bad token is a 401."""
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user
