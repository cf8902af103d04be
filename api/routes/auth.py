"""
api/routes/auth.py -- Registration, login and account REST endpoints.

Routes:
  POST   /auth/register   -- create account; returns token + user, sets JWT cookie
  POST   /auth/login      -- password login; returns token + user, sets JWT cookie
  POST   /auth/logout     -- clears cookie; 200
  GET    /auth/me         -- current user info (requires auth)
  PATCH  /auth/me         -- update name/email/password (requires auth)
  DELETE /auth/me         -- delete own account (requires auth)
  GET    /auth/providers  -- list enabled OAuth providers (public)

OPTIONS preflight for every route is answered by CORSMiddleware (api/main.py).

Status mapping for AuthService outcomes:
  validation_error    -> 400, detail names the field
  duplicate_email     -> 400
  invalid_credentials -> 401, identical for unknown email and wrong password
Infrastructure errors are not handled here; api/main.py maps them to 500.

Security:
  POST /login and POST /register are rate-limited per IP (LOGIN_RATE_LIMIT).
  Cache-Control: no-store on every response that carries a token.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    AuthResponse,
    LoginRequest,
    MeResponse,
    OAuthProviderInfo,
    RegisterRequest,
    UserPatch,
    UserPublic,
    error_response,
)
from auth.dependencies import get_auth_service, get_current_user
from auth.models import AuthErrorCode, AuthFailure, AuthSuccess, User, UserUpdate
from auth.oauth import get_enabled_providers
from auth.tokens import set_auth_cookie
from core.config import get_settings

# Auth policy:
# - POST   /auth/register:   public
# - POST   /auth/login:      public
# - POST   /auth/logout:     public -- clearing a cookie needs no prior auth
# - GET    /auth/providers:  public -- clients call this to render OAuth buttons
# - GET    /auth/me:         requires auth (get_current_user)
# - PATCH  /auth/me:         requires auth (get_current_user)
# - DELETE /auth/me:         requires auth (get_current_user)
router = APIRouter()

_RATE_LIMIT = get_settings().login_rate_limit

_FAILURE_STATUS = {
    AuthErrorCode.validation_error: 400,
    AuthErrorCode.duplicate_email: 400,
    AuthErrorCode.invalid_credentials: 401,
}


# ---------------------------------------------------------------------------
# Response helpers
# ---------------------------------------------------------------------------


def failure_response(failure: AuthFailure) -> JSONResponse:
    """Render an AuthFailure in the standard error envelope."""
    resp = error_response(_FAILURE_STATUS[failure.code], failure.code.value, failure.message, detail=failure.field)
    resp.headers["Cache-Control"] = "no-store"
    return resp


def success_response(outcome: AuthSuccess, message: str) -> JSONResponse:
    """Render an AuthSuccess as {message, token, user} and set the JWT cookie."""
    user = outcome.user
    resp = JSONResponse(
        status_code=200,
        content=AuthResponse(
            message=message,
            token=outcome.token,
            user=UserPublic(id=user.id, name=user.name, email=user.email),
        ).model_dump(),
    )
    set_auth_cookie(resp, outcome.token)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(_RATE_LIMIT)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=AuthResponse)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an account and return a token for it.

    Emails are normalized (trimmed, lower-cased) before the duplicate check
    and before storage, so "Ann@Test.com" and " ann@test.com " collide.
    """
    outcome = get_auth_service(request).register(body.name, body.email, body.password)
    if isinstance(outcome, AuthFailure):
        return failure_response(outcome)
    return success_response(outcome, "User created successfully")


@limiter.limit(_RATE_LIMIT)  # brute-force mitigation
@router.post("/auth/login", response_model=AuthResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Returns the same generic error for unknown email and wrong password
    ("invalid_credentials") to avoid leaking which emails are registered.
    """
    outcome = get_auth_service(request).login(body.email, body.password)
    if isinstance(outcome, AuthFailure):
        return failure_response(outcome)
    return success_response(outcome, "Login successful")


@router.post("/auth/logout")
async def logout() -> JSONResponse:
    """Clear the JWT cookie. The token itself stays valid until it expires."""
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie("access_token")
    return resp


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers() -> list[OAuthProviderInfo]:
    """Return the list of configured OAuth providers (empty if none)."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers()]


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(current_user: User = Depends(get_current_user)) -> MeResponse:
    """Return the currently authenticated user."""
    return MeResponse(
        id=current_user.id,
        name=current_user.name,
        email=current_user.email,
        created_at=current_user.created_at,
        updated_at=current_user.updated_at,
    )


@router.patch("/auth/me", response_model=AuthResponse)
def update_me(
    request: Request,
    body: UserPatch,
    current_user: User = Depends(get_current_user),
) -> JSONResponse:
    """Update the caller's name, email and/or password.

    A fresh token is returned because tokens carry the email.
    """
    changes = UserUpdate(name=body.name, email=body.email, password=body.password)
    outcome = get_auth_service(request).update_profile(current_user.id, changes)
    if outcome is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )
    if isinstance(outcome, AuthFailure):
        return failure_response(outcome)
    return success_response(outcome, "Profile updated")


@router.delete("/auth/me", status_code=204)
def delete_me(request: Request, current_user: User = Depends(get_current_user)) -> Response:
    """Permanently delete the caller's account and clear the cookie."""
    if not get_auth_service(request).delete_account(current_user.id):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )
    resp = Response(status_code=204)
    resp.delete_cookie("access_token")
    return resp
