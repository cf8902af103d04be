"""
api/routes/oauth.py -- OAuth sign-in endpoints (Google, Facebook).

Routes:
  GET /auth/oauth/{provider}/login     -- redirect to the provider's consent page
  GET /auth/oauth/{provider}/callback  -- code exchange, find-or-provision, token

Flow:
  1. Exchange authorization code for token (authlib handles CSRF via session state).
  2. Turn the token into a FederatedIdentity -- raises ValueError if unverified.
  3. AuthService.oauth_sign_in() finds or provisions the local account.
  4. Return {message, token, user} and set the JWT cookie, same shape as login.

Provider names are checked against the enabled list before any authlib call,
so a spoofed provider segment can never reach create_client().
"""

from __future__ import annotations

import logging

import httpx
from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from api.models import error_response
from api.routes.auth import success_response
from auth.dependencies import get_auth_service
from auth.models import AuthFailure
from auth.oauth import get_enabled_providers, get_federated_identity

logger = logging.getLogger("authflow.api.oauth")

router = APIRouter()


def _oauth_failed() -> JSONResponse:
    return error_response(401, "oauth_failed", "OAuth authentication failed. Please try again.")


def _require_enabled(provider: str) -> None:
    enabled = {p["name"] for p in get_enabled_providers()}
    if provider not in enabled:
        raise HTTPException(
            status_code=404,
            detail={"code": "unknown_provider", "message": f"OAuth provider {provider!r} is not enabled."},
        )


@router.get("/auth/oauth/{provider}/login")
async def oauth_login(request: Request, provider: str):
    """Redirect the browser to the OAuth provider's authorization page."""
    _require_enabled(provider)
    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/auth/oauth/{provider}/callback", name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> JSONResponse:
    """Handle the OAuth provider callback and issue a token."""
    _require_enabled(provider)
    client = request.app.state.oauth.create_client(provider)

    try:
        token = await client.authorize_access_token(request)
    except OAuthError:
        logger.exception("OAuth token exchange failed for provider %r", provider)
        return _oauth_failed()

    try:
        identity = await get_federated_identity(client, provider, token)
    except (ValueError, httpx.HTTPError) as exc:
        logger.warning("OAuth sign-in rejected for %r: %s", provider, exc)
        return _oauth_failed()

    # Store access is blocking; keep it off the event loop.
    outcome = await run_in_threadpool(get_auth_service(request).oauth_sign_in, identity)
    if isinstance(outcome, AuthFailure):
        logger.warning("OAuth sign-in rejected for %r: %s", provider, outcome.message)
        return _oauth_failed()
    return success_response(outcome, f"Signed in with {provider.capitalize()}")
