"""
auth/oauth.py -- Google and Facebook sign-in through authlib.

A provider is enabled when both its client ID and secret are configured
(GOOGLE_CLIENT_ID/GOOGLE_CLIENT_SECRET, FACEBOOK_CLIENT_ID/
FACEBOOK_CLIENT_SECRET). Enabled providers are registered on the shared
authlib registry when this module is imported.

get_federated_identity() turns a provider's token response into a
FederatedIdentity and nothing more. Find-or-provision and token issuance
belong to AuthService.oauth_sign_in, so a new provider needs an entry in
_PROVIDERS and an identity reader here, and no change anywhere else.

Trust rules:
  Google: the OIDC userinfo must say email_verified. An unverified address
  may belong to someone else.
  Facebook: the Graph API only hands out confirmed emails; a missing email
  is a failed sign-in.

authlib keeps the OAuth state value in the Starlette session
(SessionMiddleware in api/main.py) and checks it on the callback.

Layer rule: no imports from api/ or db/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuth

from auth.models import FederatedIdentity
from core.config import Settings, get_settings

logger = logging.getLogger("authflow.auth.oauth")

_FACEBOOK_GRAPH = "https://graph.facebook.com/v18.0/"

# name -> (label, endpoint and scope arguments for OAuth.register)
_PROVIDERS: dict[str, tuple[str, dict]] = {
    "google": (
        "Google",
        {
            "server_metadata_url": "https://accounts.google.com/.well-known/openid-configuration",
            "client_kwargs": {"scope": "openid email profile"},
        },
    ),
    "facebook": (
        "Facebook",
        {
            "access_token_url": _FACEBOOK_GRAPH + "oauth/access_token",
            "authorize_url": "https://www.facebook.com/v18.0/dialog/oauth",
            "api_base_url": _FACEBOOK_GRAPH,
            "client_kwargs": {"scope": "email public_profile"},
        },
    ),
}


def _credentials(settings: Settings, name: str) -> tuple[str, str]:
    return getattr(settings, f"{name}_client_id"), getattr(settings, f"{name}_client_secret")


def get_enabled_providers() -> list[dict]:
    """Return {"name", "label"} for every provider with credentials configured."""
    settings = get_settings()
    return [
        {"name": name, "label": label}
        for name, (label, _endpoints) in _PROVIDERS.items()
        if all(_credentials(settings, name))
    ]


def _build_registry() -> OAuth:
    registry = OAuth()
    settings = get_settings()
    for provider in get_enabled_providers():
        name = provider["name"]
        client_id, client_secret = _credentials(settings, name)
        registry.register(name=name, client_id=client_id, client_secret=client_secret, **_PROVIDERS[name][1])
        logger.info("%s OAuth provider registered", provider["label"])
    return registry


oauth = _build_registry()


# ---------------------------------------------------------------------------
# Identity extraction
# ---------------------------------------------------------------------------


async def get_federated_identity(client, provider: str, token: dict) -> FederatedIdentity:
    """Build a FederatedIdentity from the token authlib returned after the code exchange.

    client is the authlib client for provider; Facebook needs it for a
    Graph API call. Raises ValueError when no trustworthy email is available
    or the provider has no identity reader.
    """
    if provider == "google":
        return _google_identity(token)
    if provider == "facebook":
        return await _facebook_identity(client, token)
    raise ValueError(f"No identity reader for OAuth provider {provider!r}")


def _google_identity(token: dict) -> FederatedIdentity:
    # authlib parses the id_token into token["userinfo"] for OIDC providers.
    userinfo = token.get("userinfo") or {}
    if not userinfo:
        raise ValueError("google: token response carried no userinfo")
    if userinfo.get("email_verified") is not True:
        raise ValueError("google: account email is not verified")
    if not userinfo.get("email"):
        raise ValueError("google: userinfo has no email claim")
    return FederatedIdentity(
        provider="google",
        email=userinfo["email"],
        name=userinfo.get("name"),
        subject=userinfo.get("sub"),
    )


async def _facebook_identity(client, token: dict) -> FederatedIdentity:
    """Read id, name and email from Graph API /me.

    No email comes back for phone-number sign-ups or when the user declined
    the email permission.
    """
    resp = await client.get("me", params={"fields": "id,name,email"}, token=token)
    resp.raise_for_status()
    profile = resp.json()
    if not profile.get("email"):
        raise ValueError("facebook: no email returned; the email permission is required")
    return FederatedIdentity(
        provider="facebook",
        email=profile["email"],
        name=profile.get("name"),
        subject=str(profile["id"]) if profile.get("id") is not None else None,
    )
