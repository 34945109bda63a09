"""
auth/oauth.py -- Authlib OAuth/OIDC provider registry and identity extraction.

build_oauth_registry() registers only providers whose client ID and secret
(and discovery URL for generic OIDC) are configured. It is called once from
the FastAPI lifespan; nothing here runs at import time.

Security notes:
  [H1] Email verification is mandatory. get_oauth_identity() raises ValueError
       if the provider does not confirm the email is verified. The provider's
       link-or-create flow may attach the identity to an existing account with
       the same email, so an unverified address would be an account takeover.

  OAuth state parameter (CSRF protection) is handled by Authlib via Starlette
  SessionMiddleware. The state lives in the signed session cookie between the
  authorization redirect and the callback.

Supported providers:
  github -- Authorization code flow; static endpoints.
  google -- Authorization code flow; OIDC discovery.
  oidc   -- Generic OIDC discovery (Okta, Azure AD, Keycloak, Authentik, etc.)

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuth

from auth.models import OAuthIdentity
from core.config import Settings

logger = logging.getLogger("gatehouse.auth.oauth")

# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------


def build_oauth_registry(settings: Settings) -> OAuth:
    oauth = OAuth()

    # GitHub -- static endpoints (no OIDC discovery document)
    if settings.github_client_id and settings.github_client_secret:
        oauth.register(
            name="github",
            client_id=settings.github_client_id,
            client_secret=settings.github_client_secret,
            access_token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
            authorize_url="https://github.com/login/oauth/authorize",
            api_base_url="https://api.github.com/",
            client_kwargs={"scope": "read:user user:email"},
        )
        logger.info("GitHub OAuth provider registered")

    if settings.google_client_id and settings.google_client_secret:
        oauth.register(
            name="google",
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google OAuth provider registered")

    if settings.oidc_client_id and settings.oidc_client_secret and settings.oidc_discovery_url:
        oauth.register(
            name="oidc",
            client_id=settings.oidc_client_id,
            client_secret=settings.oidc_client_secret,
            server_metadata_url=settings.oidc_discovery_url,
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Generic OIDC provider registered (display name: %s)", settings.oidc_display_name)

    return oauth


# ---------------------------------------------------------------------------
# Provider metadata
# ---------------------------------------------------------------------------


def get_enabled_providers(settings: Settings) -> list[dict]:
    """Return [{"name": ..., "label": ...}] for every configured provider.

    Used by GET /api/v1/auth/providers so a login page can render one button
    per provider.
    """
    providers: list[dict] = []
    if settings.github_client_id and settings.github_client_secret:
        providers.append({"name": "github", "label": "GitHub"})
    if settings.google_client_id and settings.google_client_secret:
        providers.append({"name": "google", "label": "Google"})
    if settings.oidc_client_id and settings.oidc_client_secret and settings.oidc_discovery_url:
        providers.append({"name": "oidc", "label": settings.oidc_display_name})
    return providers


# ---------------------------------------------------------------------------
# Identity extraction -- provider-specific normalization [H1]
# ---------------------------------------------------------------------------


async def get_oauth_identity(client, provider: str, token: dict) -> OAuthIdentity:
    """Normalize a provider token response into an OAuthIdentity.

    Args:
        client:   The Authlib OAuth client for this provider.
        provider: "github", "google", or "oidc".
        token:    The token dict returned by Authlib after code exchange.

    Raises:
        ValueError: If a verified email cannot be confirmed, or the response
            lacks a stable subject id. Callers treat this as an authentication
            failure.
    """
    if provider == "github":
        return await _get_github_identity(client, token)
    elif provider in ("google", "oidc"):
        return _get_oidc_identity(token, provider)
    else:
        raise ValueError(f"Unknown OAuth provider: {provider!r}")


async def _get_github_identity(client, token: dict) -> OAuthIdentity:
    """GitHub does not put the email in the token: read /user, then /user/emails.

    [H1] Only the entry with both primary=true and verified=true is accepted.
    """
    resp = await client.get("user", token=token)
    resp.raise_for_status()
    profile = resp.json()
    subject_id = str(profile["id"])

    emails_resp = await client.get("user/emails", token=token)
    emails_resp.raise_for_status()

    email: str | None = None
    for entry in emails_resp.json():
        if entry.get("primary") and entry.get("verified"):
            email = entry["email"]
            break

    if not email:
        raise ValueError(
            "GitHub OAuth: no primary verified email found. "
            "The user must verify their email address on GitHub before logging in."
        )

    return OAuthIdentity(
        provider="github",
        provider_account_id=subject_id,
        email=email,
        name=profile.get("name") or profile.get("login"),
        image=profile.get("avatar_url"),
        raw_profile=profile,
    )


def _get_oidc_identity(token: dict, provider: str) -> OAuthIdentity:
    """Read email, email_verified and sub from the id_token claims.

    [H1] A missing email_verified claim counts as unverified.
    """
    userinfo = token.get("userinfo")
    if not userinfo:
        raise ValueError(f"{provider} OAuth: no userinfo in token response")

    if not userinfo.get("email_verified", False):
        raise ValueError(
            f"{provider} OAuth: email is not verified. "
            "The provider must confirm email ownership before login is allowed."
        )

    email = userinfo.get("email")
    subject_id = userinfo.get("sub")
    if not email or not subject_id:
        raise ValueError(f"{provider} OAuth: missing email or sub claim in userinfo")

    return OAuthIdentity(
        provider=provider,
        provider_account_id=str(subject_id),
        email=email,
        name=userinfo.get("name"),
        image=userinfo.get("picture"),
        raw_profile=dict(userinfo),
    )
