"""
auth/oauth.py -- Authlib OAuth/OIDC provider registry.

This module only turns a provider callback into an ExternalIdentity. What
happens next (find-or-create, subnet guard, tokens) is AuthService's job, and
is identical to a password login.

build_oauth() registers a provider only when both its client ID and secret are
configured. The registry is built once in the API lifespan from the injected
Settings and stored on app.state.oauth.

Security notes:
  [H1] Email verification is mandatory. get_external_identity() raises
       ValueError if the provider does not confirm the email is verified. An
       unverified email from GitHub could belong to an attacker who added a
       victim's address without confirming it -- and a verified email is all
       it takes to be logged in as the identity that owns it.

  OAuth state parameter (CSRF protection) is handled by authlib automatically
  via Starlette SessionMiddleware. The session stores the state between the
  authorization redirect and the callback.

Supported providers:
  github -- Authorization code flow; static endpoints.
  google -- Authorization code flow; OIDC discovery.

Layer rule: no imports from api/ or mailer/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuth

from auth.models import ExternalIdentity
from core.config import Settings

logger = logging.getLogger("latchkey.auth.oauth")

_LABELS = {"github": "GitHub", "google": "Google"}


# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------


def build_oauth(settings: Settings) -> OAuth:
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

    # Google -- OIDC discovery
    if settings.google_client_id and settings.google_client_secret:
        oauth.register(
            name="google",
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google OAuth provider registered")

    return oauth


def get_enabled_providers(settings: Settings) -> list[dict]:
    """Return [{"name": ..., "label": ...}] for every configured provider."""
    providers: list[dict] = []
    if settings.github_client_id and settings.github_client_secret:
        providers.append({"name": "github", "label": _LABELS["github"]})
    if settings.google_client_id and settings.google_client_secret:
        providers.append({"name": "google", "label": _LABELS["google"]})
    return providers


# ---------------------------------------------------------------------------
# Identity extraction -- provider-specific normalization [H1]
# ---------------------------------------------------------------------------


async def get_external_identity(client, provider: str, token: dict) -> ExternalIdentity:
    """Extract a verified ExternalIdentity from a provider token response.

    Raises:
        ValueError: If a verified email cannot be confirmed, or the provider is unknown.
    """
    if provider == "github":
        return await _github_identity(client, token)
    elif provider == "google":
        return _oidc_identity(token, provider)
    else:
        raise ValueError(f"Unknown OAuth provider: {provider!r}")


async def _github_identity(client, token: dict) -> ExternalIdentity:
    """GitHub does not put the email in the token; two API calls are needed.

    [H1] Only the entry with both primary=true AND verified=true is accepted.
    """
    resp = await client.get("user", token=token)
    resp.raise_for_status()
    profile = resp.json()

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

    return ExternalIdentity(email=email, name=profile.get("name") or profile.get("login"), provider="github")


def _oidc_identity(token: dict, provider: str) -> ExternalIdentity:
    """[H1] The email claim is only accepted when email_verified is True.

    Some OIDC providers omit email_verified entirely -- that is treated as
    unverified.
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
    if not email:
        raise ValueError(f"{provider} OAuth: missing email claim in userinfo")

    return ExternalIdentity(email=email, name=userinfo.get("name"), provider=provider)
