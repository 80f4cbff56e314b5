"""
api/routes/v1/auth.py -- Authentication and session REST endpoints.

Routes:
  POST /api/v1/auth/register                   -- create identity; mails verify link; 201
  POST /api/v1/auth/login                      -- password (+ optional MFA code) login
  POST /api/v1/auth/login/totp                 -- exchange mfa_token + code for tokens
  POST /api/v1/auth/login/link                 -- mail a passwordless login link; 202
  POST /api/v1/auth/login/token                -- redeem a passwordless login link
  POST /api/v1/auth/refresh                    -- rotate a refresh token
  POST /api/v1/auth/logout                     -- revoke a refresh token (idempotent)
  POST /api/v1/auth/approve-subnet             -- redeem an approval link; tokens for that session
  POST /api/v1/auth/resend-email-verification  -- mail a fresh verify link; 202
  POST /api/v1/auth/verify-email               -- redeem a verify link; logs in
  POST /api/v1/auth/forgot-password            -- mail a reset link; 202
  POST /api/v1/auth/reset-password             -- redeem a reset link; revokes every session
  POST /api/v1/auth/merge-request              -- (auth) ask another address to merge into me; 202
  POST /api/v1/auth/merge-accounts             -- redeem a merge link
  GET  /api/v1/auth/me                         -- (auth) current identity
  GET  /api/v1/auth/oauth/providers            -- configured OAuth providers (public)
  GET  /api/v1/auth/oauth/{provider}           -- redirect to the provider
  GET  /api/v1/auth/oauth/{provider}/callback  -- provider callback; tokens

Every handler calls one AuthService method. AuthErrors propagate to the
handler in api/main.py, which renders the ErrorResponse envelope.

Security:
  [H2] Login and refresh routes are rate-limited per IP (Settings.login_rate_limit,
       Settings.refresh_rate_limit).
  [M5] Cache-Control: no-store on every response that carries tokens.
  Enumeration: login-link, forgot-password and resend always answer 202 with
       the same message, whether or not the address is registered.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import RedirectResponse
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter
from api.models import (
    EmailRequest,
    IdentityResponse,
    LoginRequest,
    MessageResponse,
    OAuthProviderInfo,
    RegisterRequest,
    ResetPasswordRequest,
    TokenRequest,
    TokenResponse,
    TotpLoginRequest,
)
from auth.dependencies import get_access_claims
from auth.models import AccessClaims, ExposedIdentity, TokenPair
from auth.oauth import get_enabled_providers, get_external_identity
from auth.service import AuthService
from core.config import get_settings

logger = logging.getLogger("latchkey.api.auth")

# Auth policy:
# - everything under /auth is public except:
# - POST /api/v1/auth/merge-request:  requires auth (get_access_claims)
# - GET  /api/v1/auth/me:             requires auth (get_access_claims)
router = APIRouter()

_MAIL_SENT = "If the address is registered, an email is on its way."


def _login_limit() -> str:
    return get_settings().login_rate_limit


def _refresh_limit() -> str:
    return get_settings().refresh_rate_limit


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _client(request: Request) -> tuple[str | None, str | None]:
    ip = request.client.host if request.client else None
    return ip, request.headers.get("User-Agent")


def _tokens(response: Response, pair: TokenPair) -> TokenResponse:
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
        expires_in=pair.expires_in,
        user_id=pair.identity_id,
        session_id=pair.session_id,
    )


def _identity(identity: ExposedIdentity) -> IdentityResponse:
    return IdentityResponse(
        id=identity.id,
        email=identity.email,
        name=identity.name,
        email_verified=identity.email_verified,
        mfa_enabled=identity.mfa_enabled,
        is_active=identity.is_active,
        created_at=identity.created_at,
    )


# ---------------------------------------------------------------------------
# Registration and verification
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=IdentityResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> IdentityResponse:
    identity = _service(request).register(body.email, body.password, name=body.name, ignore_pwned=body.ignore_pwned)
    return _identity(identity)


@router.post("/auth/resend-email-verification", response_model=MessageResponse, status_code=202)
def resend_email_verification(request: Request, body: EmailRequest) -> MessageResponse:
    _service(request).send_email_verification(body.email, resend=True)
    return MessageResponse(message=_MAIL_SENT)


@router.post("/auth/verify-email", response_model=TokenResponse)
def verify_email(request: Request, response: Response, body: TokenRequest) -> TokenResponse:
    ip, user_agent = _client(request)
    return _tokens(response, _service(request).verify_email(body.token, ip, user_agent))


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


@limiter.limit(_login_limit)  # [H2] brute-force mitigation -- must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=TokenResponse)
def login(request: Request, response: Response, body: LoginRequest) -> TokenResponse:
    """Password login.

    401 mfa_required (with mfa_token) when MFA is enrolled and no code was
    sent; 403 approval_pending when the network is new for this identity.
    """
    ip, user_agent = _client(request)
    pair = _service(request).login(body.email, body.password, ip, user_agent, code=body.code)
    return _tokens(response, pair)


@limiter.limit(_login_limit)  # [H2]
@router.post("/auth/login/totp", response_model=TokenResponse)
def login_totp(request: Request, response: Response, body: TotpLoginRequest) -> TokenResponse:
    ip, user_agent = _client(request)
    return _tokens(response, _service(request).login_with_totp(body.token, body.code, ip, user_agent))


@router.post("/auth/login/link", response_model=MessageResponse, status_code=202)
def login_link(request: Request, body: EmailRequest) -> MessageResponse:
    _service(request).request_login_link(body.email)
    return MessageResponse(message=_MAIL_SENT)


@router.post("/auth/login/token", response_model=TokenResponse)
def login_token(request: Request, response: Response, body: TokenRequest) -> TokenResponse:
    ip, user_agent = _client(request)
    return _tokens(response, _service(request).login_with_email_token(body.token, ip, user_agent))


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@limiter.limit(_refresh_limit)  # [H2]
@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, response: Response, body: TokenRequest) -> TokenResponse:
    ip, user_agent = _client(request)
    return _tokens(response, _service(request).refresh(body.token, ip, user_agent))


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, body: TokenRequest) -> MessageResponse:
    _service(request).logout(body.token)
    return MessageResponse(message="Logged out.")


@router.post("/auth/approve-subnet", response_model=TokenResponse)
def approve_subnet(request: Request, response: Response, body: TokenRequest) -> TokenResponse:
    return _tokens(response, _service(request).approve_subnet(body.token))


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.post("/auth/forgot-password", response_model=MessageResponse, status_code=202)
def forgot_password(request: Request, body: EmailRequest) -> MessageResponse:
    _service(request).request_password_reset(body.email)
    return MessageResponse(message=_MAIL_SENT)


@router.post("/auth/reset-password", response_model=TokenResponse)
def reset_password(request: Request, response: Response, body: ResetPasswordRequest) -> TokenResponse:
    ip, user_agent = _client(request)
    pair = _service(request).reset_password(body.token, body.password, ip, user_agent, ignore_pwned=body.ignore_pwned)
    return _tokens(response, pair)


# ---------------------------------------------------------------------------
# Account merge
# ---------------------------------------------------------------------------


@router.post("/auth/merge-request", response_model=MessageResponse, status_code=202)
def merge_request(
    request: Request,
    body: EmailRequest,
    claims: AccessClaims = Depends(get_access_claims),
) -> MessageResponse:
    """Ask the owner of body.email to merge that account into the caller's."""
    _service(request).request_merge(claims.identity_id, body.email)
    return MessageResponse(message=_MAIL_SENT)


@router.post("/auth/merge-accounts", response_model=IdentityResponse)
def merge_accounts(request: Request, body: TokenRequest) -> IdentityResponse:
    return _identity(_service(request).merge_accounts(body.token))


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=IdentityResponse)
def me(request: Request, claims: AccessClaims = Depends(get_access_claims)) -> IdentityResponse:
    return _identity(_service(request).get_identity(claims.identity_id))


# ---------------------------------------------------------------------------
# OAuth
#
# /auth/oauth/providers is registered before /auth/oauth/{provider} so
# "providers" is never taken for a provider name.
# ---------------------------------------------------------------------------


@router.get("/auth/oauth/providers", response_model=list[OAuthProviderInfo])
async def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Public -- the login page calls this to decide which buttons to render."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers(request.app.state.settings)]


def _require_provider(request: Request, provider: str) -> None:
    enabled = {p["name"] for p in get_enabled_providers(request.app.state.settings)}
    if provider not in enabled:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "OAuth provider not configured."},
        )


@router.get("/auth/oauth/{provider}")
async def oauth_redirect(request: Request, provider: str) -> RedirectResponse:
    """Redirect the browser to the provider's authorization page.

    The provider name is checked against the enabled list before redirecting,
    so a spoofed name cannot produce a redirect to an arbitrary URL.
    """
    _require_provider(request, provider)
    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/auth/oauth/{provider}/callback", response_model=TokenResponse, name="oauth_callback")
async def oauth_callback(request: Request, response: Response, provider: str) -> TokenResponse:
    """Exchange the code, extract the verified email [H1], then log in like a password login."""
    _require_provider(request, provider)
    client = request.app.state.oauth.create_client(provider)
    try:
        token = await client.authorize_access_token(request)
        external = await get_external_identity(client, provider, token)
    except OAuthError:
        logger.exception("OAuth token exchange failed for provider %r", provider)
        raise HTTPException(
            status_code=400,
            detail={"code": "oauth_failed", "message": "OAuth sign-in failed."},
        ) from None
    except ValueError:
        logger.warning("OAuth login rejected: unverified or missing email from %r", provider)
        raise HTTPException(
            status_code=400,
            detail={"code": "oauth_failed", "message": "The provider did not confirm a verified email."},
        ) from None

    ip, user_agent = _client(request)
    pair = await run_in_threadpool(_service(request).login_with_external_identity, external, ip, user_agent)
    return _tokens(response, pair)
