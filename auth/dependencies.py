"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

get_access_claims() reads "Authorization: Bearer <access token>" and returns
the verified AccessClaims. Access tokens are self-contained: no storage lookup
happens here.

require_scope(template) builds a dependency that resolves a capability
template against the route's path parameters and checks it against the token:

    @router.get("/users/{userId}/sessions")
    def sessions(claims: AccessClaims = Depends(require_scope("user-{userId}:read-session-*"))): ...

A token for identity 7 carries "user-7:*", so it satisfies
"user-7:read-session-*" and nothing under "user-8:".

Layer rule: no imports from mailer/ or core/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from fastapi import Depends, HTTPException, Request

from auth.errors import InsufficientScope
from auth.models import AccessClaims
from auth.scopes import resolve_scope, scope_satisfied

logger = logging.getLogger("latchkey.auth.dependencies")


def bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def get_access_claims(request: Request) -> AccessClaims:
    """Require a valid access token. Raises HTTP 401 if none is presented.

    An invalid or expired token raises the typed AuthError from the codec,
    which the API maps to 401 with its specific code.
    """
    token = bearer_token(request)
    if token is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return request.app.state.auth_service.authenticate(token)


def require_scope(template: str) -> Callable[..., AccessClaims]:
    """Dependency factory: require a capability resolved from path parameters."""

    def dependency(request: Request, claims: AccessClaims = Depends(get_access_claims)) -> AccessClaims:
        try:
            required = resolve_scope(template, request.path_params)
        except KeyError:
            # Route declares a placeholder its path does not have.
            logger.error("Scope template %r unresolvable on %s", template, request.url.path)
            raise InsufficientScope() from None
        if not scope_satisfied(claims.scopes, required):
            logger.warning("Identity %d lacks %s", claims.identity_id, required)
            raise InsufficientScope()
        return claims

    return dependency
