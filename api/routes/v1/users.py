"""
api/routes/v1/users.py -- Per-identity session management.

Routes:
  GET    /api/v1/users/{userId}/sessions              -- active sessions, newest first
  DELETE /api/v1/users/{userId}/sessions/{sessionId}  -- revoke one session; 204

Authorization is by capability scope, resolved from the path:
  GET    requires "user-{userId}:read-session-*"
  DELETE requires "user-{userId}:delete-session-{sessionId}"

An access token only carries "user-<own id>:*", so a caller can list and
revoke its own sessions and nobody else's [IDOR guard]. The store also filters
the revoke by identity id.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Path, Request, Response

from api.models import SessionResponse
from auth.dependencies import require_scope
from auth.models import AccessClaims
from auth.service import AuthService

router = APIRouter()


@router.get("/users/{userId}/sessions", response_model=list[SessionResponse])
def list_sessions(
    request: Request,
    user_id: int = Path(alias="userId"),
    claims: AccessClaims = Depends(require_scope("user-{userId}:read-session-*")),
) -> list[SessionResponse]:
    service: AuthService = request.app.state.auth_service
    return [
        SessionResponse(
            id=s.id,
            ip_address=s.ip_address,
            user_agent=s.user_agent,
            created_at=s.created_at,
        )
        for s in service.list_sessions(user_id)
    ]


@router.delete("/users/{userId}/sessions/{sessionId}", status_code=204)
def revoke_session(
    request: Request,
    user_id: int = Path(alias="userId"),
    session_id: int = Path(alias="sessionId"),
    claims: AccessClaims = Depends(require_scope("user-{userId}:delete-session-{sessionId}")),
) -> Response:
    service: AuthService = request.app.state.auth_service
    service.revoke_identity_session(user_id, session_id)
    return Response(status_code=204)
