"""
auth/errors.py -- Error taxonomy for authentication and session flows.

Every flow in auth/ fails fast by raising one of these. Each carries a stable
machine-readable code, a user-safe message and the HTTP status the API layer
should use; api/main.py turns them into the shared ErrorResponse envelope.

Enumeration resistance: there is deliberately no "email not found" error.
Unknown email and wrong password both raise InvalidCredentials with the same
message.

Layer rule: no imports from api/, core/, or mailer/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for all recoverable authentication failures."""

    code = "auth_error"
    message = "Authentication failed."
    status_code = 401

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class InvalidCredentials(AuthError):
    code = "bad_credentials"
    message = "Invalid email or password."


class MfaRequired(AuthError):
    """Password was correct but a second factor is needed.

    Carries the short-lived awaiting-MFA token the client exchanges, together
    with a TOTP or backup code, at POST /auth/login/totp.
    """

    code = "mfa_required"
    message = "A one-time code is required to finish signing in."

    def __init__(self, mfa_token: str) -> None:
        super().__init__()
        self.mfa_token = mfa_token


class InvalidMfaCode(AuthError):
    code = "invalid_mfa_code"
    message = "The one-time code is invalid."


class ApprovalPending(AuthError):
    """Login from an unrecognized subnet; approval link sent by email."""

    code = "approval_pending"
    message = "This login location must be approved. Check your email for an approval link."
    status_code = 403


class InvalidOrExpiredToken(AuthError):
    code = "invalid_token"
    message = "The token is invalid or has expired."


class TokenExpired(InvalidOrExpiredToken):
    code = "token_expired"
    message = "The token has expired."


class TokenSignatureInvalid(InvalidOrExpiredToken):
    code = "invalid_signature"
    message = "The token signature is invalid."


class TokenMalformed(InvalidOrExpiredToken):
    code = "malformed_token"
    message = "The token is malformed."


class AlreadyConsumedToken(AuthError):
    code = "token_consumed"
    message = "This link has already been used."
    status_code = 410


class WrongTokenPurpose(AuthError):
    code = "wrong_token_purpose"
    message = "This link cannot be used for this action."
    status_code = 400


class SessionRevoked(InvalidOrExpiredToken):
    code = "session_revoked"
    message = "The session has been revoked."


class IdentityNotFound(AuthError):
    code = "not_found"
    message = "Account not found."
    status_code = 404


class Conflict(AuthError):
    code = "conflict"
    message = "An account with that email already exists."
    status_code = 409


class InsufficientScope(AuthError):
    code = "forbidden"
    message = "The access token does not grant this capability."
    status_code = 403


class PwnedPassword(AuthError):
    code = "pwned_password"
    message = "This password has appeared in a data breach. Choose a different password."
    status_code = 400


class WeakPassword(AuthError):
    code = "weak_password"
    message = "Password is too short."
    status_code = 400
