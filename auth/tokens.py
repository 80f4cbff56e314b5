"""
auth/tokens.py -- Token codec, password hashing, and opaque-token utilities.

Security design decisions:
  JWT: python-jose with HS256. Access tokens carry the identity id, the
       resolved capability scopes, the session id and an expiry. The lifetime
       is clamped to Settings.access_token_max_ttl_seconds so no token ever
       outlives iat + max TTL. Verification raises a typed error (expired /
       bad signature / malformed) rather than returning None, so callers can
       tell a stale token from a forged one in logs.

       Access tokens are self-contained: revoking a refresh session takes
       effect on the next refresh, not on access tokens already handed out.
       The staleness window is bounded by the access-token TTL.

  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       enables timing equalization in CredentialVerifier.verify() so response
       time does not reveal whether an email is registered [C1].

  Opaque values (refresh sessions, email tokens, backup codes):
       secrets.token_urlsafe(32) gives 256 bits of entropy. We store
       HMAC-SHA256(SECRET_KEY, raw) so lookup is O(1) and a database leak does
       not yield usable tokens. bcrypt's intentional slowness is unnecessary.

  SECRET_KEY: injected from core.config.Settings at construction. Nothing here
       reads configuration at import time.

Layer rule: no imports from api/ or mailer/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import time

import bcrypt
from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTClaimsError, JWTError

from auth.errors import TokenExpired, TokenMalformed, TokenSignatureInvalid
from auth.models import AccessClaims
from core.config import Settings

logger = logging.getLogger("latchkey.auth.tokens")

_ALGORITHM = "HS256"

_ACCESS = "access"
_MFA_PENDING = "mfa-pending"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates input beyond 72 bytes; the API layer caps password length
    at 255 characters and the hash is still computed over the first 72 bytes.
    """
    return bcrypt.hashpw(plain.encode("utf-8")[:72], bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    bcrypt.checkpw compares in constant time. A corrupt stored hash raises
    ValueError inside bcrypt; that is a mismatch, not a crash.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8")[:72], hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
DUMMY_HASH: str = hash_password("latchkey_timing_dummy")


# ---------------------------------------------------------------------------
# Opaque tokens
# ---------------------------------------------------------------------------


def generate_opaque_token() -> str:
    """256-bit URL-safe random value for refresh sessions and email links."""
    return secrets.token_urlsafe(32)


def hash_opaque_token(raw: str, secret_key: str) -> str:
    """Return HMAC-SHA256(secret_key, raw) as a hex string.

    Deterministic, so the store can look a value up by its hash. Keyed, so an
    attacker holding a database dump cannot recompute hashes for guessed values.
    """
    return hmac.new(secret_key.encode(), raw.encode(), hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# JWT codec
# ---------------------------------------------------------------------------


class TokenCodec:
    """Mint and verify signed, time-bounded tokens.

    Pure function of (secret, claims, clock). Holds no mutable state, so one
    instance is shared by every request thread without locking.
    """

    def __init__(self, settings: Settings) -> None:
        self._secret = settings.secret_key
        self.default_ttl = settings.access_token_ttl_seconds
        self.max_ttl = settings.access_token_max_ttl_seconds
        self.mfa_ttl = settings.mfa_token_ttl_seconds

    def issue_access_token(
        self,
        identity_id: int,
        scopes: list[str],
        ttl: int | None = None,
        session_id: int | None = None,
    ) -> str:
        """Encode an access token. ttl is clamped to (0, max_ttl]."""
        duration = ttl if ttl and ttl > 0 else self.default_ttl
        duration = min(duration, self.max_ttl)
        now = int(time.time())
        payload = {
            "sub": str(identity_id),
            "scopes": list(scopes),
            "typ": _ACCESS,
            "iat": now,
            "exp": now + duration,
        }
        if session_id is not None:
            payload["sid"] = session_id
        return jwt.encode(payload, self._secret, algorithm=_ALGORITHM)

    def verify_access_token(self, token: str) -> AccessClaims:
        payload = self._decode(token, _ACCESS)
        scopes = payload.get("scopes")
        if not isinstance(scopes, list):
            raise TokenMalformed()
        return AccessClaims(
            identity_id=self._subject(payload),
            scopes=tuple(scopes),
            expires_at=int(payload["exp"]),
            issued_at=int(payload.get("iat", 0)),
            session_id=payload.get("sid"),
        )

    def issue_mfa_token(self, identity_id: int, ip: str | None = None) -> str:
        """Short-lived token proving the password step succeeded.

        Exchanged together with a TOTP or backup code for a full session.
        Carries no scopes and is rejected by verify_access_token(). Bound to
        the address that passed the password step.
        """
        now = int(time.time())
        payload = {
            "sub": str(identity_id),
            "typ": _MFA_PENDING,
            "iat": now,
            "exp": now + self.mfa_ttl,
        }
        if ip:
            payload["ip"] = ip
        return jwt.encode(payload, self._secret, algorithm=_ALGORITHM)

    def verify_mfa_token(self, token: str, ip: str | None = None) -> int:
        """Return the identity id from a valid awaiting-MFA token issued to `ip`."""
        payload = self._decode(token, _MFA_PENDING)
        if payload.get("ip") != (ip or None):
            raise TokenMalformed()
        return self._subject(payload)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _decode(self, token: str, expected_type: str) -> dict:
        try:
            jwt.get_unverified_header(token)
        except JWTError as exc:
            raise TokenMalformed() from exc
        try:
            payload = jwt.decode(token, self._secret, algorithms=[_ALGORITHM])
        except ExpiredSignatureError as exc:
            raise TokenExpired() from exc
        except JWTClaimsError as exc:
            raise TokenMalformed() from exc
        except JWTError as exc:
            raise TokenSignatureInvalid() from exc
        if payload.get("typ") != expected_type or "exp" not in payload:
            raise TokenMalformed()
        return payload

    @staticmethod
    def _subject(payload: dict) -> int:
        try:
            return int(payload["sub"])
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenMalformed() from exc
