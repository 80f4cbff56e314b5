"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; the store, the components and the routes do the work.

Layer rule: no imports from api/, core/, or mailer/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class TokenPurpose(str, Enum):
    """What a single-use email token authorizes. Checked on every redemption."""

    VERIFY_EMAIL = "verify-email"
    RESET_PASSWORD = "reset-password"
    PASSWORDLESS_LOGIN = "passwordless-login"
    APPROVE_SUBNET = "approve-subnet"
    MERGE_ACCOUNTS = "merge-accounts"


class SubnetCheck(str, Enum):
    RECOGNIZED = "recognized"
    UNRECOGNIZED = "unrecognized"


@dataclass
class Identity:
    """An account holder's credential and profile record.

    email_safe is the normalized comparison form (see auth.credentials.safe_email);
    uniqueness is enforced on it, not on the address as typed.

    hashed_password is None for federation-only identities (they have no local
    password). mfa_secret is None until an enrollment collaborator stores one.

    merged_into is set, together with is_active=False, when this identity was
    the source of an account merge. The row is kept so historical records that
    reference it stay valid.
    """

    email: str
    email_safe: str
    id: int | None = None
    name: str | None = None
    hashed_password: str | None = None
    mfa_secret: str | None = None
    email_verified: bool = False
    is_active: bool = True
    merged_into: int | None = None
    created_at: str | None = None

    @property
    def mfa_enabled(self) -> bool:
        return self.mfa_secret is not None


@dataclass(frozen=True)
class ExposedIdentity:
    """Sanitized projection of an Identity returned outside auth/.

    Never carries the password hash or the MFA secret.
    """

    id: int
    email: str
    name: str | None
    email_verified: bool
    mfa_enabled: bool
    is_active: bool
    created_at: str | None

    @classmethod
    def from_identity(cls, identity: Identity) -> "ExposedIdentity":
        return cls(
            id=identity.id,
            email=identity.email,
            name=identity.name,
            email_verified=identity.email_verified,
            mfa_enabled=identity.mfa_enabled,
            is_active=identity.is_active,
            created_at=identity.created_at,
        )


@dataclass
class RefreshSession:
    """One logged-in device/browser.

    The opaque refresh value is shown to the client once; only its HMAC
    (token_hash) is stored. subnet is the HMAC fingerprint of the coarse
    network prefix of ip_address, compared by the subnet guard.

    A session is pending (approved=False) when it was issued from an
    unrecognized subnet. Only redeeming the bound approve-subnet token flips
    it to approved; a pending session can never be refreshed.
    """

    identity_id: int
    token_hash: str
    subnet: str
    id: int | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    approved: bool = True
    created_at: str | None = None
    revoked_at: str | None = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    @property
    def is_active(self) -> bool:
        return self.approved and not self.is_revoked


@dataclass
class EmailToken:
    """A single-use, purpose-tagged value delivered by email.

    context holds the purpose-specific payload: {"session_id": int} for
    approve-subnet, {"source_id": int, "destination_id": int} for
    merge-accounts, {} otherwise.
    """

    identity_id: int
    purpose: TokenPurpose
    token_hash: str
    expires_at: str
    id: int | None = None
    context: dict = field(default_factory=dict)
    created_at: str | None = None
    consumed_at: str | None = None


@dataclass(frozen=True)
class ExternalIdentity:
    """Result of a federation handshake: an email the provider has verified."""

    email: str
    name: str | None = None
    provider: str | None = None


@dataclass(frozen=True)
class TokenPair:
    """What a successful login, refresh or approval hands back to the client."""

    access_token: str
    refresh_token: str
    expires_in: int
    identity_id: int
    session_id: int


@dataclass(frozen=True)
class AccessClaims:
    """Verified contents of an access token."""

    identity_id: int
    scopes: tuple[str, ...]
    expires_at: int
    issued_at: int
    session_id: int | None = None
