"""
auth/credentials.py -- Credential verification and email normalization.

safe_email() produces the canonical comparable form of an address so that
"User+news@Host.com" and "user@host.com" resolve to one identity. The form is
used for lookup and uniqueness only; the address as typed is kept for mail.

CredentialVerifier.verify() is the only place a password is compared. It
always runs bcrypt -- against the stored hash, or against DUMMY_HASH when the
email is unknown, the identity is federation-only, or it is inactive -- so
neither the error nor the response time reveals which case occurred [C1].

Layer rule: no imports from api/ or mailer/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from auth.errors import InvalidCredentials
from auth.models import ExternalIdentity, Identity
from auth.store import AuthStore
from auth.tokens import DUMMY_HASH, verify_password
from core.redact import redact_email

logger = logging.getLogger("latchkey.auth.credentials")

# Providers that ignore dots in the local part.
_DOTLESS_DOMAINS = {"gmail.com", "googlemail.com"}


def safe_email(email: str) -> str:
    """Return the normalized comparison form of an email address.

    Lowercases, strips surrounding whitespace, drops a "+tag" suffix from the
    local part and, for providers that ignore them, dots in the local part.
    Input without an "@" is returned lowercased so the lookup simply misses.
    """
    email = email.strip().lower()
    if "@" not in email:
        return email
    local, domain = email.rsplit("@", 1)
    local = local.split("+", 1)[0]
    if domain in _DOTLESS_DOMAINS:
        local = local.replace(".", "")
        domain = "gmail.com"
    return f"{local}@{domain}"


class CredentialVerifier:
    """Check an email/password pair, or resolve an externally verified identity."""

    def __init__(self, store: AuthStore) -> None:
        self.store = store

    def verify(self, email: str, password: str) -> Identity:
        """Return the matching active Identity or raise InvalidCredentials."""
        identity = self.store.get_identity_by_email(safe_email(email))
        if identity is None or identity.hashed_password is None:
            # Equalize timing -- do NOT return early before running bcrypt [C1]
            verify_password(password, DUMMY_HASH)
            raise InvalidCredentials()
        if not verify_password(password, identity.hashed_password):
            raise InvalidCredentials()
        if not identity.is_active:
            raise InvalidCredentials()
        return identity

    def find_or_create_external(self, external: ExternalIdentity) -> Identity:
        """Map a provider-verified email to an identity, creating one if needed.

        The provider has proven mailbox ownership, so a created identity starts
        with email_verified=True and no password. An existing inactive identity
        (e.g. a merge source) is refused like a bad password.
        """
        email_safe = safe_email(external.email)
        identity = self.store.get_identity_by_email(email_safe)
        if identity is None:
            try:
                new_id = self.store.create_identity(
                    Identity(
                        email=external.email.strip(),
                        email_safe=email_safe,
                        name=external.name,
                        email_verified=True,
                    )
                )
            except IntegrityError:
                # A concurrent federated login created it first.
                identity = self.store.get_identity_by_email(email_safe)
            else:
                identity = self.store.get_identity(new_id)
                logger.info(
                    "Created identity %d from %s login for %s",
                    new_id,
                    external.provider or "external",
                    redact_email(external.email),
                )
        if identity is None or not identity.is_active:
            raise InvalidCredentials()
        return identity
