"""
auth/email_tokens.py -- Single-use, purpose-tagged email tokens.

issue():
  Persists an EmailToken (hash only) and, after the transaction commits,
  queues the purpose-specific notice carrying the link.

  issue() is persist() in its own transaction followed by send(). Flows that
  must write the token together with other rows (the subnet guard's pending
  session, written inside a redemption or a backup-code consumption) call
  persist(conn=...) themselves and send() once their transaction commits.

redeem():
  One transaction: lookup -> consumed? -> purpose -> expiry -> identity ->
  conditional consume -> side effect. Any exception, including one raised by
  the side effect, rolls the consumption back, so a token is never burned
  without its effect taking place, and never takes effect twice.

  The consumed check comes before the purpose check: a second redemption
  reports AlreadyConsumedToken whatever purpose it names.

Links point at {frontend_url}/auth/<path>?token=<raw>. The raw value appears
only in the mail body; logs carry the purpose and identity id.

Layer rule: no imports from api/. mailer.notices (the notice dataclasses) is the
only mailer import.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol
from urllib.parse import urlencode

from sqlalchemy.engine import Connection

from auth.errors import AlreadyConsumedToken, InvalidOrExpiredToken, TokenExpired, WrongTokenPurpose
from auth.models import EmailToken, Identity, TokenPurpose
from auth.store import AuthStore
from auth.tokens import generate_opaque_token
from core.config import Settings
from mailer.notices import (
    ApproveSubnetNotice,
    LoginLinkNotice,
    MergeRequestNotice,
    Notice,
    PasswordResetNotice,
    VerifyEmailNotice,
)

logger = logging.getLogger("latchkey.auth.email_tokens")

# Frontend route that consumes each purpose's link.
_LINK_PATHS: dict[TokenPurpose, str] = {
    TokenPurpose.VERIFY_EMAIL: "verify-email",
    TokenPurpose.RESET_PASSWORD: "reset-password",
    TokenPurpose.PASSWORDLESS_LOGIN: "login/token",
    TokenPurpose.APPROVE_SUBNET: "approve-subnet",
    TokenPurpose.MERGE_ACCOUNTS: "merge-accounts",
}


class Notifier(Protocol):
    """Best-effort outbound mail. Implemented by mailer.queue.MailQueue."""

    def notify(self, to: str, notice: Notice) -> None: ...


def display_name(identity: Identity) -> str:
    return identity.name or identity.email.split("@", 1)[0]


class EmailTokenBroker:
    def __init__(self, store: AuthStore, notifier: Notifier, settings: Settings) -> None:
        self.store = store
        self.notifier = notifier
        self.frontend_url = settings.frontend_url.rstrip("/")
        self.ttls: dict[TokenPurpose, int] = {
            TokenPurpose.VERIFY_EMAIL: settings.verify_email_token_ttl_seconds,
            TokenPurpose.RESET_PASSWORD: settings.reset_password_token_ttl_seconds,
            TokenPurpose.PASSWORDLESS_LOGIN: settings.login_link_token_ttl_seconds,
            TokenPurpose.APPROVE_SUBNET: settings.approve_subnet_token_ttl_seconds,
            TokenPurpose.MERGE_ACCOUNTS: settings.merge_accounts_token_ttl_seconds,
        }

    def link(self, purpose: TokenPurpose, raw: str) -> str:
        return f"{self.frontend_url}/auth/{_LINK_PATHS[purpose]}?{urlencode({'token': raw})}"

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(
        self,
        identity: Identity,
        purpose: TokenPurpose,
        context: dict | None = None,
        **notice_fields: Any,
    ) -> str:
        """Persist a token for `identity` and queue its notice. Returns the raw value.

        notice_fields are the purpose-specific template fields beyond name and
        link: resend (verify-email), ip_address and user_agent (approve-subnet),
        destination_email (merge-accounts).
        """
        raw = self.store.atomic(lambda conn: self.persist(identity, purpose, conn, context))
        self.send(identity, purpose, raw, **notice_fields)
        return raw

    def persist(self, identity: Identity, purpose: TokenPurpose, conn: Connection, context: dict | None = None) -> str:
        """Write a token inside the caller's transaction. Sends nothing."""
        raw = generate_opaque_token()
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=self.ttls[purpose])
        self.store.create_email_token(
            EmailToken(
                identity_id=identity.id,
                purpose=purpose,
                token_hash=self.store.hash_token(raw),
                expires_at=expires_at.isoformat(),
                context=dict(context or {}),
            ),
            conn=conn,
        )
        return raw

    def send(self, identity: Identity, purpose: TokenPurpose, raw: str, **notice_fields: Any) -> None:
        """Queue the notice for a committed token."""
        logger.info("Issued %s token for identity %d", purpose.value, identity.id)
        self.notifier.notify(identity.email, self._notice(identity, purpose, self.link(purpose, raw), notice_fields))

    def _notice(self, identity: Identity, purpose: TokenPurpose, url: str, fields: dict) -> Notice:
        name = display_name(identity)
        if purpose is TokenPurpose.VERIFY_EMAIL:
            return VerifyEmailNotice(name=name, action_url=url, resend=bool(fields.get("resend", False)))
        if purpose is TokenPurpose.RESET_PASSWORD:
            return PasswordResetNotice(name=name, action_url=url)
        if purpose is TokenPurpose.PASSWORDLESS_LOGIN:
            return LoginLinkNotice(name=name, action_url=url)
        if purpose is TokenPurpose.APPROVE_SUBNET:
            return ApproveSubnetNotice(
                name=name,
                action_url=url,
                ip_address=fields.get("ip_address") or "unknown",
                user_agent=fields.get("user_agent") or "unknown",
            )
        return MergeRequestNotice(name=name, action_url=url, destination_email=fields["destination_email"])

    # ------------------------------------------------------------------
    # Redeem
    # ------------------------------------------------------------------

    def redeem(
        self,
        raw: str,
        purpose: TokenPurpose,
        side_effect: Callable[[Connection, Identity, EmailToken], Any] | None = None,
    ) -> tuple[Identity, EmailToken, Any]:
        """Consume a token and apply its side effect atomically.

        Returns (identity, token, side_effect_result). Raises
        InvalidOrExpiredToken, AlreadyConsumedToken or WrongTokenPurpose, or
        whatever the side effect raises -- in every error case nothing is
        consumed.
        """
        if not raw:
            raise InvalidOrExpiredToken()

        def unit(conn: Connection) -> tuple[Identity, EmailToken, Any]:
            token = self.store.find_email_token(raw, conn=conn)
            if token is None:
                raise InvalidOrExpiredToken()
            if token.consumed_at is not None:
                raise AlreadyConsumedToken()
            if token.purpose is not purpose:
                raise WrongTokenPurpose()
            if datetime.fromisoformat(token.expires_at) <= datetime.now(timezone.utc):
                raise TokenExpired()
            identity = self.store.get_identity(token.identity_id, conn=conn)
            if identity is None or not identity.is_active:
                raise InvalidOrExpiredToken()
            if not self.store.consume_email_token(token.id, conn=conn):
                raise AlreadyConsumedToken()
            result = side_effect(conn, identity, token) if side_effect is not None else None
            return identity, token, result

        identity, token, result = self.store.atomic(unit)
        logger.info("Redeemed %s token for identity %d", purpose.value, identity.id)
        return identity, token, result
