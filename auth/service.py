"""
auth/service.py -- Session orchestrator: every login, refresh and recovery flow.

Pattern: Facade over the auth components. AuthService owns no state of its own;
it composes

    CredentialVerifier  -> who is this?
    MfaVerifier         -> second factor, when enrolled
    SubnetGuard         -> is this a network we have seen for them?
    EmailTokenBroker    -> single-use links (verify, reset, login, approve, merge)
    AuthStore           -> refresh sessions and identity records
    TokenCodec          -> access tokens and awaiting-MFA tokens

into the flows the API exposes. Routes call exactly one method here.

Failure model:
  Every flow fails fast with an AuthError on the first unmet precondition and
  leaves no partial state behind. Multi-write steps (redeem + side effect,
  rotation, reset + revoke-all, merge) run as a single store transaction.
  Notifications are queued after the transaction commits; the notifier never
  raises, so a mail outage cannot fail or roll back a flow.

Password login:
    verify credentials -> MFA enrolled and no code?  raise MfaRequired(token)
                       -> MFA code supplied?         MfaVerifier
                       -> SubnetGuard.check
                            Recognized   -> new active session + access token
                            Unrecognized -> pending session + approval token;
                                            after commit: approval mail,
                                            raise ApprovalPending

  The backup-code consumption, the guard check and the session (or pending
  session) writes share one transaction; so do a login link's consumption and
  its hold. Either all of it commits or the code and the link stay usable.

Verify-email and reset-password redemptions prove mailbox ownership, which is
what an approve-subnet link proves, so they issue an active session directly.

Layer rule: no imports from api/. mailer.notices (the notice dataclasses) is the
only mailer import.
"""

from __future__ import annotations

import logging

from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from auth.credentials import CredentialVerifier, safe_email
from auth.email_tokens import EmailTokenBroker, Notifier, display_name
from auth.errors import (
    ApprovalPending,
    Conflict,
    IdentityNotFound,
    InvalidOrExpiredToken,
    MfaRequired,
    PwnedPassword,
    SessionRevoked,
    WeakPassword,
)
from auth.mfa import MfaVerifier
from auth.models import (
    AccessClaims,
    EmailToken,
    ExposedIdentity,
    ExternalIdentity,
    Identity,
    RefreshSession,
    SubnetCheck,
    TokenPair,
    TokenPurpose,
)
from auth.pwned import is_pwned_password
from auth.scopes import identity_scopes
from auth.store import AuthStore
from auth.subnet import SubnetGuard
from auth.tokens import TokenCodec, hash_password
from core.config import Settings
from core.redact import redact_email
from mailer.notices import AccountDeactivatedNotice, BackupCodeUsedNotice, PasswordChangedNotice

logger = logging.getLogger("latchkey.auth")


class AuthService:
    """Compose the auth components into the public flows.

    Usage:
        service = AuthService(store, mail_queue, settings)
        service.register("a@x.com", "P@ssw0rd!")
        pair = service.login("a@x.com", "P@ssw0rd!", ip="1.2.3.4", user_agent="curl")
    """

    def __init__(
        self,
        store: AuthStore,
        notifier: Notifier,
        settings: Settings,
        codec: TokenCodec | None = None,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.settings = settings
        self.codec = codec or TokenCodec(settings)
        self.credentials = CredentialVerifier(store)
        self.mfa = MfaVerifier(store, valid_window=settings.totp_valid_window)
        self.broker = EmailTokenBroker(store, notifier, settings)
        self.guard = SubnetGuard(
            store,
            self.broker,
            settings.secret_key,
            ipv4_prefix=settings.subnet_ipv4_prefix,
            ipv6_prefix=settings.subnet_ipv6_prefix,
        )

    # ------------------------------------------------------------------
    # Registration and email verification
    # ------------------------------------------------------------------

    def register(
        self,
        email: str,
        password: str,
        name: str | None = None,
        ignore_pwned: bool = False,
    ) -> ExposedIdentity:
        """Create a password identity and mail a verify-email link.

        No tokens are returned. An unverified identity may still log in;
        verification is advisory.
        """
        self._check_new_password(password, ignore_pwned)
        email_safe = safe_email(email)
        if self.store.get_identity_by_email(email_safe) is not None:
            raise Conflict()
        try:
            identity_id = self.store.create_identity(
                Identity(
                    email=email.strip(),
                    email_safe=email_safe,
                    name=name,
                    hashed_password=hash_password(password),
                )
            )
        except IntegrityError as exc:
            # Concurrent registration for the same normalized address won.
            raise Conflict() from exc
        identity = self.store.get_identity(identity_id)
        logger.info("Registered identity %d for %s", identity_id, redact_email(email))
        self.broker.issue(identity, TokenPurpose.VERIFY_EMAIL)
        return ExposedIdentity.from_identity(identity)

    def send_email_verification(self, email: str, resend: bool = False) -> None:
        """Mail a fresh verify-email link. Silent for unknown or verified addresses."""
        identity = self.store.get_identity_by_email(safe_email(email))
        if identity is None or not identity.is_active or identity.email_verified:
            return
        self.broker.issue(identity, TokenPurpose.VERIFY_EMAIL, resend=resend)

    def verify_email(self, token: str, ip: str | None, user_agent: str | None) -> TokenPair:
        def side_effect(conn: Connection, identity: Identity, _token: EmailToken) -> TokenPair:
            self.store.update_identity(identity.id, conn=conn, email_verified=True)
            return self._open_session(identity.id, ip, user_agent, conn)

        identity, _token, pair = self.broker.redeem(token, TokenPurpose.VERIFY_EMAIL, side_effect)
        logger.info("Email verified for identity %d", identity.id)
        return pair

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(
        self,
        email: str,
        password: str,
        ip: str | None,
        user_agent: str | None,
        code: str | None = None,
    ) -> TokenPair:
        identity = self.credentials.verify(email, password)
        if not identity.mfa_enabled:
            return self._complete_login(identity, ip, user_agent)
        if not code:
            raise MfaRequired(self.codec.issue_mfa_token(identity.id, ip))
        return self._complete_login(identity, ip, user_agent, code=code)

    def login_with_totp(self, mfa_token: str, code: str, ip: str | None, user_agent: str | None) -> TokenPair:
        """Finish a login that stopped at MfaRequired."""
        identity = self.store.get_identity(self.codec.verify_mfa_token(mfa_token, ip))
        if identity is None or not identity.is_active or not identity.mfa_enabled:
            raise InvalidOrExpiredToken()
        return self._complete_login(identity, ip, user_agent, code=code)

    def request_login_link(self, email: str) -> None:
        """Mail a passwordless login link. Silent for unknown addresses."""
        identity = self.store.get_identity_by_email(safe_email(email))
        if identity is None or not identity.is_active:
            logger.info("Login link requested for unknown address %s", redact_email(email))
            return
        self.broker.issue(identity, TokenPurpose.PASSWORDLESS_LOGIN)

    def login_with_email_token(self, token: str, ip: str | None, user_agent: str | None) -> TokenPair:
        """Redeem a passwordless link; the subnet guard still applies.

        On a recognized subnet the session is created in the redemption
        transaction. Otherwise the same transaction spends the link and parks
        the attempt behind an approval token, like any other unrecognized
        login; a failure in either write leaves the link redeemable.
        """

        def side_effect(conn: Connection, identity: Identity, _token: EmailToken) -> TokenPair | str:
            if self.guard.check(identity, ip, conn=conn) is SubnetCheck.UNRECOGNIZED:
                return self.guard.hold(identity, ip, user_agent, conn)
            return self._open_session(identity.id, ip, user_agent, conn)

        identity, _token, outcome = self.broker.redeem(token, TokenPurpose.PASSWORDLESS_LOGIN, side_effect)
        logger.info("Passwordless login for identity %d", identity.id)
        return self._release(identity, outcome, ip, user_agent)

    def login_with_external_identity(
        self,
        external: ExternalIdentity,
        ip: str | None,
        user_agent: str | None,
    ) -> TokenPair:
        identity = self.credentials.find_or_create_external(external)
        return self._complete_login(identity, ip, user_agent)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str, ip: str | None, user_agent: str | None) -> TokenPair:
        """Rotate a refresh value: the presented one is revoked, a new one issued.

        The replacement keeps the subnet fingerprint of the approved session it
        replaces, so refreshing from elsewhere never makes a new network
        recognized.
        """
        session = self.store.find_session(refresh_token) if refresh_token else None
        if session is None or not session.approved:
            raise InvalidOrExpiredToken()
        if session.is_revoked:
            logger.warning("Replay of rotated refresh value for identity %d", session.identity_id)
            raise SessionRevoked()
        identity = self.store.get_identity(session.identity_id)
        if identity is None or not identity.is_active:
            raise InvalidOrExpiredToken()
        rotated = self.store.rotate_session(session, session.subnet, ip=ip, user_agent=user_agent)
        if rotated is None:
            raise SessionRevoked()
        new_session, raw = rotated
        return self._token_pair(new_session, raw)

    def logout(self, refresh_token: str) -> None:
        """Revoke the presented session. Unknown or already revoked values are fine."""
        if refresh_token and self.store.revoke_session(refresh_token):
            logger.info("Session revoked on logout")

    def approve_subnet(self, token: str) -> TokenPair:
        """Redeem an approve-subnet link and hand out tokens for the bound session."""

        def side_effect(conn: Connection, identity: Identity, email_token: EmailToken) -> TokenPair:
            session = self.store.get_session(int(email_token.context.get("session_id", 0)), conn=conn)
            if session is None or session.identity_id != identity.id:
                raise InvalidOrExpiredToken()
            raw = self.store.mark_approved(session.id, conn=conn)
            if raw is None:
                raise SessionRevoked()
            session.approved = True
            return self._token_pair(session, raw)

        identity, _token, pair = self.broker.redeem(token, TokenPurpose.APPROVE_SUBNET, side_effect)
        logger.info("Subnet approved for identity %d (session %d)", identity.id, pair.session_id)
        return pair

    def list_sessions(self, identity_id: int) -> list[RefreshSession]:
        return self.store.list_active_sessions(identity_id)

    def revoke_identity_session(self, identity_id: int, session_id: int) -> None:
        if not self.store.revoke_session_by_id(identity_id, session_id):
            raise IdentityNotFound("Session not found.")
        logger.info("Session %d revoked for identity %d", session_id, identity_id)

    def authenticate(self, access_token: str) -> AccessClaims:
        return self.codec.verify_access_token(access_token)

    def get_identity(self, identity_id: int) -> ExposedIdentity:
        identity = self.store.get_identity(identity_id)
        if identity is None or not identity.is_active:
            raise IdentityNotFound()
        return ExposedIdentity.from_identity(identity)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str) -> None:
        """Mail a reset link. Silent for unknown addresses (no enumeration)."""
        identity = self.store.get_identity_by_email(safe_email(email))
        if identity is None or not identity.is_active:
            logger.info("Password reset requested for unknown address %s", redact_email(email))
            return
        self.broker.issue(identity, TokenPurpose.RESET_PASSWORD)

    def reset_password(
        self,
        token: str,
        new_password: str,
        ip: str | None,
        user_agent: str | None,
        ignore_pwned: bool = False,
    ) -> TokenPair:
        """Set a new password, revoke every existing session, open a new one.

        The password is validated before redemption so a rejected password
        does not spend the link.
        """
        self._check_new_password(new_password, ignore_pwned)
        hashed = hash_password(new_password)

        def side_effect(conn: Connection, identity: Identity, _token: EmailToken) -> TokenPair:
            self.store.update_identity(identity.id, conn=conn, hashed_password=hashed, email_verified=True)
            revoked = self.store.revoke_all_sessions(identity.id, conn=conn)
            logger.info("Password reset for identity %d revoked %d session(s)", identity.id, revoked)
            return self._open_session(identity.id, ip, user_agent, conn)

        identity, _token, pair = self.broker.redeem(token, TokenPurpose.RESET_PASSWORD, side_effect)
        self.notifier.notify(identity.email, PasswordChangedNotice(name=display_name(identity)))
        return pair

    # ------------------------------------------------------------------
    # Account merge
    # ------------------------------------------------------------------

    def request_merge(self, destination_id: int, source_email: str) -> None:
        """Ask the owner of source_email to confirm merging into destination_id.

        The link goes to the source address: only its owner can give its
        sessions away. Silent when the address is unknown.
        """
        destination = self.store.get_identity(destination_id)
        if destination is None or not destination.is_active:
            raise IdentityNotFound()
        source = self.store.get_identity_by_email(safe_email(source_email))
        if source is None or not source.is_active:
            logger.info("Merge requested for unknown address %s", redact_email(source_email))
            return
        if source.id == destination.id:
            raise Conflict("An account cannot be merged into itself.")
        self.broker.issue(
            source,
            TokenPurpose.MERGE_ACCOUNTS,
            context={"source_id": source.id, "destination_id": destination.id},
            destination_email=destination.email,
        )

    def merge_accounts(self, token: str) -> ExposedIdentity:
        """Move the source's sessions and MFA enrollment to the destination.

        The source identity is kept, deactivated, with merged_into set. Its MFA
        secret and backup codes move only when the destination has none;
        otherwise the destination keeps its own enrollment.
        """

        def side_effect(conn: Connection, source: Identity, email_token: EmailToken) -> Identity:
            destination = self.store.get_identity(int(email_token.context.get("destination_id", 0)), conn=conn)
            if destination is None or not destination.is_active or destination.id == source.id:
                raise IdentityNotFound()
            moved = self.store.reassign_sessions(source.id, destination.id, conn=conn)
            if source.mfa_enabled and not destination.mfa_enabled:
                self.store.update_identity(destination.id, conn=conn, mfa_secret=source.mfa_secret)
                self.store.reassign_backup_codes(source.id, destination.id, conn=conn)
                destination.mfa_secret = source.mfa_secret
            self.store.update_identity(
                source.id,
                conn=conn,
                is_active=False,
                merged_into=destination.id,
                mfa_secret=None,
            )
            logger.info("Merged identity %d into %d (%d session(s) moved)", source.id, destination.id, moved)
            return destination

        source, _token, destination = self.broker.redeem(token, TokenPurpose.MERGE_ACCOUNTS, side_effect)
        self.notifier.notify(
            source.email,
            AccountDeactivatedNotice(name=display_name(source), merged_into_email=destination.email),
        )
        return ExposedIdentity.from_identity(destination)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_new_password(self, password: str, ignore_pwned: bool) -> None:
        if len(password) < self.settings.min_password_length:
            raise WeakPassword(f"Password must be at least {self.settings.min_password_length} characters.")
        if self.settings.pwned_check_enabled and not ignore_pwned and is_pwned_password(password):
            raise PwnedPassword()

    def _complete_login(
        self,
        identity: Identity,
        ip: str | None,
        user_agent: str | None,
        code: str | None = None,
    ) -> TokenPair:
        """Second factor, subnet check and session (or hold) in one transaction.

        A backup code is only burned if the session or pending-session writes
        commit with it. Notices go out afterwards.
        """

        def unit(conn: Connection) -> tuple[str | None, TokenPair | str]:
            method = self.mfa.verify(identity, code, conn=conn) if code is not None else None
            if self.guard.check(identity, ip, conn=conn) is SubnetCheck.UNRECOGNIZED:
                return method, self.guard.hold(identity, ip, user_agent, conn)
            return method, self._open_session(identity.id, ip, user_agent, conn)

        method, outcome = self.store.atomic(unit)
        if method == "backup":
            remaining = self.store.count_backup_codes(identity.id)
            self.notifier.notify(identity.email, BackupCodeUsedNotice(name=display_name(identity), remaining=remaining))
        pair = self._release(identity, outcome, ip, user_agent)
        logger.info("Login for identity %d (session %d)", identity.id, pair.session_id)
        return pair

    def _release(
        self,
        identity: Identity,
        outcome: TokenPair | str,
        ip: str | None,
        user_agent: str | None,
    ) -> TokenPair:
        """Hand out the committed session, or mail the approval link for a held one."""
        if isinstance(outcome, TokenPair):
            return outcome
        self.guard.announce(identity, outcome, ip, user_agent)
        raise ApprovalPending()

    def _open_session(
        self,
        identity_id: int,
        ip: str | None,
        user_agent: str | None,
        conn: Connection | None = None,
    ) -> TokenPair:
        session, raw = self.store.create_session(
            identity_id,
            self.guard.fingerprint(ip),
            ip=ip,
            user_agent=user_agent,
            approved=True,
            conn=conn,
        )
        return self._token_pair(session, raw)

    def _token_pair(self, session: RefreshSession, raw: str) -> TokenPair:
        ttl = min(self.settings.access_token_ttl_seconds, self.settings.access_token_max_ttl_seconds)
        access = self.codec.issue_access_token(
            session.identity_id,
            identity_scopes(session.identity_id),
            ttl=ttl,
            session_id=session.id,
        )
        return TokenPair(
            access_token=access,
            refresh_token=raw,
            expires_in=ttl,
            identity_id=session.identity_id,
            session_id=session.id,
        )
