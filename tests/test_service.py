"""
tests/test_service.py -- Flow tests for AuthService.

Covers the orchestrator end to end on an in-memory store:
  - Register: conflict on normalized duplicates, weak and breached passwords
  - First login from a new network is held for approval; approval yields
    tokens for that same session; the network is then recognized
  - Refresh rotates and rejects replay; logout is idempotent
  - MFA: mfa_required, wrong code, TOTP exchange, backup codes
  - Passwordless login, email verification
  - Password reset revokes every prior session
  - Account merge moves sessions to the destination
  - Session listing and per-session revocation
  - A failed hold or session write leaves the link and the backup code unspent
"""

from __future__ import annotations

import time
from unittest.mock import patch

import pyotp
import pytest
from sqlalchemy.exc import OperationalError

from auth.errors import (
    AlreadyConsumedToken,
    ApprovalPending,
    Conflict,
    IdentityNotFound,
    InvalidCredentials,
    InvalidMfaCode,
    InvalidOrExpiredToken,
    MfaRequired,
    PwnedPassword,
    SessionRevoked,
    WeakPassword,
)
from auth.mfa import generate_backup_codes, generate_totp_secret
from auth.models import ExternalIdentity
from auth.service import AuthService
from auth.store import AuthStore
from mailer.notices import (
    AccountDeactivatedNotice,
    ApproveSubnetNotice,
    BackupCodeUsedNotice,
    LoginLinkNotice,
    MergeRequestNotice,
    PasswordChangedNotice,
    PasswordResetNotice,
    VerifyEmailNotice,
)

PASSWORD = "P@ssw0rd!"


def _enroll(store: AuthStore, identity_id: int) -> pyotp.TOTP:
    secret = generate_totp_secret()
    store.update_identity(identity_id, mfa_secret=secret)
    return pyotp.TOTP(secret)


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegister:
    def test_returns_exposed_identity_and_mails_verify_link(self, service: AuthService, notifier) -> None:
        identity = service.register("a@x.com", PASSWORD, name="Ann")
        assert identity.email == "a@x.com"
        assert identity.email_verified is False
        assert not hasattr(identity, "hashed_password")
        assert notifier.last(VerifyEmailNotice, to="a@x.com").name == "Ann"

    def test_conflict_on_normalized_duplicate(self, service: AuthService) -> None:
        service.register("a@x.com", PASSWORD)
        with pytest.raises(Conflict):
            service.register("A+promo@X.com", PASSWORD)

    def test_weak_password(self, service: AuthService, store: AuthStore) -> None:
        with pytest.raises(WeakPassword):
            service.register("weak@x.com", "short")
        assert store.get_identity_by_email("weak@x.com") is None

    def test_pwned_password(self, service: AuthService) -> None:
        service.settings = service.settings.model_copy(update={"pwned_check_enabled": True})
        with patch("auth.service.is_pwned_password", return_value=True):
            with pytest.raises(PwnedPassword):
                service.register("pwned@x.com", PASSWORD)
            # The caller may explicitly accept the risk.
            service.register("pwned@x.com", PASSWORD, ignore_pwned=True)


# ---------------------------------------------------------------------------
# Login, subnet approval, refresh
# ---------------------------------------------------------------------------


class TestLoginAndApproval:
    def test_first_login_scenario(self, service: AuthService, notifier, store: AuthStore) -> None:
        """register -> login from a new network -> pending -> approve -> tokens -> refresh rotates."""
        service.register("a@x.com", PASSWORD)
        with pytest.raises(ApprovalPending):
            service.login("a@x.com", PASSWORD, "1.2.3.4", "Firefox")

        pair = service.approve_subnet(notifier.token(ApproveSubnetNotice, to="a@x.com"))
        assert pair.access_token
        session = store.get_session(pair.session_id)
        assert session.approved and session.ip_address == "1.2.3.4"

        rotated = service.refresh(pair.refresh_token, "1.2.3.4", "Firefox")
        assert rotated.refresh_token != pair.refresh_token
        with pytest.raises(InvalidOrExpiredToken):
            service.refresh(pair.refresh_token, "1.2.3.4", "Firefox")

    def test_pending_attempt_never_returns_tokens(self, service: AuthService, store: AuthStore, notifier) -> None:
        service.register("b@x.com", PASSWORD)
        with pytest.raises(ApprovalPending) as exc:
            service.login("b@x.com", PASSWORD, "1.2.3.4", "ua")
        assert not hasattr(exc.value, "mfa_token")
        identity_id = store.get_identity_by_email("b@x.com").id
        assert store.list_active_sessions(identity_id) == []

    def test_approval_token_is_single_use(self, service: AuthService, notifier) -> None:
        service.register("c@x.com", PASSWORD)
        with pytest.raises(ApprovalPending):
            service.login("c@x.com", PASSWORD, "1.2.3.4", "ua")
        token = notifier.token(ApproveSubnetNotice)
        service.approve_subnet(token)
        with pytest.raises(AlreadyConsumedToken):
            service.approve_subnet(token)

    def test_recognized_subnet_gets_tokens_directly(self, service: AuthService, signed_in) -> None:
        signed_in("d@x.com", ip="1.2.3.4")
        first = service.login("d@x.com", PASSWORD, "1.2.3.77", "ua")
        second = service.login("d@x.com", PASSWORD, "1.2.3.78", "ua")
        assert first.access_token and second.access_token
        assert first.refresh_token != second.refresh_token
        assert first.session_id != second.session_id

    def test_new_subnet_still_held(self, service: AuthService, signed_in) -> None:
        signed_in("e@x.com", ip="1.2.3.4")
        with pytest.raises(ApprovalPending):
            service.login("e@x.com", PASSWORD, "8.8.8.8", "ua")

    def test_wrong_password(self, service: AuthService, signed_in) -> None:
        signed_in("f@x.com")
        with pytest.raises(InvalidCredentials):
            service.login("f@x.com", "wrong-password", "1.2.3.4", "ua")

    def test_unverified_identity_may_log_in(self, service: AuthService, signed_in, store: AuthStore) -> None:
        signed_in("g@x.com")
        assert store.get_identity_by_email("g@x.com").email_verified is False
        assert service.login("g@x.com", PASSWORD, "1.2.3.4", "ua").access_token

    def test_access_token_carries_own_scope(self, service: AuthService, signed_in) -> None:
        pair = signed_in("h@x.com")
        claims = service.authenticate(pair.access_token)
        assert claims.identity_id == pair.identity_id
        assert claims.scopes == (f"user-{pair.identity_id}:*",)
        assert claims.session_id == pair.session_id

    def test_external_identity_goes_through_guard(self, service: AuthService, notifier, store: AuthStore) -> None:
        external = ExternalIdentity(email="oauth@x.com", name="O", provider="github")
        with pytest.raises(ApprovalPending):
            service.login_with_external_identity(external, "1.2.3.4", "ua")
        assert store.get_identity_by_email("oauth@x.com").email_verified
        pair = service.approve_subnet(notifier.token(ApproveSubnetNotice, to="oauth@x.com"))
        assert service.login_with_external_identity(external, "1.2.3.4", "ua").identity_id == pair.identity_id


class TestRefreshAndLogout:
    def test_replay_after_rotation_rejected(self, service: AuthService, signed_in) -> None:
        pair = signed_in("r@x.com")
        rotated = service.refresh(pair.refresh_token, "1.2.3.4", "ua")
        with pytest.raises(SessionRevoked):
            service.refresh(pair.refresh_token, "1.2.3.4", "ua")
        # The rotated value keeps working.
        assert service.refresh(rotated.refresh_token, "1.2.3.4", "ua").identity_id == pair.identity_id

    def test_refresh_keeps_approved_subnet(self, service: AuthService, signed_in, store: AuthStore) -> None:
        pair = signed_in("s@x.com", ip="1.2.3.4")
        rotated = service.refresh(pair.refresh_token, "9.9.9.9", "ua")
        assert store.get_session(rotated.session_id).subnet == store.get_session(pair.session_id).subnet
        with pytest.raises(ApprovalPending):
            service.login("s@x.com", PASSWORD, "9.9.9.9", "ua")

    def test_lost_rotation_race(self, service: AuthService, signed_in, store: AuthStore) -> None:
        """A request that read the session before another rotated it gets SessionRevoked."""
        pair = signed_in("race@x.com")
        stale = store.find_session(pair.refresh_token)
        service.refresh(pair.refresh_token, "1.2.3.4", "ua")

        assert store.rotate_session(stale, stale.subnet) is None
        with patch.object(store, "find_session", return_value=stale):
            with pytest.raises(SessionRevoked):
                service.refresh(pair.refresh_token, "1.2.3.4", "ua")
        assert len(store.list_active_sessions(pair.identity_id)) == 1

    def test_unknown_refresh_value(self, service: AuthService) -> None:
        with pytest.raises(InvalidOrExpiredToken):
            service.refresh("never-issued", "1.2.3.4", "ua")

    def test_pending_session_cannot_refresh(self, service: AuthService, store: AuthStore) -> None:
        service.register("p@x.com", PASSWORD)
        uid = store.get_identity_by_email("p@x.com").id
        _session, raw = store.create_session(uid, "fp", approved=False)
        with pytest.raises(InvalidOrExpiredToken):
            service.refresh(raw, "1.2.3.4", "ua")

    def test_logout_is_idempotent(self, service: AuthService, signed_in) -> None:
        pair = signed_in("l@x.com")
        service.logout(pair.refresh_token)
        service.logout(pair.refresh_token)
        service.logout("never-issued")
        with pytest.raises(SessionRevoked):
            service.refresh(pair.refresh_token, "1.2.3.4", "ua")


# ---------------------------------------------------------------------------
# MFA
# ---------------------------------------------------------------------------


class TestMfa:
    def test_mfa_scenario(self, service: AuthService, signed_in, store: AuthStore) -> None:
        """enroll -> wrong code rejected -> correct code within skew gets tokens."""
        pair = signed_in("m@x.com")
        totp = _enroll(store, pair.identity_id)

        with pytest.raises(MfaRequired) as required:
            service.login("m@x.com", PASSWORD, "1.2.3.4", "ua")
        assert required.value.mfa_token

        valid = {totp.at(time.time() + d) for d in (-30, 0, 30)}
        wrong = next(f"{n:06d}" for n in range(1000000) if f"{n:06d}" not in valid)
        with pytest.raises(InvalidMfaCode):
            service.login("m@x.com", PASSWORD, "1.2.3.4", "ua", code=wrong)

        assert service.login("m@x.com", PASSWORD, "1.2.3.4", "ua", code=totp.now()).identity_id == pair.identity_id

    def test_totp_exchange(self, service: AuthService, signed_in, store: AuthStore) -> None:
        pair = signed_in("t@x.com")
        totp = _enroll(store, pair.identity_id)
        with pytest.raises(MfaRequired) as required:
            service.login("t@x.com", PASSWORD, "1.2.3.4", "ua")
        result = service.login_with_totp(required.value.mfa_token, totp.now(), "1.2.3.4", "ua")
        assert result.identity_id == pair.identity_id

    def test_totp_exchange_rejects_access_token(self, service: AuthService, signed_in, store: AuthStore) -> None:
        pair = signed_in("t2@x.com")
        totp = _enroll(store, pair.identity_id)
        with pytest.raises(InvalidOrExpiredToken):
            service.login_with_totp(pair.access_token, totp.now(), "1.2.3.4", "ua")

    def test_totp_exchange_bound_to_address(self, service: AuthService, signed_in, store: AuthStore) -> None:
        pair = signed_in("t3@x.com")
        totp = _enroll(store, pair.identity_id)
        with pytest.raises(MfaRequired) as required:
            service.login("t3@x.com", PASSWORD, "1.2.3.4", "ua")
        with pytest.raises(InvalidOrExpiredToken):
            service.login_with_totp(required.value.mfa_token, totp.now(), "1.2.3.99", "ua")

    def test_mfa_then_guard(self, service: AuthService, signed_in, store: AuthStore) -> None:
        pair = signed_in("mg@x.com", ip="1.2.3.4")
        totp = _enroll(store, pair.identity_id)
        with pytest.raises(ApprovalPending):
            service.login("mg@x.com", PASSWORD, "7.7.7.7", "ua", code=totp.now())

    def test_backup_code(self, service: AuthService, signed_in, store: AuthStore, notifier) -> None:
        pair = signed_in("bk@x.com")
        _enroll(store, pair.identity_id)
        codes = generate_backup_codes()
        store.replace_backup_codes(pair.identity_id, codes)

        service.login("bk@x.com", PASSWORD, "1.2.3.4", "ua", code=codes[3])
        assert notifier.last(BackupCodeUsedNotice, to="bk@x.com").remaining == 9
        with pytest.raises(InvalidMfaCode):
            service.login("bk@x.com", PASSWORD, "1.2.3.4", "ua", code=codes[3])


# ---------------------------------------------------------------------------
# Email-token flows
# ---------------------------------------------------------------------------


class TestEmailFlows:
    def test_verify_email(self, service: AuthService, notifier, store: AuthStore) -> None:
        service.register("v@x.com", PASSWORD)
        pair = service.verify_email(notifier.token(VerifyEmailNotice, to="v@x.com"), "1.2.3.4", "ua")
        assert store.get_identity(pair.identity_id).email_verified
        # Mailbox ownership proven: the network is now recognized.
        assert service.login("v@x.com", PASSWORD, "1.2.3.4", "ua").access_token

    def test_resend_verification(self, service: AuthService, notifier) -> None:
        service.register("rv@x.com", PASSWORD)
        service.send_email_verification("rv@x.com", resend=True)
        assert notifier.last(VerifyEmailNotice, to="rv@x.com").resend is True
        assert len(notifier.of_type(VerifyEmailNotice)) == 2

    def test_resend_silent_for_unknown(self, service: AuthService, notifier) -> None:
        service.send_email_verification("ghost@x.com", resend=True)
        assert notifier.sent == []

    def test_passwordless_login(self, service: AuthService, signed_in, notifier) -> None:
        pair = signed_in("pl@x.com")
        service.request_login_link("pl@x.com")
        result = service.login_with_email_token(notifier.token(LoginLinkNotice, to="pl@x.com"), "1.2.3.4", "ua")
        assert result.identity_id == pair.identity_id

    def test_passwordless_login_from_new_network(self, service: AuthService, signed_in, notifier) -> None:
        signed_in("pn@x.com")
        service.request_login_link("pn@x.com")
        token = notifier.token(LoginLinkNotice, to="pn@x.com")
        with pytest.raises(ApprovalPending):
            service.login_with_email_token(token, "6.6.6.6", "ua")
        with pytest.raises(AlreadyConsumedToken):
            service.login_with_email_token(token, "1.2.3.4", "ua")

    def test_login_link_silent_for_unknown(self, service: AuthService, notifier) -> None:
        service.request_login_link("ghost@x.com")
        assert notifier.sent == []


class TestPasswordReset:
    def test_reset_revokes_every_session(self, service: AuthService, signed_in, notifier) -> None:
        first = signed_in("pw@x.com")
        second = service.login("pw@x.com", PASSWORD, "1.2.3.5", "ua")

        service.request_password_reset("pw@x.com")
        pair = service.reset_password(notifier.token(PasswordResetNotice, to="pw@x.com"), "N3w-P@ssword", "1.2.3.4", "ua")

        for old in (first, second):
            with pytest.raises(InvalidOrExpiredToken):
                service.refresh(old.refresh_token, "1.2.3.4", "ua")
        assert service.refresh(pair.refresh_token, "1.2.3.4", "ua").identity_id == first.identity_id
        with pytest.raises(InvalidCredentials):
            service.login("pw@x.com", PASSWORD, "1.2.3.4", "ua")
        assert service.login("pw@x.com", "N3w-P@ssword", "1.2.3.4", "ua").access_token
        notifier.last(PasswordChangedNotice, to="pw@x.com")

    def test_weak_password_does_not_spend_link(self, service: AuthService, signed_in, notifier) -> None:
        signed_in("wp@x.com")
        service.request_password_reset("wp@x.com")
        token = notifier.token(PasswordResetNotice)
        with pytest.raises(WeakPassword):
            service.reset_password(token, "short", "1.2.3.4", "ua")
        assert service.reset_password(token, "long-enough-now", "1.2.3.4", "ua").access_token

    def test_reset_link_single_use(self, service: AuthService, signed_in, notifier) -> None:
        signed_in("su@x.com")
        service.request_password_reset("su@x.com")
        token = notifier.token(PasswordResetNotice)
        service.reset_password(token, "another-password", "1.2.3.4", "ua")
        with pytest.raises(AlreadyConsumedToken):
            service.reset_password(token, "third-password", "1.2.3.4", "ua")

    def test_forgot_silent_for_unknown(self, service: AuthService, notifier) -> None:
        service.request_password_reset("ghost@x.com")
        assert notifier.sent == []


class TestMerge:
    def test_merge_moves_sessions_to_destination(self, service: AuthService, signed_in, notifier, store: AuthStore) -> None:
        destination = signed_in("dest@x.com")
        source = signed_in("src@x.com", ip="5.5.5.5")

        service.request_merge(destination.identity_id, "src@x.com")
        notice = notifier.last(MergeRequestNotice, to="src@x.com")
        assert notice.destination_email == "dest@x.com"

        merged = service.merge_accounts(notifier.token(MergeRequestNotice))
        assert merged.id == destination.identity_id

        # The source's refresh value now authenticates as the destination.
        pair = service.refresh(source.refresh_token, "5.5.5.5", "ua")
        assert pair.identity_id == destination.identity_id
        assert service.authenticate(pair.access_token).identity_id == destination.identity_id

        src = store.get_identity_by_email("src@x.com")
        assert src.is_active is False
        assert src.merged_into == destination.identity_id
        with pytest.raises(InvalidCredentials):
            service.login("src@x.com", PASSWORD, "5.5.5.5", "ua")
        assert notifier.last(AccountDeactivatedNotice, to="src@x.com").merged_into_email == "dest@x.com"

    def test_merge_moves_mfa_when_destination_has_none(
        self, service: AuthService, signed_in, notifier, store: AuthStore
    ) -> None:
        destination = signed_in("d2@x.com")
        source = signed_in("s2@x.com")
        _enroll(store, source.identity_id)
        store.replace_backup_codes(source.identity_id, generate_backup_codes(2))

        service.request_merge(destination.identity_id, "s2@x.com")
        service.merge_accounts(notifier.token(MergeRequestNotice))

        assert store.get_identity(destination.identity_id).mfa_enabled
        assert store.count_backup_codes(destination.identity_id) == 2
        assert store.get_identity(source.identity_id).mfa_secret is None

    def test_merge_into_self_refused(self, service: AuthService, signed_in) -> None:
        pair = signed_in("self@x.com")
        with pytest.raises(Conflict):
            service.request_merge(pair.identity_id, "self@x.com")

    def test_merge_request_unknown_source_is_silent(self, service: AuthService, signed_in, notifier) -> None:
        pair = signed_in("lonely@x.com")
        before = len(notifier.sent)
        service.request_merge(pair.identity_id, "ghost@x.com")
        assert len(notifier.sent) == before


class TestSessions:
    def test_list_and_revoke(self, service: AuthService, signed_in) -> None:
        pair = signed_in("ls@x.com")
        other = service.login("ls@x.com", PASSWORD, "1.2.3.4", "ua")
        sessions = service.list_sessions(pair.identity_id)
        assert [s.id for s in sessions] == [other.session_id, pair.session_id]

        service.revoke_identity_session(pair.identity_id, other.session_id)
        assert [s.id for s in service.list_sessions(pair.identity_id)] == [pair.session_id]
        with pytest.raises(SessionRevoked):
            service.refresh(other.refresh_token, "1.2.3.4", "ua")

    def test_cannot_revoke_someone_elses_session(self, service: AuthService, signed_in) -> None:
        mine = signed_in("mine@x.com")
        theirs = signed_in("theirs@x.com")
        with pytest.raises(IdentityNotFound):
            service.revoke_identity_session(mine.identity_id, theirs.session_id)
        assert service.refresh(theirs.refresh_token, "1.2.3.4", "ua").identity_id == theirs.identity_id


# ---------------------------------------------------------------------------
# Partial failures
# ---------------------------------------------------------------------------


def _disk_error() -> OperationalError:
    return OperationalError("INSERT INTO email_tokens", {}, Exception("disk I/O error"))


class TestLoginWritesTogether:
    def test_failed_hold_keeps_login_link(self, service: AuthService, signed_in, notifier) -> None:
        signed_in("hl@x.com")
        service.request_login_link("hl@x.com")
        token = notifier.token(LoginLinkNotice, to="hl@x.com")
        approvals = len(notifier.of_type(ApproveSubnetNotice))

        with patch.object(service.broker, "persist", side_effect=_disk_error()):
            with pytest.raises(OperationalError):
                service.login_with_email_token(token, "6.6.6.6", "ua")
        assert len(notifier.of_type(ApproveSubnetNotice)) == approvals

        with pytest.raises(ApprovalPending):
            service.login_with_email_token(token, "6.6.6.6", "ua")
        assert len(notifier.of_type(ApproveSubnetNotice)) == approvals + 1

    def test_failed_hold_keeps_backup_code(self, service: AuthService, signed_in, store: AuthStore, notifier) -> None:
        pair = signed_in("hb@x.com", ip="1.2.3.4")
        _enroll(store, pair.identity_id)
        codes = generate_backup_codes()
        store.replace_backup_codes(pair.identity_id, codes)

        with patch.object(service.broker, "persist", side_effect=_disk_error()):
            with pytest.raises(OperationalError):
                service.login("hb@x.com", PASSWORD, "7.7.7.7", "ua", code=codes[0])
        assert store.count_backup_codes(pair.identity_id) == len(codes)
        assert notifier.of_type(BackupCodeUsedNotice) == []

        with pytest.raises(ApprovalPending):
            service.login("hb@x.com", PASSWORD, "7.7.7.7", "ua", code=codes[0])
        assert store.count_backup_codes(pair.identity_id) == len(codes) - 1
        assert notifier.last(BackupCodeUsedNotice, to="hb@x.com").remaining == len(codes) - 1

    def test_failed_session_keeps_backup_code(self, service: AuthService, signed_in, store: AuthStore) -> None:
        pair = signed_in("hs@x.com", ip="1.2.3.4")
        _enroll(store, pair.identity_id)
        codes = generate_backup_codes()
        store.replace_backup_codes(pair.identity_id, codes)

        with patch.object(store, "create_session", side_effect=_disk_error()):
            with pytest.raises(OperationalError):
                service.login("hs@x.com", PASSWORD, "1.2.3.4", "ua", code=codes[0])
        assert store.count_backup_codes(pair.identity_id) == len(codes)
        assert service.login("hs@x.com", PASSWORD, "1.2.3.4", "ua", code=codes[0]).identity_id == pair.identity_id
