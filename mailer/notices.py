"""
mailer/notices.py -- One dataclass per notification template.

Pattern: tagged union. Each notice type names its template and carries
exactly the fields that template needs, so rendering never has to guess which
of several optional payloads applies. The Notice alias is the union the
queue accepts.

Layer rule: stdlib only. auth/ builds these; mailer/ renders and sends them.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import ClassVar, Union


@dataclass(frozen=True)
class VerifyEmailNotice:
    template: ClassVar[str] = "verify_email"

    name: str
    action_url: str
    resend: bool = False


@dataclass(frozen=True)
class PasswordResetNotice:
    template: ClassVar[str] = "password_reset"

    name: str
    action_url: str


@dataclass(frozen=True)
class LoginLinkNotice:
    template: ClassVar[str] = "login_link"

    name: str
    action_url: str


@dataclass(frozen=True)
class ApproveSubnetNotice:
    template: ClassVar[str] = "approve_subnet"

    name: str
    action_url: str
    ip_address: str
    user_agent: str


@dataclass(frozen=True)
class MergeRequestNotice:
    template: ClassVar[str] = "merge_request"

    name: str
    action_url: str
    destination_email: str


@dataclass(frozen=True)
class PasswordChangedNotice:
    template: ClassVar[str] = "password_changed"

    name: str


@dataclass(frozen=True)
class BackupCodeUsedNotice:
    template: ClassVar[str] = "backup_code_used"

    name: str
    remaining: int


@dataclass(frozen=True)
class AccountDeactivatedNotice:
    template: ClassVar[str] = "account_deactivated"

    name: str
    merged_into_email: str


Notice = Union[
    VerifyEmailNotice,
    PasswordResetNotice,
    LoginLinkNotice,
    ApproveSubnetNotice,
    MergeRequestNotice,
    PasswordChangedNotice,
    BackupCodeUsedNotice,
    AccountDeactivatedNotice,
]


def notice_context(notice: Notice) -> dict:
    """Template variables for a notice: its fields, nothing else."""
    return asdict(notice)
