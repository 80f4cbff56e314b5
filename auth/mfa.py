"""
auth/mfa.py -- TOTP and backup-code verification (RFC 6238).

Only verification lives here. Enrollment (secret generation, QR provisioning)
belongs to an enrollment collaborator; generate_totp_secret() and
generate_backup_codes() are the primitives it uses.

Accepted inputs:
  - A 6-digit TOTP code within totp_valid_window steps of now (default 1,
    i.e. one 30-second step early or late). pyotp compares in constant time.
  - A backup code. Consumed atomically by the store on match; a second use
    of the same code fails.

Layer rule: no imports from api/ or mailer/.
"""

from __future__ import annotations

import logging
import secrets

import pyotp
from sqlalchemy.engine import Connection

from auth.errors import InvalidMfaCode
from auth.models import Identity
from auth.store import AuthStore

logger = logging.getLogger("latchkey.auth.mfa")

BACKUP_CODE_COUNT = 10


def generate_totp_secret() -> str:
    return pyotp.random_base32()


def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> list[str]:
    """Return `count` fresh codes formatted XXXXX-XXXXX (40 bits each)."""
    codes = []
    for _ in range(count):
        raw = secrets.token_hex(5).upper()
        codes.append(f"{raw[:5]}-{raw[5:]}")
    return codes


class MfaVerifier:
    """Validate a submitted second factor for an identity with MFA enrolled."""

    def __init__(self, store: AuthStore, valid_window: int = 1) -> None:
        self.store = store
        self.valid_window = valid_window

    def verify(self, identity: Identity, code: str, conn: Connection | None = None) -> str:
        """Return "totp" or "backup" depending on what matched; raise InvalidMfaCode otherwise.

        With `conn`, a matching backup code is consumed in the caller's
        transaction and comes back if that transaction rolls back.
        """
        if not identity.mfa_secret or not code:
            raise InvalidMfaCode()
        code = code.strip()
        if code.isdigit() and len(code) == 6:
            if pyotp.TOTP(identity.mfa_secret).verify(code, valid_window=self.valid_window):
                return "totp"
            raise InvalidMfaCode()
        if self.store.consume_backup_code(identity.id, code, conn=conn):
            logger.info("Backup code used for identity %d", identity.id)
            return "backup"
        raise InvalidMfaCode()
