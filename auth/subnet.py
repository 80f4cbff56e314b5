"""
auth/subnet.py -- Subnet anomaly guard.

Per login attempt:

    Unchecked -> Recognized                       (tokens issued directly)
    Unchecked -> Unrecognized -> PendingApproval  (ApprovalPending raised after commit)
    PendingApproval -> Approved                   (approve-subnet token redeemed)
    PendingApproval -> Expired                    (token lapses; session stays inert)

Fingerprint: the request IP is truncated to a coarse network prefix (IPv4 /24,
IPv6 /48 by default) and HMAC'd with SECRET_KEY. The stored value says which
network a session came from without storing the network itself.

An attempt is Recognized when its fingerprint equals that of any *active*
(approved, unrevoked) session of the identity. Pending or revoked sessions do
not count, so an attacker cannot bootstrap recognition from their own
unapproved attempts.

Layer rule: no imports from api/ or mailer/.
"""

from __future__ import annotations

import ipaddress
import logging

from sqlalchemy.engine import Connection

from auth.email_tokens import EmailTokenBroker
from auth.models import Identity, SubnetCheck, TokenPurpose
from auth.store import AuthStore
from auth.tokens import hash_opaque_token

logger = logging.getLogger("latchkey.auth.subnet")


class SubnetGuard:
    def __init__(
        self,
        store: AuthStore,
        broker: EmailTokenBroker,
        secret_key: str,
        ipv4_prefix: int = 24,
        ipv6_prefix: int = 48,
    ) -> None:
        self.store = store
        self.broker = broker
        self._secret = secret_key
        self.ipv4_prefix = ipv4_prefix
        self.ipv6_prefix = ipv6_prefix

    def network(self, ip: str | None) -> str:
        """Coarse network prefix for an address, e.g. "1.2.3.0/24".

        Unparseable or missing addresses collapse to "unknown" -- every such
        attempt shares one bucket, which is Recognized only if an earlier
        session was approved from it.
        """
        if not ip:
            return "unknown"
        try:
            addr = ipaddress.ip_address(ip.strip())
        except ValueError:
            return "unknown"
        if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
            addr = addr.ipv4_mapped
        prefix = self.ipv4_prefix if addr.version == 4 else self.ipv6_prefix
        return str(ipaddress.ip_network(f"{addr}/{prefix}", strict=False))

    def fingerprint(self, ip: str | None) -> str:
        return hash_opaque_token(f"subnet:{self.network(ip)}", self._secret)

    def check(self, identity: Identity, ip: str | None, conn: Connection | None = None) -> SubnetCheck:
        fingerprint = self.fingerprint(ip)
        known = {s.subnet for s in self.store.list_active_sessions(identity.id, conn=conn)}
        if fingerprint in known:
            return SubnetCheck.RECOGNIZED
        logger.info("Unrecognized subnet for identity %d", identity.id)
        return SubnetCheck.UNRECOGNIZED

    def hold(self, identity: Identity, ip: str | None, user_agent: str | None, conn: Connection) -> str:
        """Park an Unrecognized attempt: pending session plus its approval token.

        Both rows are written on the caller's connection, so they commit with
        whatever else that transaction does (a consumed login link or backup
        code) or not at all. Returns the raw approval token; the caller hands it
        to announce() after commit and raises ApprovalPending. No access or
        refresh value reaches the caller on this path.
        """
        session, _unused = self.store.create_session(
            identity.id, self.fingerprint(ip), ip=ip, user_agent=user_agent, approved=False, conn=conn
        )
        return self.broker.persist(identity, TokenPurpose.APPROVE_SUBNET, conn, context={"session_id": session.id})

    def announce(self, identity: Identity, raw: str, ip: str | None, user_agent: str | None) -> None:
        """Queue the approval mail for a committed hold."""
        self.broker.send(identity, TokenPurpose.APPROVE_SUBNET, raw, ip_address=ip, user_agent=user_agent)
