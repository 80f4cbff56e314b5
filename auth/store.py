"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. AuthStore is the repository for identities,
refresh sessions, email tokens and backup codes; the _row_to_* functions are
the mappers. Components and routes never touch SQL directly, which keeps the
storage technology swappable behind this one seam.

Transactions:
  Every public method takes an optional `conn`. Without one, the method runs
  in its own transaction. With one, it joins the caller's transaction, which
  is how multi-step units (email-token redemption + its side effect, session
  rotation, password reset + revoke-all) stay atomic:

      store.atomic(lambda conn: (store.consume_email_token(tid, conn=conn),
                                 store.update_identity(uid, conn=conn, ...)))

  Consume-once and revoke-once use conditional UPDATEs (WHERE consumed_at IS
  NULL / WHERE revoked_at IS NULL) and check rowcount, so two concurrent
  requests for the same token or session cannot both win.

  Transient failures (OperationalError: locked database, dropped connection)
  are retried with exponential backoff via tenacity, re-running the whole
  unit of work. After storage_retries attempts the error propagates and the
  API's catch-all handler reports a generic 500.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Refresh values, email tokens and backup codes are stored only as
  HMAC-SHA256(secret_key, raw). The raw value is returned once at creation.

Layer rule: no imports from api/ or mailer/.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import TypeVar

from sqlalchemy import Boolean, Column, Integer, MetaData, String, Table, Text, create_engine, event, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from auth.models import EmailToken, Identity, RefreshSession, TokenPurpose
from auth.tokens import generate_opaque_token, hash_opaque_token

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_identities = Table(
    "identities",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False),
    Column("email_safe", String(255), nullable=False, unique=True),
    Column("name", String(255)),
    Column("hashed_password", Text),  # NULL for federation-only identities
    Column("mfa_secret", String(64)),  # base32 TOTP secret, NULL until enrolled
    Column("email_verified", Boolean, nullable=False, default=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("merged_into", Integer),
    Column("created_at", String(32), nullable=False),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("identity_id", Integer, nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("subnet", String(64), nullable=False),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("approved", Boolean, nullable=False, default=True),
    Column("created_at", String(32), nullable=False),
    Column("revoked_at", String(32)),
)

_email_tokens = Table(
    "email_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("identity_id", Integer, nullable=False),
    Column("purpose", String(32), nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("context", Text, nullable=False, default="{}"),  # JSON
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("consumed_at", String(32)),
)

_backup_codes = Table(
    "backup_codes",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("identity_id", Integer, nullable=False, index=True),
    Column("code_hash", String(64), nullable=False),
    Column("used_at", String(32)),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_backup_code(code: str) -> str:
    return code.replace("-", "").replace(" ", "").upper()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for Identity, RefreshSession, EmailToken and backup codes.

    Usage:
        store = AuthStore("sqlite:///:memory:", secret_key=settings.secret_key)
        uid = store.create_identity(Identity(email="a@x.com", email_safe="a@x.com"))
        session, raw = store.create_session(uid, subnet="...", ip="1.2.3.4")
        store.close()
    """

    def __init__(self, db_url: str, secret_key: str, storage_retries: int = 3) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        self._secret = secret_key
        self._retries = max(1, storage_retries)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Open one transaction; commits on normal exit, rolls back on exception."""
        with self.engine.begin() as conn:
            yield conn

    def atomic(self, unit: Callable[[Connection], T]) -> T:
        """Run unit(conn) inside a transaction, retrying transient storage failures.

        The whole unit is re-run on retry, so it must not have side effects
        outside the connection (no mail sends, no logging of success).
        """
        for attempt in Retrying(
            stop=stop_after_attempt(self._retries),
            wait=wait_exponential(multiplier=0.05, max=1),
            retry=retry_if_exception_type(OperationalError),
            reraise=True,
        ):
            with attempt:
                with self.transaction() as conn:
                    return unit(conn)
        raise AssertionError("unreachable")  # pragma: no cover

    def _run(self, conn: Connection | None, unit: Callable[[Connection], T]) -> T:
        if conn is not None:
            return unit(conn)
        return self.atomic(unit)

    def hash_token(self, raw: str) -> str:
        return hash_opaque_token(raw, self._secret)

    # ------------------------------------------------------------------
    # Identities
    # ------------------------------------------------------------------

    def create_identity(self, identity: Identity, conn: Connection | None = None) -> int:
        """Insert a new identity and return its assigned ID.

        Raises sqlalchemy.exc.IntegrityError if email_safe already exists.
        Callers translate that into Conflict -- a concurrent registration for
        the same address loses here, not at the pre-check.
        """

        def unit(c: Connection) -> int:
            result = c.execute(
                _identities.insert().values(
                    email=identity.email,
                    email_safe=identity.email_safe,
                    name=identity.name,
                    hashed_password=identity.hashed_password,
                    mfa_secret=identity.mfa_secret,
                    email_verified=identity.email_verified,
                    is_active=identity.is_active,
                    created_at=_now_iso(),
                )
            )
            return result.inserted_primary_key[0]

        return self._run(conn, unit)

    def get_identity(self, identity_id: int, conn: Connection | None = None) -> Identity | None:
        def unit(c: Connection) -> Identity | None:
            row = c.execute(_identities.select().where(_identities.c.id == identity_id)).fetchone()
            return _row_to_identity(row) if row is not None else None

        return self._run(conn, unit)

    def get_identity_by_email(self, email_safe: str, conn: Connection | None = None) -> Identity | None:
        """Look up by normalized email. Callers normalize with safe_email() first."""

        def unit(c: Connection) -> Identity | None:
            row = c.execute(_identities.select().where(_identities.c.email_safe == email_safe)).fetchone()
            return _row_to_identity(row) if row is not None else None

        return self._run(conn, unit)

    def update_identity(self, identity_id: int, conn: Connection | None = None, **fields) -> bool:
        """Update mutable fields on an identity.

        Accepted fields: name, hashed_password, mfa_secret, email_verified,
        is_active, merged_into. Returns True if a row was updated.
        """
        unknown = set(fields) - {"name", "hashed_password", "mfa_secret", "email_verified", "is_active", "merged_into"}
        if unknown:
            raise ValueError(f"Unknown identity fields: {unknown!r}")

        def unit(c: Connection) -> bool:
            result = c.execute(_identities.update().where(_identities.c.id == identity_id).values(**fields))
            return result.rowcount > 0

        return self._run(conn, unit)

    # ------------------------------------------------------------------
    # Refresh sessions
    # ------------------------------------------------------------------

    def create_session(
        self,
        identity_id: int,
        subnet: str,
        ip: str | None = None,
        user_agent: str | None = None,
        approved: bool = True,
        conn: Connection | None = None,
    ) -> tuple[RefreshSession, str]:
        """Persist a new session and return (session, raw refresh value).

        The raw value is not recoverable after this call.
        """
        raw = generate_opaque_token()
        session = RefreshSession(
            identity_id=identity_id,
            token_hash=self.hash_token(raw),
            subnet=subnet,
            ip_address=ip,
            user_agent=user_agent,
            approved=approved,
            created_at=_now_iso(),
        )

        def unit(c: Connection) -> int:
            result = c.execute(
                _sessions.insert().values(
                    identity_id=session.identity_id,
                    token_hash=session.token_hash,
                    subnet=session.subnet,
                    ip_address=session.ip_address,
                    user_agent=session.user_agent,
                    approved=session.approved,
                    created_at=session.created_at,
                )
            )
            return result.inserted_primary_key[0]

        session.id = self._run(conn, unit)
        return session, raw

    def find_session(self, raw: str, conn: Connection | None = None) -> RefreshSession | None:
        """Look up a session by its raw refresh value. O(1) via UNIQUE index."""
        token_hash = self.hash_token(raw)

        def unit(c: Connection) -> RefreshSession | None:
            row = c.execute(_sessions.select().where(_sessions.c.token_hash == token_hash)).fetchone()
            return _row_to_session(row) if row is not None else None

        return self._run(conn, unit)

    def get_session(self, session_id: int, conn: Connection | None = None) -> RefreshSession | None:
        def unit(c: Connection) -> RefreshSession | None:
            row = c.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
            return _row_to_session(row) if row is not None else None

        return self._run(conn, unit)

    def revoke_session(self, raw: str, conn: Connection | None = None) -> bool:
        """Revoke by raw value. Returns True only if this call did the revoking."""
        token_hash = self.hash_token(raw)

        def unit(c: Connection) -> bool:
            result = c.execute(
                _sessions.update()
                .where((_sessions.c.token_hash == token_hash) & (_sessions.c.revoked_at.is_(None)))
                .values(revoked_at=_now_iso())
            )
            return result.rowcount > 0

        return self._run(conn, unit)

    def revoke_session_by_id(self, identity_id: int, session_id: int, conn: Connection | None = None) -> bool:
        """Revoke one session. identity_id is checked to prevent IDOR."""

        def unit(c: Connection) -> bool:
            result = c.execute(
                _sessions.update()
                .where(
                    (_sessions.c.id == session_id)
                    & (_sessions.c.identity_id == identity_id)
                    & (_sessions.c.revoked_at.is_(None))
                )
                .values(revoked_at=_now_iso())
            )
            return result.rowcount > 0

        return self._run(conn, unit)

    def mark_approved(self, session_id: int, conn: Connection | None = None) -> str | None:
        """Flip a pending, unrevoked session to approved and re-key it.

        The refresh value generated for a pending session is never disclosed
        (the client only gets tokens after approval), so approval assigns a
        fresh value and returns it. Returns None if the session was not
        pending or has been revoked.
        """
        raw = generate_opaque_token()

        def unit(c: Connection) -> bool:
            result = c.execute(
                _sessions.update()
                .where(
                    (_sessions.c.id == session_id)
                    & (_sessions.c.approved.is_(False))
                    & (_sessions.c.revoked_at.is_(None))
                )
                .values(approved=True, token_hash=self.hash_token(raw))
            )
            return result.rowcount > 0

        return raw if self._run(conn, unit) else None

    def list_active_sessions(self, identity_id: int, conn: Connection | None = None) -> list[RefreshSession]:
        """Approved, unrevoked sessions for an identity, newest first."""

        def unit(c: Connection) -> list[RefreshSession]:
            rows = c.execute(
                _sessions.select()
                .where(
                    (_sessions.c.identity_id == identity_id)
                    & (_sessions.c.approved.is_(True))
                    & (_sessions.c.revoked_at.is_(None))
                )
                .order_by(_sessions.c.id.desc())
            ).fetchall()
            return [_row_to_session(r) for r in rows]

        return self._run(conn, unit)

    def rotate_session(
        self,
        old: RefreshSession,
        subnet: str,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> tuple[RefreshSession, str] | None:
        """Revoke `old` and create its replacement in one transaction.

        Returns None when the conditional revoke matched no row: another
        request rotated or revoked the same value first. The replacement is
        never created in that case.
        """

        def unit(c: Connection) -> tuple[RefreshSession, str] | None:
            result = c.execute(
                _sessions.update()
                .where(
                    (_sessions.c.id == old.id)
                    & (_sessions.c.approved.is_(True))
                    & (_sessions.c.revoked_at.is_(None))
                )
                .values(revoked_at=_now_iso())
            )
            if result.rowcount == 0:
                return None
            return self.create_session(old.identity_id, subnet, ip, user_agent, approved=True, conn=c)

        return self.atomic(unit)

    def revoke_all_sessions(self, identity_id: int, conn: Connection | None = None) -> int:
        """Revoke every unrevoked session (pending included). Returns the count."""

        def unit(c: Connection) -> int:
            result = c.execute(
                _sessions.update()
                .where((_sessions.c.identity_id == identity_id) & (_sessions.c.revoked_at.is_(None)))
                .values(revoked_at=_now_iso())
            )
            return result.rowcount

        return self._run(conn, unit)

    def reassign_sessions(self, source_id: int, destination_id: int, conn: Connection | None = None) -> int:
        def unit(c: Connection) -> int:
            result = c.execute(
                _sessions.update().where(_sessions.c.identity_id == source_id).values(identity_id=destination_id)
            )
            return result.rowcount

        return self._run(conn, unit)

    # ------------------------------------------------------------------
    # Email tokens
    # ------------------------------------------------------------------

    def create_email_token(self, token: EmailToken, conn: Connection | None = None) -> int:
        def unit(c: Connection) -> int:
            result = c.execute(
                _email_tokens.insert().values(
                    identity_id=token.identity_id,
                    purpose=token.purpose.value,
                    token_hash=token.token_hash,
                    context=json.dumps(token.context),
                    created_at=_now_iso(),
                    expires_at=token.expires_at,
                )
            )
            return result.inserted_primary_key[0]

        return self._run(conn, unit)

    def find_email_token(self, raw: str, conn: Connection | None = None) -> EmailToken | None:
        token_hash = self.hash_token(raw)

        def unit(c: Connection) -> EmailToken | None:
            row = c.execute(_email_tokens.select().where(_email_tokens.c.token_hash == token_hash)).fetchone()
            return _row_to_email_token(row) if row is not None else None

        return self._run(conn, unit)

    def consume_email_token(self, token_id: int, conn: Connection | None = None) -> bool:
        """Mark consumed. Returns False if it was already consumed (lost the race)."""

        def unit(c: Connection) -> bool:
            result = c.execute(
                _email_tokens.update()
                .where((_email_tokens.c.id == token_id) & (_email_tokens.c.consumed_at.is_(None)))
                .values(consumed_at=_now_iso())
            )
            return result.rowcount > 0

        return self._run(conn, unit)

    # ------------------------------------------------------------------
    # Backup codes
    # ------------------------------------------------------------------

    def replace_backup_codes(self, identity_id: int, codes: list[str], conn: Connection | None = None) -> None:
        """Discard existing backup codes and store hashes of the new set."""

        def unit(c: Connection) -> None:
            c.execute(_backup_codes.delete().where(_backup_codes.c.identity_id == identity_id))
            for code in codes:
                c.execute(
                    _backup_codes.insert().values(
                        identity_id=identity_id,
                        code_hash=self.hash_token(normalize_backup_code(code)),
                    )
                )

        self._run(conn, unit)

    def consume_backup_code(self, identity_id: int, code: str, conn: Connection | None = None) -> bool:
        """Atomically mark a matching unused code as used. True on success."""
        code_hash = self.hash_token(normalize_backup_code(code))

        def unit(c: Connection) -> bool:
            result = c.execute(
                _backup_codes.update()
                .where(
                    (_backup_codes.c.identity_id == identity_id)
                    & (_backup_codes.c.code_hash == code_hash)
                    & (_backup_codes.c.used_at.is_(None))
                )
                .values(used_at=_now_iso())
            )
            return result.rowcount > 0

        return self._run(conn, unit)

    def count_backup_codes(self, identity_id: int) -> int:
        """Unused backup codes remaining for an identity."""

        def unit(c: Connection) -> int:
            rows = c.execute(
                _backup_codes.select().where(
                    (_backup_codes.c.identity_id == identity_id) & (_backup_codes.c.used_at.is_(None))
                )
            ).fetchall()
            return len(rows)

        return self._run(None, unit)

    def reassign_backup_codes(self, source_id: int, destination_id: int, conn: Connection | None = None) -> int:
        def unit(c: Connection) -> int:
            result = c.execute(
                _backup_codes.update()
                .where(_backup_codes.c.identity_id == source_id)
                .values(identity_id=destination_id)
            )
            return result.rowcount

        return self._run(conn, unit)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
        except SQLAlchemyError:
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_identity(row) -> Identity:
    return Identity(
        id=row.id,
        email=row.email,
        email_safe=row.email_safe,
        name=row.name,
        hashed_password=row.hashed_password,
        mfa_secret=row.mfa_secret,
        email_verified=bool(row.email_verified),
        is_active=bool(row.is_active),
        merged_into=row.merged_into,
        created_at=row.created_at,
    )


def _row_to_session(row) -> RefreshSession:
    return RefreshSession(
        id=row.id,
        identity_id=row.identity_id,
        token_hash=row.token_hash,
        subnet=row.subnet,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        approved=bool(row.approved),
        created_at=row.created_at,
        revoked_at=row.revoked_at,
    )


def _row_to_email_token(row) -> EmailToken:
    return EmailToken(
        id=row.id,
        identity_id=row.identity_id,
        purpose=TokenPurpose(row.purpose),
        token_hash=row.token_hash,
        context=json.loads(row.context or "{}"),
        created_at=row.created_at,
        expires_at=row.expires_at,
        consumed_at=row.consumed_at,
    )
