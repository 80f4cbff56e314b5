"""
tests/test_store.py -- Unit tests for AuthStore transactions and rotation.

Covers:
  - atomic(): OperationalError is retried, the last one re-raised after
    storage_retries attempts; other errors are not retried
  - A failed attempt leaves nothing behind for the retry to trip over
  - rotate_session(): a stale read of an already rotated session gets None
    and creates nothing; of N concurrent rotations exactly one wins
"""

from __future__ import annotations

import threading

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from auth.models import Identity
from auth.store import AuthStore

SECRET = "store-secret-key-0123456789abcdef"


def _disk_error() -> OperationalError:
    return OperationalError("UPDATE sessions", {}, Exception("disk I/O error"))


def _identity(store: AuthStore, email: str = "st@example.com") -> int:
    return store.create_identity(Identity(email=email, email_safe=email))


class TestAtomic:
    def test_retries_transient_failure(self, store: AuthStore) -> None:
        calls: list[int] = []

        def unit(conn):
            calls.append(1)
            if len(calls) < 3:
                raise _disk_error()
            return "ok"

        assert store.atomic(unit) == "ok"
        assert len(calls) == 3

    def test_reraises_after_storage_retries(self) -> None:
        store = AuthStore("sqlite:///:memory:", secret_key=SECRET, storage_retries=2)
        calls: list[int] = []

        def unit(conn):
            calls.append(1)
            raise _disk_error()

        try:
            with pytest.raises(OperationalError):
                store.atomic(unit)
        finally:
            store.close()
        assert len(calls) == 2

    def test_integrity_error_not_retried(self, store: AuthStore) -> None:
        calls: list[int] = []

        def unit(conn):
            calls.append(1)
            raise IntegrityError("INSERT INTO identities", {}, Exception("UNIQUE constraint failed"))

        with pytest.raises(IntegrityError):
            store.atomic(unit)
        assert len(calls) == 1

    def test_failed_attempt_rolled_back_before_retry(self, store: AuthStore) -> None:
        attempts: list[int] = []

        def unit(conn):
            uid = store.create_identity(Identity(email="r@example.com", email_safe="r@example.com"), conn=conn)
            attempts.append(uid)
            if len(attempts) == 1:
                raise _disk_error()
            return uid

        uid = store.atomic(unit)
        assert len(attempts) == 2
        assert store.get_identity_by_email("r@example.com").id == uid


class TestRotate:
    def test_stale_session_not_rotated(self, store: AuthStore) -> None:
        uid = _identity(store)
        _session, raw = store.create_session(uid, "fp", ip="1.2.3.4")
        stale = store.find_session(raw)

        assert store.rotate_session(stale, "fp") is not None
        assert store.rotate_session(stale, "fp") is None
        assert len(store.list_active_sessions(uid)) == 1

    def test_pending_session_not_rotated(self, store: AuthStore) -> None:
        uid = _identity(store)
        session, _raw = store.create_session(uid, "fp", approved=False)
        assert store.rotate_session(session, "fp") is None
        assert store.list_active_sessions(uid) == []

    def test_concurrent_rotations_single_winner(self, tmp_path) -> None:
        store = AuthStore(f"sqlite:///{tmp_path / 'rotate.db'}", secret_key=SECRET)
        try:
            uid = _identity(store)
            _session, raw = store.create_session(uid, "fp", ip="1.2.3.4")
            stale = store.find_session(raw)

            workers = 4
            barrier = threading.Barrier(workers)
            results: list = []
            errors: list[BaseException] = []
            lock = threading.Lock()

            def rotate() -> None:
                barrier.wait()
                try:
                    outcome = store.rotate_session(stale, "fp")
                except Exception as exc:
                    with lock:
                        errors.append(exc)
                    return
                with lock:
                    results.append(outcome)

            threads = [threading.Thread(target=rotate) for _ in range(workers)]
            for t in threads:
                t.start()
            for t in threads:
                t.join(timeout=30)

            assert errors == []
            assert len([r for r in results if r is not None]) == 1
            assert len(store.list_active_sessions(uid)) == 1
        finally:
            store.close()
