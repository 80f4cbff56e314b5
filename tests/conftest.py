"""
tests/conftest.py -- Shared test fixtures for Latchkey.

This module provides:
  - settings / store / notifier / service: component fixtures on a private
    in-memory SQLite database, fresh per test
  - signed_in: registers an identity and walks it through the first-login
    approval, returning its TokenPair
  - api_client: TestClient over the real app with a patched lifespan

Design: Component tests use plain sqlite:///:memory: -- they run on one
thread, and every store call inside a transaction joins it via conn=.
The API client uses a named shared-memory URI instead, because TestClient
runs sync route handlers in a thread pool and plain :memory: DBs are
per-connection.

RecordingNotifier stands in for MailQueue: flows call notify() and tests read
the notices (and the links in them) back.

The DEBUG env var must be set before any api import so get_settings() can
auto-generate SECRET_KEY (used by SessionMiddleware at import time).
"""

from __future__ import annotations

import os
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from urllib.parse import parse_qs, urlparse
from unittest.mock import MagicMock

# CRITICAL: Set DEBUG before any api/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from auth.errors import ApprovalPending
from auth.models import TokenPair
from auth.service import AuthService
from auth.store import AuthStore
from core.config import Settings
from mailer.notices import ApproveSubnetNotice, Notice

TEST_SECRET = "test-secret-key-for-latchkey-0123456789abcdef"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class RecordingNotifier:
    """Notifier that keeps every (to, notice) pair instead of sending mail."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, Notice]] = []

    def notify(self, to: str, notice: Notice) -> None:
        self.sent.append((to, notice))

    def last(self, notice_type: type, to: str | None = None) -> Notice:
        for recipient, notice in reversed(self.sent):
            if isinstance(notice, notice_type) and (to is None or recipient == to):
                return notice
        raise AssertionError(f"no {notice_type.__name__} sent to {to or 'anyone'}")

    def token(self, notice_type: type, to: str | None = None) -> str:
        """Raw token from the action link of the latest matching notice."""
        return link_token(self.last(notice_type, to=to))

    def of_type(self, notice_type: type) -> list[Notice]:
        return [n for _, n in self.sent if isinstance(n, notice_type)]


def link_token(notice: Notice) -> str:
    """Extract the raw token from a notice's action_url."""
    return parse_qs(urlparse(notice.action_url).query)["token"][0]


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(
        debug=True,
        secret_key=TEST_SECRET,
        database_url="sqlite:///:memory:",
        frontend_url="http://app.test",
        pwned_check_enabled=False,
    )


@pytest.fixture
def store(settings: Settings) -> Generator[AuthStore, None, None]:
    s = AuthStore("sqlite:///:memory:", secret_key=settings.secret_key)
    yield s
    s.close()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def service(store: AuthStore, notifier: RecordingNotifier, settings: Settings) -> AuthService:
    return AuthService(store, notifier, settings)


@pytest.fixture
def signed_in(service: AuthService, notifier: RecordingNotifier) -> Callable[..., TokenPair]:
    """Return a helper: register, hit the first-login approval, redeem it.

    After it returns, the identity has one active session from `ip`, so later
    logins from the same /24 are recognized.
    """

    def _signed_in(email: str, password: str = "P@ssw0rd!", ip: str = "1.2.3.4") -> TokenPair:
        service.register(email, password)
        with pytest.raises(ApprovalPending):
            service.login(email, password, ip, "pytest")
        return service.approve_subnet(notifier.token(ApproveSubnetNotice, to=email))

    return _signed_in


# ---------------------------------------------------------------------------
# API fixture
# ---------------------------------------------------------------------------


def _patch_lifespan(settings: Settings, store: AuthStore, service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and service into app.state so TestClient routes see
    an isolated database, and mocks the OAuth registry to prevent real
    network calls.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = settings
        app.state.store = store
        app.state.auth_service = service
        app.state.oauth = MagicMock()
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, RecordingNotifier, AuthStore], None, None]:
    """Yield (client, notifier, store) for API integration tests.

    Rate limiting is switched off for the module: the suite logs in far more
    often than 10 times a minute from the same client address.
    """
    from api.limiter import limiter
    from api.main import app

    settings = Settings(debug=True, secret_key=TEST_SECRET, frontend_url="http://app.test")
    # Suffix by module so two modules never share an in-memory database.
    suffix = request.module.__name__.rsplit(".", 1)[-1]
    store = AuthStore(
        f"sqlite:///file:latchkey_{suffix}?mode=memory&cache=shared&uri=true",
        secret_key=settings.secret_key,
    )
    notifier = RecordingNotifier()
    service = AuthService(store, notifier, settings)

    app.router.lifespan_context = _patch_lifespan(settings, store, service)
    limiter.enabled = False

    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        yield client, notifier, store

    limiter.enabled = True
    store.close()
