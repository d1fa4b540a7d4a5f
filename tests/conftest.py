"""
tests/conftest.py -- Shared test fixtures for TaskGuard unit and integration tests.

This module provides:
  - store:        fresh in-memory AccountStore per test (unit tests)
  - enroll:       factory that registers an account and activates its MFA
  - api_app:      module-scoped TestClient + AccountStore wired into app.state
  - client:       the module's TestClient with cookies cleared for each test
  - api_store / api_enroll / bearer: helpers for integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
for the API fixtures because TestClient runs sync route handlers in a thread
pool. Plain :memory: DBs are per-connection and would present a blank schema
to each worker thread. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.

Environment must be set before any auth/core import:
  DEBUG=true        get_settings() auto-generates SECRET_KEY instead of raising
  BCRYPT_ROUNDS=4   minimum bcrypt cost; the suite hashes hundreds of times
  *_RATE_LIMIT      high enough that the whole suite never trips the limiter
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import uuid4

# CRITICAL: Set before any auth/core import -- settings are read at import time.
os.environ.setdefault("DEBUG", "true")
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["BACKUP_CODE_BCRYPT_ROUNDS"] = "4"
os.environ["LOGIN_RATE_LIMIT"] = "10000/minute"
os.environ["REGISTER_RATE_LIMIT"] = "10000/minute"

import pyotp
import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth import mfa
from auth.models import Account, Role
from auth.registration import register
from auth.store import AccountStore
from auth.tokens import create_access_token

PASSWORD = "Str0ng!Passw0rd"
OTHER_PASSWORD = "An0ther$ecret99"


@dataclass
class Enrolled:
    """A registered account with active MFA, plus the plaintext material the tests need."""

    account: Account
    password: str
    secret: str
    backup_codes: list[str]
    setup_token: str

    def totp(self, at: datetime | None = None) -> str:
        return pyotp.TOTP(self.secret).at(at or datetime.now(timezone.utc))


def _enroller(store: AccountStore):
    def _enroll(
        email: str | None = None,
        password: str = PASSWORD,
        role: Role = Role.FREE,
        now: datetime | None = None,
        activate: bool = True,
        name: str = "Ana Tester",
    ) -> Enrolled:
        email = email or f"user-{uuid4().hex[:10]}@example.com"
        registration = register(store, name, email, password, role=role, now=now)
        if activate:
            at = now or datetime.now(timezone.utc)
            mfa.activate(store, registration.account, pyotp.TOTP(registration.mfa.secret).at(at), at)
        return Enrolled(
            account=store.get_by_id(registration.account.id),
            password=password,
            secret=registration.mfa.secret,
            backup_codes=registration.mfa.backup_codes,
            setup_token=registration.setup_token,
        )

    return _enroll


# ---------------------------------------------------------------------------
# Unit-test fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[AccountStore, None, None]:
    s = AccountStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def enroll(store):
    return _enroller(store)


# ---------------------------------------------------------------------------
# Integration fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


def _patch_lifespan(account_store: AccountStore):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-created test store into app.state so routes see an
    isolated in-memory database rather than the production file.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.account_store = account_store
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_app(request) -> Generator[tuple[TestClient, AccountStore], None, None]:
    """Yield (client, store) backed by a database private to the test module."""
    db_name = request.module.__name__.replace(".", "_")
    account_store = AccountStore(f"sqlite:///file:{db_name}?mode=memory&cache=shared&uri=true")
    app.router.lifespan_context = _patch_lifespan(account_store)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, account_store

    account_store.close()


@pytest.fixture
def client(api_app) -> TestClient:
    """The module's TestClient with no session cookie left over from earlier tests."""
    c, _ = api_app
    c.cookies.clear()
    return c


@pytest.fixture
def api_store(api_app) -> AccountStore:
    return api_app[1]


@pytest.fixture
def api_enroll(api_store):
    return _enroller(api_store)


@pytest.fixture
def bearer():
    """Build an Authorization header, either from a raw token or from an account."""

    def _bearer(token_or_account) -> dict[str, str]:
        if isinstance(token_or_account, Account):
            token = create_access_token(token_or_account.id, token_or_account.role)
        else:
            token = token_or_account
        return {"Authorization": f"Bearer {token}"}

    return _bearer
