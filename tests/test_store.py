"""Unit tests for auth/store.py -- AccountStore repository.

Covers:
- create/get round trip, case-insensitive email uniqueness
- update_account() field whitelist
- atomic conditional writes (lockout reservation, MFA, backup codes)
- password change transaction and history ordering
- role/active counts
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from auth.models import Account, Role
from auth.store import AccountStore


def _account(email="ana@example.com", **kwargs) -> Account:
    return Account(name="Ana", email=email, password_hash="$2b$04$placeholderplaceholderplaceholderplacehold", **kwargs)


def test_create_and_get_round_trip(store: AccountStore):
    now = datetime(2026, 5, 1, 9, 30, 0, 123456, tzinfo=timezone.utc)
    account_id = store.create_account(_account(created_at=now, password_expires_at=now + timedelta(days=90)))
    fetched = store.get_by_id(account_id)
    assert fetched.email == "ana@example.com"
    assert fetched.role is Role.FREE
    assert fetched.is_active
    assert fetched.created_at == now
    assert fetched.password_changed_at == now
    assert fetched.password_expires_at == now + timedelta(days=90)
    assert fetched.mfa_backup_codes == []


def test_email_is_normalised_and_unique(store: AccountStore):
    store.create_account(_account(email="  Ana@Example.COM "))
    assert store.get_by_email("ana@example.com") is not None
    assert store.get_by_email("ANA@EXAMPLE.COM").email == "ana@example.com"
    with pytest.raises(IntegrityError):
        store.create_account(_account(email="ana@EXAMPLE.com"))


def test_create_writes_initial_history_entry(store: AccountStore):
    account_id = store.create_account(_account())
    history = store.recent_password_history(account_id, 10)
    assert len(history) == 1
    assert history[0].password_hash == store.get_by_id(account_id).password_hash


def test_update_account_rejects_protected_fields(store: AccountStore):
    account_id = store.create_account(_account())
    with pytest.raises(ValueError):
        store.update_account(account_id, password_hash="x")
    with pytest.raises(ValueError):
        store.update_account(account_id, failed_login_attempts=0)
    assert store.update_account(account_id, role=Role.PREMIUM, is_active=False)
    fetched = store.get_by_id(account_id)
    assert fetched.role is Role.PREMIUM
    assert not fetched.is_active


def test_update_unknown_account_returns_false(store: AccountStore):
    assert store.update_account("missing", name="x") is False


def test_reserve_login_attempt_counts_every_attempt(store: AccountStore):
    account_id = store.create_account(_account())
    now = datetime.now(timezone.utc)
    window = timedelta(minutes=15)
    assert [store.reserve_login_attempt(account_id, now, 5, window) for _ in range(3)] == [1, 2, 3]
    store.reset_failed_logins(account_id)
    fetched = store.get_by_id(account_id)
    assert fetched.failed_login_attempts == 0
    assert fetched.last_failed_login_at is None


def test_reserve_login_attempt_refused_while_locked(store: AccountStore):
    account_id = store.create_account(_account())
    now = datetime.now(timezone.utc)
    window = timedelta(minutes=15)
    for _ in range(5):
        store.reserve_login_attempt(account_id, now, 5, window)

    assert store.reserve_login_attempt(account_id, now + timedelta(minutes=14), 5, window) is None
    fetched = store.get_by_id(account_id)
    assert fetched.failed_login_attempts == 5
    assert fetched.last_failed_login_at == now

    # Window elapsed: the count restarts with this attempt.
    assert store.reserve_login_attempt(account_id, now + window, 5, window) == 1


def test_pending_mfa_cannot_overwrite_active(store: AccountStore):
    account_id = store.create_account(_account())
    assert store.set_pending_mfa(account_id, "enc-1", ["h1"])
    assert not store.activate_mfa(account_id, "enc-other")
    assert store.activate_mfa(account_id, "enc-1")
    assert not store.set_pending_mfa(account_id, "enc-2", ["h2"])
    assert store.get_by_id(account_id).mfa_secret == "enc-1"


def test_swap_backup_codes_compare_and_swap(store: AccountStore):
    account_id = store.create_account(_account())
    store.set_pending_mfa(account_id, "enc", ["a", "b", "c"])
    # Pending configurations cannot consume codes.
    assert not store.swap_backup_codes(account_id, ["a", "b", "c"], ["b", "c"])
    store.activate_mfa(account_id, "enc")
    assert store.swap_backup_codes(account_id, ["a", "b", "c"], ["b", "c"])
    assert not store.swap_backup_codes(account_id, ["a", "b", "c"], ["a", "c"])
    assert store.get_by_id(account_id).mfa_backup_codes == ["b", "c"]


def test_change_password_transaction(store: AccountStore):
    account_id = store.create_account(_account())
    original = store.get_by_id(account_id).password_hash
    store.require_password_change(account_id, datetime.now(timezone.utc))
    now = datetime.now(timezone.utc)

    assert not store.change_password(account_id, "wrong-hash", "new", now, now + timedelta(days=90), retain=10)
    assert store.get_by_id(account_id).must_change_password
    assert len(store.recent_password_history(account_id, 10)) == 1

    assert store.change_password(account_id, original, "new", now, now + timedelta(days=90), retain=10)
    fetched = store.get_by_id(account_id)
    assert fetched.password_hash == "new"
    assert not fetched.must_change_password
    assert fetched.password_change_required_at is None
    history = store.recent_password_history(account_id, 10)
    assert [h.password_hash for h in history] == ["new", original]


def test_history_ties_broken_by_insertion_order(store: AccountStore):
    account_id = store.create_account(_account())
    same_instant = datetime.now(timezone.utc) + timedelta(days=1)
    store.append_password_history(account_id, "first", same_instant, retain=10)
    store.append_password_history(account_id, "second", same_instant, retain=10)
    assert [h.password_hash for h in store.recent_password_history(account_id, 2)] == ["second", "first"]


def test_counts(store: AccountStore):
    store.create_account(_account(email="a@example.com", role=Role.ADMIN))
    store.create_account(_account(email="b@example.com", role=Role.PREMIUM))
    store.create_account(_account(email="c@example.com", is_active=False))
    assert store.count_by_role() == {"ADMIN": 1, "PREMIUM": 1, "FREE": 1}
    assert store.count_active() == 2
    assert store.count_active_admins() == 1
    assert [a.email for a in store.list_accounts()] == ["a@example.com", "b@example.com", "c@example.com"]
