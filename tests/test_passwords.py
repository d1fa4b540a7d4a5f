"""Unit tests for auth/passwords.py -- policy engine and password lifecycle.

Covers:
- hash/verify: salted, no 72-byte truncation, malformed hashes never match
- validate_complexity(): every rule with its reason
- change_password(): check order, all-or-nothing, history reuse window
- history retention is capped at PASSWORD_HISTORY_RETAIN
- expiry warning, forced change and password_status()
"""

from datetime import datetime, timedelta, timezone

import pytest

from auth.errors import InvalidCredentials, PasswordMismatch, PasswordPolicyViolation
from auth.passwords import (
    PASSWORD_EXPIRY_DAYS,
    PASSWORD_HISTORY_RETAIN,
    change_password,
    compute_expiry,
    expiry_warning,
    force_password_change,
    hash_password,
    is_reused,
    password_status,
    record_change,
    validate_complexity,
    verify_password,
)

PASSWORD = "Str0ng!Passw0rd"  # enroll() default
OTHER_PASSWORD = "An0ther$ecret99"


def _generation(n: int) -> str:
    return f"Generation{n:02d}!Pw"


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------


class TestHashing:
    def test_hash_is_salted(self):
        first, second = hash_password(PASSWORD), hash_password(PASSWORD)
        assert first != second
        assert verify_password(PASSWORD, first)
        assert verify_password(PASSWORD, second)

    def test_wrong_password_does_not_verify(self):
        assert not verify_password(OTHER_PASSWORD, hash_password(PASSWORD))

    def test_long_passwords_sharing_a_prefix_are_distinct(self):
        """bcrypt alone only sees 72 bytes; the SHA-256 pre-hash must keep the tail significant."""
        base = "Aa1!" + "x" * 100
        assert not verify_password(base + "A", hash_password(base + "B"))

    @pytest.mark.parametrize("bad_hash", ["", None, "not-a-bcrypt-hash"])
    def test_malformed_hash_never_matches(self, bad_hash):
        assert verify_password(PASSWORD, bad_hash) is False


# ---------------------------------------------------------------------------
# Complexity
# ---------------------------------------------------------------------------


class TestComplexity:
    def test_valid_password_passes(self):
        validate_complexity(PASSWORD)

    @pytest.mark.parametrize(
        "candidate, reason",
        [
            ("Sh0rt!pw", "too_short"),
            ("Aa1!" + "a" * 125, "too_long"),
            ("NOLOWERCASE1!X", "missing_lowercase"),
            ("nouppercase1!x", "missing_uppercase"),
            ("NoDigitsHere!!", "missing_digit"),
            ("NoSpecial12345", "missing_special"),
            ("Has Space1!abc", "invalid_character"),
            ("Has#Hash1!abcd", "invalid_character"),
        ],
    )
    def test_violation_reasons(self, candidate, reason):
        with pytest.raises(PasswordPolicyViolation) as exc_info:
            validate_complexity(candidate)
        assert exc_info.value.reason == reason
        assert exc_info.value.to_dict()["reason"] == reason

    def test_boundaries(self):
        validate_complexity("Aa1!" + "b" * 8)  # exactly 12
        validate_complexity("Aa1!" + "b" * 124)  # exactly 128


# ---------------------------------------------------------------------------
# Change flow
# ---------------------------------------------------------------------------


class TestChangePassword:
    def test_successful_change_rotates_hash_and_expiry(self, store, enroll):
        now = datetime.now(timezone.utc)
        user = enroll()
        updated = change_password(store, user.account, PASSWORD, OTHER_PASSWORD, OTHER_PASSWORD, now=now)
        assert verify_password(OTHER_PASSWORD, updated.password_hash)
        assert updated.password_expires_at == compute_expiry(now)
        assert updated.password_changed_at == now

    def test_confirmation_mismatch_checked_first(self, store, enroll):
        user = enroll()
        # Wrong current password AND weak new password: mismatch still wins.
        with pytest.raises(PasswordMismatch):
            change_password(store, user.account, "wrong", "weak", "different")

    def test_complexity_checked_before_current_password(self, store, enroll):
        user = enroll()
        with pytest.raises(PasswordPolicyViolation):
            change_password(store, user.account, "wrong", "weak", "weak")

    def test_wrong_current_password(self, store, enroll):
        user = enroll()
        with pytest.raises(InvalidCredentials):
            change_password(store, user.account, "Wr0ng!Password", OTHER_PASSWORD, OTHER_PASSWORD)
        assert verify_password(PASSWORD, store.get_by_id(user.account.id).password_hash)

    def test_same_as_current_rejected(self, store, enroll):
        user = enroll()
        with pytest.raises(PasswordPolicyViolation) as exc_info:
            change_password(store, user.account, PASSWORD, PASSWORD, PASSWORD)
        assert exc_info.value.reason == "same_as_current"

    def test_reuse_window_is_five_most_recent(self, store, enroll):
        """P1 .. P6 set in order: P1 is reusable again, P2 is not."""
        base = datetime.now(timezone.utc) - timedelta(days=30)
        user = enroll(password=_generation(1), now=base)
        account = user.account
        for n in range(2, 7):
            account = change_password(
                store, account, _generation(n - 1), _generation(n), _generation(n), now=base + timedelta(days=n)
            )

        with pytest.raises(PasswordPolicyViolation) as exc_info:
            change_password(store, account, _generation(6), _generation(2), _generation(2))
        assert exc_info.value.reason == "reused"

        account = change_password(store, account, _generation(6), _generation(1), _generation(1))
        assert verify_password(_generation(1), account.password_hash)

    def test_failed_change_writes_nothing(self, store, enroll):
        user = enroll()
        before = store.recent_password_history(user.account.id, 20)
        with pytest.raises(PasswordPolicyViolation):
            change_password(store, user.account, PASSWORD, PASSWORD, PASSWORD)
        after = store.get_by_id(user.account.id)
        assert after.password_hash == user.account.password_hash
        assert after.password_expires_at == user.account.password_expires_at
        assert len(store.recent_password_history(user.account.id, 20)) == len(before)

    def test_concurrent_change_loses(self, store, enroll):
        """A change based on a stale account (hash already rotated) is refused."""
        user = enroll()
        stale = user.account
        change_password(store, stale, PASSWORD, OTHER_PASSWORD, OTHER_PASSWORD)
        with pytest.raises(InvalidCredentials):
            # Verified against the stale hash, but the store CAS no longer matches.
            change_password(store, stale, PASSWORD, "Third!Passw0rd", "Third!Passw0rd")
        assert verify_password(OTHER_PASSWORD, store.get_by_id(stale.id).password_hash)

    def test_change_clears_forced_flag(self, store, enroll):
        user = enroll()
        force_password_change(store, user.account.id)
        forced = store.get_by_id(user.account.id)
        assert forced.must_change_password
        updated = change_password(store, forced, PASSWORD, OTHER_PASSWORD, OTHER_PASSWORD)
        assert not updated.must_change_password
        assert updated.password_change_required_at is None


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


class TestHistory:
    def test_history_is_pruned_to_retention(self, store, enroll):
        base = datetime.now(timezone.utc) - timedelta(days=60)
        user = enroll(now=base)
        for n in range(PASSWORD_HISTORY_RETAIN + 3):
            record_change(user.account.id, hash_password(_generation(n)), store, now=base + timedelta(hours=n + 1))
        entries = store.recent_password_history(user.account.id, 100)
        assert len(entries) == PASSWORD_HISTORY_RETAIN
        # Newest first, oldest pruned.
        assert verify_password(_generation(PASSWORD_HISTORY_RETAIN + 2), entries[0].password_hash)
        assert all(a.changed_at >= b.changed_at for a, b in zip(entries, entries[1:]))

    def test_is_reused_matches_recent_entry(self, store, enroll):
        user = enroll()
        assert is_reused(user.account.id, PASSWORD, store)
        assert not is_reused(user.account.id, OTHER_PASSWORD, store)


# ---------------------------------------------------------------------------
# Expiry and status
# ---------------------------------------------------------------------------


class TestExpiry:
    def test_compute_expiry(self):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert compute_expiry(now) == now + timedelta(days=PASSWORD_EXPIRY_DAYS)

    def test_warning_inside_seven_days(self, store, enroll):
        now = datetime.now(timezone.utc)
        user = enroll(now=now - timedelta(days=PASSWORD_EXPIRY_DAYS - 3))
        warning = expiry_warning(user.account, now)
        assert warning is not None
        assert "3 day" in warning

    def test_no_warning_when_far_from_expiry_or_expired(self, store, enroll):
        now = datetime.now(timezone.utc)
        fresh = enroll()
        assert expiry_warning(fresh.account, now) is None
        old = enroll(now=now - timedelta(days=PASSWORD_EXPIRY_DAYS + 1))
        assert expiry_warning(old.account, now) is None

    def test_password_status(self, store, enroll):
        now = datetime.now(timezone.utc)
        user = enroll(now=now - timedelta(days=10))
        status = password_status(user.account, now)
        assert status.days_until_expiration == PASSWORD_EXPIRY_DAYS - 10
        assert status.is_expired is False
        assert status.must_change_password is False
        assert status.expiration_policy_days == PASSWORD_EXPIRY_DAYS

    def test_password_status_expired(self, store, enroll):
        now = datetime.now(timezone.utc)
        user = enroll(now=now - timedelta(days=PASSWORD_EXPIRY_DAYS + 5))
        status = password_status(user.account, now)
        assert status.is_expired is True
        assert status.must_change_password is True
        assert status.days_until_expiration <= -4
