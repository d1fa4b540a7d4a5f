"""
auth/passwords.py -- Password policy engine and password-lifecycle flows.

Hashing:
  bcrypt via the bcrypt package directly (no passlib wrapper). The cost
  factor comes from Settings.bcrypt_rounds (default 12, >= 100 ms per verify).

  Every input is first reduced to base64(SHA-256(plaintext)) -- 44 ASCII
  bytes. bcrypt only looks at the first 72 bytes of its input and bcrypt
  >= 4.1 rejects longer inputs outright; the policy allows 128 characters
  (up to 512 UTF-8 bytes), so without the reduction two long passwords
  sharing a 72-byte prefix would verify against each other.

Policy (fixed, reviewed here rather than configured):
  length 12..128; >= 1 upper, lower, digit and special from @$!%*?&; no
  other characters. Expiry 90 days. A new password must differ from the
  current one and from the 5 most recent history entries. History keeps
  the 10 most recent hashes.

History semantics:
  An entry is written for every password the account has held, at the time
  it is set (registration included). The newest entry is therefore the
  current password. The "must differ from current" rule is still checked
  explicitly, against the account's own hash, before the history scan.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import bcrypt

from auth.errors import InvalidCredentials, PasswordMismatch, PasswordPolicyViolation
from auth.models import Account
from auth.store import AccountStore
from core.config import get_settings

logger = logging.getLogger("taskguard.auth.passwords")

_settings = get_settings()

PASSWORD_MIN_LENGTH = 12
PASSWORD_MAX_LENGTH = 128
SPECIAL_CHARACTERS = "@$!%*?&"
PASSWORD_EXPIRY_DAYS = 90
PASSWORD_HISTORY_CHECK = 5
PASSWORD_HISTORY_RETAIN = 10
EXPIRY_WARNING_DAYS = 7

_ALLOWED = re.compile(r"^[A-Za-z\d@$!%*?&]+$")


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------


def _prepare(plain: str) -> bytes:
    return base64.b64encode(hashlib.sha256(plain.encode("utf-8")).digest())


def hash_password(plain: str, rounds: int | None = None) -> str:
    """Return a salted bcrypt hash. Each call draws a fresh salt."""
    salt = bcrypt.gensalt(rounds=rounds or _settings.bcrypt_rounds)
    return bcrypt.hashpw(_prepare(plain), salt).decode("utf-8")


def verify_password(plain: str, hashed: str | None) -> bool:
    """Return True if the plaintext matches the hash. Malformed hashes never match.

    bcrypt.checkpw compares in constant time.
    """
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(_prepare(plain), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash. Login verifies against this when the
# email is unknown, so a miss costs the same bcrypt work as a wrong password.
DUMMY_HASH: str = hash_password("taskguard_timing_dummy")


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


def validate_complexity(candidate: str) -> None:
    """Raise PasswordPolicyViolation naming the first rule the candidate breaks."""
    if len(candidate) < PASSWORD_MIN_LENGTH:
        raise PasswordPolicyViolation(
            "too_short", f"Password must be at least {PASSWORD_MIN_LENGTH} characters long."
        )
    if len(candidate) > PASSWORD_MAX_LENGTH:
        raise PasswordPolicyViolation(
            "too_long", f"Password must be at most {PASSWORD_MAX_LENGTH} characters long."
        )
    if not re.search(r"[a-z]", candidate):
        raise PasswordPolicyViolation("missing_lowercase", "Password must contain a lowercase letter.")
    if not re.search(r"[A-Z]", candidate):
        raise PasswordPolicyViolation("missing_uppercase", "Password must contain an uppercase letter.")
    if not re.search(r"\d", candidate):
        raise PasswordPolicyViolation("missing_digit", "Password must contain a digit.")
    if not any(ch in SPECIAL_CHARACTERS for ch in candidate):
        raise PasswordPolicyViolation(
            "missing_special", f"Password must contain one of these special characters: {SPECIAL_CHARACTERS}"
        )
    if not _ALLOWED.match(candidate):
        raise PasswordPolicyViolation(
            "invalid_character",
            f"Password may only contain letters, digits and the special characters {SPECIAL_CHARACTERS}",
        )


def compute_expiry(now: datetime) -> datetime:
    return now + timedelta(days=PASSWORD_EXPIRY_DAYS)


def is_reused(account_id: str, candidate: str, store: AccountStore) -> bool:
    """True if the candidate matches any of the newest PASSWORD_HISTORY_CHECK entries."""
    for entry in store.recent_password_history(account_id, PASSWORD_HISTORY_CHECK):
        if verify_password(candidate, entry.password_hash):
            return True
    return False


def record_change(account_id: str, new_hash: str, store: AccountStore, now: datetime | None = None) -> None:
    """Append a history entry and prune the log to PASSWORD_HISTORY_RETAIN."""
    store.append_password_history(
        account_id, new_hash, now or datetime.now(timezone.utc), PASSWORD_HISTORY_RETAIN
    )


def expiry_warning(account: Account, now: datetime) -> str | None:
    """Advisory message when a still-valid password expires within EXPIRY_WARNING_DAYS."""
    if account.password_expires_at is None or account.is_password_expired(now):
        return None
    remaining = account.password_expires_at - now
    if remaining > timedelta(days=EXPIRY_WARNING_DAYS):
        return None
    days = max(1, math.ceil(remaining.total_seconds() / 86400))
    return f"Your password expires in {days} day(s). Please change it soon."


# ---------------------------------------------------------------------------
# Flows
# ---------------------------------------------------------------------------


def change_password(
    store: AccountStore,
    account: Account,
    current_password: str,
    new_password: str,
    confirm_password: str,
    now: datetime | None = None,
) -> Account:
    """Rotate an account's password. All-or-nothing.

    Check order: confirmation, complexity, current password, differs from
    current, history reuse. Nothing is written unless every check passes,
    and the write itself is one transaction (auth/store.py change_password).
    Returns the refreshed account.
    """
    now = now or datetime.now(timezone.utc)
    if new_password != confirm_password:
        raise PasswordMismatch()
    validate_complexity(new_password)
    if not verify_password(current_password, account.password_hash):
        raise InvalidCredentials("Current password is incorrect.")
    if verify_password(new_password, account.password_hash):
        raise PasswordPolicyViolation("same_as_current", "New password must be different from the current one.")
    if is_reused(account.id, new_password, store):
        raise PasswordPolicyViolation(
            "reused", f"You cannot reuse any of your last {PASSWORD_HISTORY_CHECK} passwords."
        )

    new_hash = hash_password(new_password)
    changed = store.change_password(
        account.id,
        expected_hash=account.password_hash,
        new_hash=new_hash,
        changed_at=now,
        expires_at=compute_expiry(now),
        retain=PASSWORD_HISTORY_RETAIN,
    )
    if not changed:
        # Another request rotated the password after we verified it.
        raise InvalidCredentials("Current password is incorrect.")
    logger.info("Password changed for account %s", account.id)
    return store.get_by_id(account.id)


def force_password_change(store: AccountStore, account_id: str, now: datetime | None = None) -> None:
    """Admin action: require a password change at the next sign-in."""
    store.require_password_change(account_id, now or datetime.now(timezone.utc))
    logger.info("Password change forced for account %s", account_id)


@dataclass
class PasswordStatus:
    password_changed_at: datetime | None
    password_expires_at: datetime | None
    days_until_expiration: int | None
    is_expired: bool
    must_change_password: bool
    expiration_policy_days: int = PASSWORD_EXPIRY_DAYS


def password_status(account: Account, now: datetime | None = None) -> PasswordStatus:
    now = now or datetime.now(timezone.utc)
    days: int | None = None
    if account.password_expires_at is not None:
        days = math.ceil((account.password_expires_at - now).total_seconds() / 86400)
    return PasswordStatus(
        password_changed_at=account.password_changed_at,
        password_expires_at=account.password_expires_at,
        days_until_expiration=days,
        is_expired=account.is_password_expired(now),
        must_change_password=account.must_change(now),
    )
