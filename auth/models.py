"""
auth/models.py -- Domain dataclasses for account-security entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
domain shape; auth/store.py persists them and the flow modules (login,
passwords, mfa, registration) do the work.

The only behaviour here is derived state that every caller must compute the
same way: the MFA state machine position and password-expiry status.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    """Closed set of account roles. FREE is assigned at registration."""

    ADMIN = "ADMIN"
    PREMIUM = "PREMIUM"
    FREE = "FREE"


class MFAState(str, Enum):
    """Position of an account in the MFA enrolment state machine.

    UNCONFIGURED -> PENDING   on setup initiation (secret + codes generated)
    PENDING      -> ACTIVE    after a verified TOTP code
    ACTIVE       -> UNCONFIGURED on explicit disable (password re-entry)
    PENDING      -> PENDING   when setup is re-initiated (material overwritten)
    """

    UNCONFIGURED = "UNCONFIGURED"
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"


@dataclass
class Account:
    """A registered identity and its security state.

    email is stored lower-cased; the store enforces uniqueness on that form,
    which gives case-insensitive uniqueness without a functional index.

    mfa_secret holds the Fernet-encrypted TOTP secret (opaque at rest).
    mfa_backup_codes holds bcrypt hashes only -- plaintext codes are returned
    once at generation time and never persisted.
    """

    name: str
    email: str
    password_hash: str
    id: str | None = None
    role: Role = Role.FREE
    is_active: bool = True

    # Lockout
    failed_login_attempts: int = 0
    last_failed_login_at: datetime | None = None

    # MFA
    mfa_enabled: bool = False
    mfa_secret: str | None = None
    mfa_backup_codes: list[str] = field(default_factory=list)

    # Password lifecycle
    password_changed_at: datetime | None = None
    password_expires_at: datetime | None = None
    must_change_password: bool = False
    password_change_required_at: datetime | None = None

    created_at: datetime | None = None
    last_login_at: datetime | None = None

    @property
    def mfa_state(self) -> MFAState:
        if self.mfa_enabled:
            return MFAState.ACTIVE
        if self.mfa_secret:
            return MFAState.PENDING
        return MFAState.UNCONFIGURED

    def is_password_expired(self, now: datetime) -> bool:
        """True when the password expiry timestamp lies strictly in the past."""
        return self.password_expires_at is not None and now > self.password_expires_at

    def must_change(self, now: datetime) -> bool:
        """True when either an admin forced a change or the password expired."""
        return self.must_change_password or self.is_password_expired(now)


@dataclass
class PasswordHistoryEntry:
    """One previously-set password hash. Ordered by (changed_at, id)."""

    account_id: str
    password_hash: str
    changed_at: datetime
    id: int | None = None
