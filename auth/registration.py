"""
auth/registration.py -- Account registration and first-time MFA enrolment.

Registration never issues a session. A new account starts with PENDING MFA
and the caller receives a short-lived setup token plus the one-time MFA
material (secret, provisioning URI, backup codes). The first session is
issued by complete_mfa_setup() once a TOTP code proves the device works.

An abandoned setup does not strand the account: a later login with the
correct password answers MFASetupIncomplete with a fresh setup token, and
restart_mfa_setup() regenerates the pending material.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError

from auth import mfa
from auth.errors import AccountDisabled, AlreadyPremium, EmailAlreadyRegistered, Unauthorized
from auth.login import LoginResult, issue_session
from auth.models import Account, Role
from auth.passwords import compute_expiry, hash_password, validate_complexity
from auth.store import AccountStore
from auth.tokens import create_access_token, create_setup_token

logger = logging.getLogger("taskguard.auth.registration")


@dataclass
class Registration:
    account: Account
    setup_token: str
    mfa: mfa.MFASetup


def register(
    store: AccountStore,
    name: str,
    email: str,
    password: str,
    role: Role = Role.FREE,
    now: datetime | None = None,
) -> Registration:
    """Create an account and start its mandatory MFA enrolment.

    Raises PasswordPolicyViolation or EmailAlreadyRegistered; nothing is
    written in either case.
    """
    now = now or datetime.now(timezone.utc)
    validate_complexity(password)
    if store.get_by_email(email) is not None:
        raise EmailAlreadyRegistered()

    account = Account(
        name=name.strip(),
        email=email,
        password_hash=hash_password(password),
        role=role,
        password_changed_at=now,
        password_expires_at=compute_expiry(now),
        created_at=now,
    )
    try:
        account_id = store.create_account(account)
    except IntegrityError:
        # Lost a race with a concurrent registration for the same email.
        raise EmailAlreadyRegistered() from None

    account = store.get_by_id(account_id)
    setup = mfa.begin_setup(store, account)
    logger.info("Account %s registered with role %s", account_id, account.role.value)
    return Registration(
        account=store.get_by_id(account_id),
        setup_token=create_setup_token(account_id, issued_at=now),
        mfa=setup,
    )


def _setup_account(store: AccountStore, account_id: str) -> Account:
    account = store.get_by_id(account_id)
    if account is None:
        raise Unauthorized()
    if not account.is_active:
        raise AccountDisabled()
    return account


def restart_mfa_setup(store: AccountStore, account_id: str) -> mfa.MFASetup:
    """Regenerate pending MFA material for an account holding a setup token."""
    return mfa.begin_setup(store, _setup_account(store, account_id))


def complete_mfa_setup(
    store: AccountStore, account_id: str, code: str, now: datetime | None = None
) -> LoginResult:
    """Activate MFA with a verified TOTP code and issue the first session."""
    now = now or datetime.now(timezone.utc)
    mfa.activate(store, _setup_account(store, account_id), code, now)
    return issue_session(store, store.get_by_id(account_id), now)


def upgrade_to_premium(store: AccountStore, account: Account) -> str:
    """FREE -> PREMIUM (demo upgrade, no billing). Returns a token carrying the new role."""
    if account.role is not Role.FREE:
        raise AlreadyPremium()
    store.update_account(account.id, role=Role.PREMIUM)
    logger.info("Account %s upgraded to PREMIUM", account.id)
    return create_access_token(account.id, Role.PREMIUM)
