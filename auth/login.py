"""
auth/login.py -- Login state machine.

Gates run in a fixed order and the first failure raises its taxonomy error:

  1. Lookup         unknown email -> InvalidCredentials with the same body a
                    registered email gets on its first wrong password (bcrypt
                    still runs against DUMMY_HASH so a miss costs the same)
  2. ActiveCheck    inactive -> AccountDisabled
  3. LockoutCheck   one conditional write reserves the attempt before bcrypt:
                    it counts the attempt as a failure unless
                    >= MAX_FAILED_LOGINS failures are on record and the last
                    one is less than LOCKOUT_WINDOW old, in which case nothing
                    is written and AccountLocked(retry_after_seconds) is raised.
                    An elapsed window restarts the count.
  4. PasswordVerify mismatch -> the reservation stands, InvalidCredentials
                    with the remaining attempts; match -> counter reset
  5. MFAGate        MFA not active -> MFASetupIncomplete with a setup token;
                    active and no code -> LoginResult(status="mfa_required");
                    bad code -> InvalidMFACode
  6. ExpiryCheck    flags only, never blocks: the token is still issued but
                    auth/dependencies.py refuses it everywhere except the
                    password-change endpoints until the password is changed
  7. TokenIssue     session token, advisory warning if the password expires
                    within 7 days, last_login_at stamped

Only gates 3 and 4 touch the lockout counters. The lockout window slides:
it is anchored to the most recent failure, not to the first one.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from auth import mfa
from auth.errors import (
    AccountDisabled,
    AccountLocked,
    AccountNotFound,
    InvalidCredentials,
    InvalidMFACode,
    MFASetupIncomplete,
)
from auth.models import Account, MFAState
from auth.passwords import DUMMY_HASH, expiry_warning, verify_password
from auth.store import AccountStore
from auth.tokens import create_access_token, create_setup_token

logger = logging.getLogger("taskguard.auth.login")

MAX_FAILED_LOGINS = 5
LOCKOUT_WINDOW = timedelta(minutes=15)


SUCCESS = "success"
MFA_REQUIRED = "mfa_required"


@dataclass
class LoginResult:
    """Outcome of a login that passed every blocking gate.

    status is SUCCESS (token set) or MFA_REQUIRED (token None, resubmit with
    a code). password_change_reason is "expired", "forced" or None.
    """

    status: str
    account: Account
    token: str | None = None
    must_change_password: bool = False
    password_expired: bool = False
    password_change_reason: str | None = None
    warning: str | None = None

    @property
    def requires_mfa(self) -> bool:
        return self.status == MFA_REQUIRED


def login(
    store: AccountStore,
    email: str,
    password: str,
    mfa_code: str | None = None,
    now: datetime | None = None,
) -> LoginResult:
    now = now or datetime.now(timezone.utc)

    # 1. Lookup
    try:
        account = _lookup(store, email)
    except AccountNotFound:
        verify_password(password, DUMMY_HASH)
        # Same body as a registered email's first wrong password.
        raise InvalidCredentials(remaining_attempts=MAX_FAILED_LOGINS - 1) from None

    # 2. ActiveCheck
    if not account.is_active:
        raise AccountDisabled()

    # 3. LockoutCheck: the attempt is reserved before any bcrypt work
    failures = store.reserve_login_attempt(account.id, now, MAX_FAILED_LOGINS, LOCKOUT_WINDOW)
    if failures is None:
        raise _locked(store, account.id, now)

    # 4. PasswordVerify
    if not verify_password(password, account.password_hash):
        remaining = max(0, MAX_FAILED_LOGINS - failures)
        if remaining == 0:
            logger.warning("Account %s locked after %d failed logins", account.id, failures)
        else:
            logger.info("Failed login for account %s (%d attempts remaining)", account.id, remaining)
        raise InvalidCredentials(remaining_attempts=remaining)
    store.reset_failed_logins(account.id)
    account.failed_login_attempts = 0
    account.last_failed_login_at = None

    # 5. MFAGate
    if account.mfa_state is not MFAState.ACTIVE:
        raise MFASetupIncomplete(setup_token=create_setup_token(account.id, issued_at=now))
    if not mfa_code:
        return LoginResult(status=MFA_REQUIRED, account=account)
    if not mfa.verify_login(store, account.id, mfa_code, now):
        logger.info("Invalid MFA code for account %s", account.id)
        raise InvalidMFACode()

    # 6. ExpiryCheck, 7. TokenIssue
    return issue_session(store, account, now)


def issue_session(store: AccountStore, account: Account, now: datetime | None = None) -> LoginResult:
    """Terminal success: token, password-change flags and the expiry advisory.

    Shared with MFA setup completion, which is the first sign-in of a new
    account.
    """
    now = now or datetime.now(timezone.utc)
    expired = account.is_password_expired(now)
    reason = None
    if expired:
        reason = "expired"
    elif account.must_change_password:
        reason = "forced"

    token = create_access_token(account.id, account.role, issued_at=now)
    store.update_account(account.id, last_login_at=now)
    account.last_login_at = now
    logger.info("Login succeeded for account %s", account.id)
    return LoginResult(
        status=SUCCESS,
        account=account,
        token=token,
        must_change_password=reason is not None,
        password_expired=expired,
        password_change_reason=reason,
        warning=None if reason else expiry_warning(account, now),
    )


def _lookup(store: AccountStore, email: str) -> Account:
    account = store.get_by_email(email)
    if account is None:
        raise AccountNotFound()
    return account


def _locked(store: AccountStore, account_id: str, now: datetime) -> AccountLocked:
    """Build the lockout error with the wait remaining until the window closes."""
    account = store.get_by_id(account_id)
    last_failure = account.last_failed_login_at if account is not None else None
    if last_failure is None:
        return AccountLocked(retry_after_seconds=1)
    retry_after = math.ceil((last_failure + LOCKOUT_WINDOW - now).total_seconds())
    return AccountLocked(retry_after_seconds=max(1, retry_after))
