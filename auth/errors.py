"""
auth/errors.py -- Error taxonomy for the account-security flows.

Every gate failure in the login, registration, MFA and password flows is
raised as one of these types. The HTTP layer maps them with a single
exception handler (api/main.py) onto the standard error envelope:

    {"error": {"code": ..., "message": ..., <extra fields>}}

Rules:
  - Messages are safe to show to end users. They never say whether an email
    is registered and never echo passwords, codes or hashes.
  - Extra fields are limited to what the client needs to act on the error
    (retry_after, remaining_attempts, setup_token, upgrade_url, reason).
  - Raw storage or crypto exceptions are NOT wrapped here. They propagate to
    the catch-all handler, which logs them and returns internal_error.

A pending second factor is not an error -- see LoginResult in auth/login.py.

Layer rule: stdlib only.
"""

from __future__ import annotations

from typing import Any


class AuthError(Exception):
    """Base class. Subclasses set code, status_code and a default message."""

    code: str = "auth_error"
    status_code: int = 400
    message: str = "Authentication error."

    def __init__(self, message: str | None = None, **extra: Any) -> None:
        self.message = message or self.message
        self.extra = {k: v for k, v in extra.items() if v is not None}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.extra}


class AccountNotFound(AuthError):
    """Lookup miss. Login converts this into InvalidCredentials; admin routes surface it as 404."""

    code = "not_found"
    status_code = 404
    message = "Account not found."


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    status_code = 401
    message = "Invalid email or password."

    def __init__(self, message: str | None = None, remaining_attempts: int | None = None) -> None:
        super().__init__(message, remaining_attempts=remaining_attempts)


class AccountDisabled(AuthError):
    code = "account_disabled"
    status_code = 403
    message = "This account has been disabled. Contact an administrator."


class AccountLocked(AuthError):
    """Lockout window in force. retry_after_seconds is the remaining wait only."""

    code = "account_locked"
    status_code = 429
    message = "Too many failed login attempts. Try again later."

    def __init__(self, retry_after_seconds: int) -> None:
        self.retry_after_seconds = retry_after_seconds
        minutes = max(1, -(-retry_after_seconds // 60))
        super().__init__(
            f"Too many failed login attempts. Try again in {minutes} minute(s).",
            retry_after=retry_after_seconds,
        )


class InvalidMFACode(AuthError):
    code = "invalid_mfa_code"
    status_code = 401
    message = "The verification code is invalid."


class MFASetupIncomplete(AuthError):
    """MFA is mandatory. Carries a setup token once the password was verified."""

    code = "mfa_setup_required"
    status_code = 403
    message = "Multi-factor authentication must be set up before you can sign in."

    def __init__(self, message: str | None = None, setup_token: str | None = None) -> None:
        super().__init__(message, setup_token=setup_token)


class MFAAlreadyEnabled(AuthError):
    code = "mfa_already_enabled"
    status_code = 400
    message = "Multi-factor authentication is already active on this account."


class MFANotEnabled(AuthError):
    code = "mfa_not_enabled"
    status_code = 400
    message = "Multi-factor authentication is not active on this account."


class PasswordPolicyViolation(AuthError):
    """Complexity, length, same-as-current or reuse. reason names the rule."""

    code = "password_policy_violation"
    status_code = 400
    message = "The password does not meet the password policy."

    def __init__(self, reason: str, message: str | None = None) -> None:
        self.reason = reason
        super().__init__(message, reason=reason)


class PasswordMismatch(AuthError):
    code = "password_mismatch"
    status_code = 400
    message = "The new password and its confirmation do not match."


class EmailAlreadyRegistered(AuthError):
    code = "conflict"
    status_code = 409
    message = "An account with that email already exists."


class AlreadyPremium(AuthError):
    code = "already_premium"
    status_code = 400
    message = "This account already has access to premium features."


class Unauthorized(AuthError):
    code = "unauthorized"
    status_code = 401
    message = "Invalid or expired token."


class Forbidden(AuthError):
    code = "forbidden"
    status_code = 403
    message = "You do not have permission to perform this action."


class PasswordChangeRequired(Forbidden):
    code = "password_change_required"
    message = "You must change your password before continuing."

    def __init__(self, expired: bool) -> None:
        self.expired = expired
        super().__init__(
            "Your password has expired. Change it to continue."
            if expired
            else "An administrator requires you to change your password before continuing.",
            password_expired=expired,
            change_password_url="/api/v1/auth/change-password",
        )


class UpgradeRequired(Forbidden):
    """Feature gate. Points the client at the upgrade endpoint instead of a bare 403."""

    code = "upgrade_required"

    def __init__(self, features: list[str]) -> None:
        self.features = features
        super().__init__(
            f"Premium plan required for: {', '.join(features)}.",
            features=features,
            upgrade_url="/api/v1/auth/upgrade",
        )


class InternalError(AuthError):
    code = "internal_error"
    status_code = 500
    message = "An unexpected error occurred."
