"""
API request and response models for the TaskGuard REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Request models validate shape only (lengths, formats). Password policy is
NOT enforced here: auth/passwords.py owns it, so that every violation comes
back as password_policy_violation with a specific reason instead of a 422.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.login import LoginResult
from auth.mfa import MFASetup, MFAStatus
from auth.models import Account, MFAState, Role
from auth.passwords import PasswordStatus

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

NAME_PATTERN = r"^[^\W\d_]+(?: [^\W\d_]+)*$"  # letters (any script) and single spaces
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=2, max_length=100, pattern=NAME_PATTERN)
    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    # Upper bound on raw input only; the policy caps at 128 and reports too_long.
    password: str = Field(min_length=1, max_length=1024)

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return value.lower()


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    mfa_code is either a 6-digit TOTP code or an 8-character backup code.
    Omit it on the first attempt; the response says whether one is needed.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=1024)
    mfa_code: Optional[str] = Field(default=None, max_length=32)


class MFACodeRequest(BaseModel):
    """Request body for POST /api/v1/auth/mfa/verify."""

    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(min_length=1, max_length=32)


class PasswordConfirmRequest(BaseModel):
    """Re-authentication body for MFA disable and backup-code regeneration."""

    password: str = Field(min_length=1, max_length=1024)


class ChangePasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/change-password."""

    current_password: str = Field(min_length=1, max_length=1024)
    new_password: str = Field(min_length=1, max_length=1024)
    confirm_password: str = Field(min_length=1, max_length=1024)


class RoleUpdate(BaseModel):
    """Request body for PUT /api/v1/admin/users/{id}/role."""

    role: Role


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AccountResponse(BaseModel):
    """Public view of an account. Never carries hashes, secrets or codes."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    email: str
    role: Role
    is_active: bool
    mfa_enabled: bool
    must_change_password: bool
    created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        """Factory Method -- the mapping lives next to the output model."""
        return cls(
            id=account.id,
            name=account.name,
            email=account.email,
            role=account.role,
            is_active=account.is_active,
            mfa_enabled=account.mfa_enabled,
            must_change_password=account.must_change_password,
            created_at=account.created_at,
            last_login_at=account.last_login_at,
        )


class MFASetupResponse(BaseModel):
    """One-time MFA enrolment material. Shown once; never retrievable again."""

    model_config = ConfigDict(frozen=True)

    secret: str
    provisioning_uri: str
    backup_codes: list[str]

    @classmethod
    def from_setup(cls, setup: MFASetup) -> "MFASetupResponse":
        return cls(secret=setup.secret, provisioning_uri=setup.provisioning_uri, backup_codes=setup.backup_codes)


class RegisterResponse(BaseModel):
    """Response for POST /api/v1/auth/register (201).

    No session is issued. setup_token unlocks /auth/mfa/verify and
    /auth/mfa/setup only.
    """

    model_config = ConfigDict(frozen=True)

    account: AccountResponse
    setup_token: str
    mfa: MFASetupResponse


class LoginResponse(BaseModel):
    """Response for POST /api/v1/auth/login and POST /api/v1/auth/mfa/verify.

    requires_mfa=True: password accepted, resubmit with mfa_code. No token.
    Otherwise access_token is set; must_change_password says whether the
    token is limited to the password-change endpoints for now.
    """

    model_config = ConfigDict(frozen=True)

    requires_mfa: bool = False
    access_token: Optional[str] = None
    token_type: Optional[str] = None
    expires_in: Optional[int] = None
    account: Optional[AccountResponse] = None
    must_change_password: bool = False
    password_expired: bool = False
    password_change_reason: Optional[str] = None
    warning: Optional[str] = None

    @classmethod
    def from_result(cls, result: LoginResult, expires_in: int) -> "LoginResponse":
        if result.requires_mfa:
            return cls(requires_mfa=True)
        return cls(
            access_token=result.token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=expires_in,
            account=AccountResponse.from_account(result.account),
            must_change_password=result.must_change_password,
            password_expired=result.password_expired,
            password_change_reason=result.password_change_reason,
            warning=result.warning,
        )


class TokenResponse(BaseModel):
    """A fresh session token, e.g. after a password change or plan upgrade."""

    model_config = ConfigDict(frozen=True)

    message: str
    access_token: str
    token_type: str = "bearer"
    account: AccountResponse


class MFAStatusResponse(BaseModel):
    """Response for GET /api/v1/auth/mfa/status."""

    model_config = ConfigDict(frozen=True)

    enabled: bool
    state: MFAState
    backup_codes_remaining: int

    @classmethod
    def from_status(cls, status: MFAStatus) -> "MFAStatusResponse":
        return cls(enabled=status.enabled, state=status.state, backup_codes_remaining=status.backup_codes_remaining)


class BackupCodesResponse(BaseModel):
    """Response for POST /api/v1/auth/mfa/backup-codes. Codes are shown once."""

    model_config = ConfigDict(frozen=True)

    backup_codes: list[str]


class PasswordStatusResponse(BaseModel):
    """Response for GET /api/v1/auth/password-status."""

    model_config = ConfigDict(frozen=True)

    password_changed_at: Optional[datetime]
    password_expires_at: Optional[datetime]
    days_until_expiration: Optional[int]
    is_expired: bool
    must_change_password: bool
    expiration_policy_days: int

    @classmethod
    def from_status(cls, status: PasswordStatus) -> "PasswordStatusResponse":
        return cls(
            password_changed_at=status.password_changed_at,
            password_expires_at=status.password_expires_at,
            days_until_expiration=status.days_until_expiration,
            is_expired=status.is_expired,
            must_change_password=status.must_change_password,
            expiration_policy_days=status.expiration_policy_days,
        )


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class AccountListResponse(BaseModel):
    """Response for GET /api/v1/admin/users."""

    model_config = ConfigDict(frozen=True)

    count: int
    users: list[AccountResponse]


class AccountActionResponse(BaseModel):
    """Response for admin actions on a single account."""

    model_config = ConfigDict(frozen=True)

    message: str
    user: AccountResponse


class UserStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int
    active: int
    inactive: int
    by_role: dict[str, int]


class StatsResponse(BaseModel):
    """Response for GET /api/v1/admin/stats."""

    model_config = ConfigDict(frozen=True)

    users: UserStats


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
