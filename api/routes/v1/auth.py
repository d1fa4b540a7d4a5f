"""
api/routes/v1/auth.py -- Registration, login, MFA and password endpoints.

Routes:
  POST /api/v1/auth/register            -- create account; returns setup token + one-time MFA material
  POST /api/v1/auth/login               -- password (+ MFA code) login; sets JWT cookie
  POST /api/v1/auth/logout              -- clears cookie; 200
  GET  /api/v1/auth/me                  -- current account
  POST /api/v1/auth/upgrade             -- FREE -> PREMIUM (demo, no billing)
  POST /api/v1/auth/mfa/setup           -- (setup token) regenerate pending MFA material
  POST /api/v1/auth/mfa/verify          -- (setup token) activate MFA; first session
  GET  /api/v1/auth/mfa/status          -- MFA state and backup codes remaining
  POST /api/v1/auth/mfa/disable         -- requires password
  POST /api/v1/auth/mfa/backup-codes    -- regenerate backup codes; requires password
  POST /api/v1/auth/change-password     -- rotate password; new session token
  GET  /api/v1/auth/password-status     -- expiry information

Security:
  Login, register and MFA verification are rate-limited per IP (api.limiter)
  in front of the per-account lockout.
  Cache-Control: no-store on every response that carries a token, a secret
  or backup codes.
  Errors are raised as auth.errors types and rendered by api/main.py.

Handlers that run bcrypt are plain `def` so FastAPI runs them in its
threadpool instead of blocking the event loop.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import LOGIN_LIMIT, REGISTER_LIMIT, limiter
from api.models import (
    AccountResponse,
    BackupCodesResponse,
    ChangePasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    MFACodeRequest,
    MFASetupResponse,
    MFAStatusResponse,
    PasswordConfirmRequest,
    PasswordStatusResponse,
    RegisterRequest,
    RegisterResponse,
    TokenResponse,
)
from auth import mfa
from auth.dependencies import get_account_allowing_password_change, get_current_account, get_setup_account_id
from auth.login import login as run_login
from auth.models import Account
from auth.passwords import change_password as run_change_password
from auth.passwords import password_status as get_password_status
from auth.registration import complete_mfa_setup, register as run_register, restart_mfa_setup, upgrade_to_premium
from auth.store import AccountStore
from auth.tokens import create_access_token, set_auth_cookie
from core.config import get_settings

# Auth policy:
# - POST /auth/register, /auth/login, /auth/logout:  public
# - POST /auth/mfa/setup, /auth/mfa/verify:          setup token (get_setup_account_id)
# - GET  /auth/me, /auth/password-status,
#   POST /auth/change-password:                      session, allowed while a password change is pending
# - everything else:                                 session (get_current_account)
router = APIRouter()

_settings = get_settings()


def _no_store(content: dict, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=content)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(REGISTER_LIMIT)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=RegisterResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a FREE account with MFA pending.

    No session is issued. The response carries the TOTP secret, its
    provisioning URI and the backup codes exactly once, plus a setup token
    for POST /auth/mfa/verify.
    """
    store: AccountStore = request.app.state.account_store
    registration = run_register(store, body.name, body.email, body.password)
    return _no_store(
        RegisterResponse(
            account=AccountResponse.from_account(registration.account),
            setup_token=registration.setup_token,
            mfa=MFASetupResponse.from_setup(registration.mfa),
        ).model_dump(mode="json"),
        status_code=201,
    )


@limiter.limit(LOGIN_LIMIT)  # brute-force mitigation -- must be ABOVE @router
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email, password and (when MFA is active) a code.

    200 with requires_mfa=true means the password was accepted and the
    client must resubmit with mfa_code. Unknown email and wrong password
    produce the same error.
    """
    store: AccountStore = request.app.state.account_store
    result = run_login(store, body.email, body.password, body.mfa_code)
    resp = _no_store(
        LoginResponse.from_result(result, _settings.token_expire_seconds).model_dump(mode="json")
    )
    if result.token:
        set_auth_cookie(resp, result.token)
    return resp


@router.post("/auth/logout", response_model=MessageResponse)
async def logout() -> JSONResponse:
    """Clear the JWT cookie. Bearer clients simply discard their token."""
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie("access_token")
    return resp


# ---------------------------------------------------------------------------
# MFA enrolment (setup token)
# ---------------------------------------------------------------------------


@router.post("/auth/mfa/setup", response_model=MFASetupResponse)
def mfa_setup(request: Request, account_id: str = Depends(get_setup_account_id)) -> JSONResponse:
    """Regenerate the pending TOTP secret and backup codes.

    Any previously issued pending material stops working.
    """
    store: AccountStore = request.app.state.account_store
    setup = restart_mfa_setup(store, account_id)
    return _no_store(MFASetupResponse.from_setup(setup).model_dump(mode="json"))


@limiter.limit(LOGIN_LIMIT)
@router.post("/auth/mfa/verify", response_model=LoginResponse)
def mfa_verify(
    request: Request,
    body: MFACodeRequest,
    account_id: str = Depends(get_setup_account_id),
) -> JSONResponse:
    """Activate MFA with a code from the newly enrolled device and sign in."""
    store: AccountStore = request.app.state.account_store
    result = complete_mfa_setup(store, account_id, body.code)
    resp = _no_store(
        LoginResponse.from_result(result, _settings.token_expire_seconds).model_dump(mode="json")
    )
    set_auth_cookie(resp, result.token)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=AccountResponse)
async def me(account: Account = Depends(get_account_allowing_password_change)) -> AccountResponse:
    """Return the currently authenticated account."""
    return AccountResponse.from_account(account)


@router.post("/auth/upgrade", response_model=TokenResponse)
def upgrade(request: Request, account: Account = Depends(get_current_account)) -> JSONResponse:
    """Upgrade a FREE account to PREMIUM and return a token carrying the new role."""
    store: AccountStore = request.app.state.account_store
    token = upgrade_to_premium(store, account)
    resp = _no_store(
        TokenResponse(
            message="Account upgraded to premium.",
            access_token=token,
            account=AccountResponse.from_account(store.get_by_id(account.id)),
        ).model_dump(mode="json")
    )
    set_auth_cookie(resp, token)
    return resp


@router.get("/auth/mfa/status", response_model=MFAStatusResponse)
async def mfa_status(account: Account = Depends(get_current_account)) -> MFAStatusResponse:
    return MFAStatusResponse.from_status(mfa.mfa_status(account))


@router.post("/auth/mfa/disable", response_model=MessageResponse)
def mfa_disable(
    request: Request,
    body: PasswordConfirmRequest,
    account: Account = Depends(get_current_account),
) -> MessageResponse:
    """Turn MFA off. The account must set it up again before its next sign-in."""
    store: AccountStore = request.app.state.account_store
    mfa.disable(store, account, body.password)
    return MessageResponse(message="Multi-factor authentication disabled.")


@router.post("/auth/mfa/backup-codes", response_model=BackupCodesResponse)
def mfa_backup_codes(
    request: Request,
    body: PasswordConfirmRequest,
    account: Account = Depends(get_current_account),
) -> JSONResponse:
    """Replace all backup codes. The old set stops working immediately."""
    store: AccountStore = request.app.state.account_store
    codes = mfa.regenerate_backup_codes(store, account, body.password)
    return _no_store(BackupCodesResponse(backup_codes=codes).model_dump(mode="json"))


# ---------------------------------------------------------------------------
# Password lifecycle
# ---------------------------------------------------------------------------


@router.post("/auth/change-password", response_model=TokenResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    account: Account = Depends(get_account_allowing_password_change),
) -> JSONResponse:
    """Rotate the password. Reachable with a token whose password expired or was force-reset."""
    store: AccountStore = request.app.state.account_store
    updated = run_change_password(
        store, account, body.current_password, body.new_password, body.confirm_password
    )
    token = create_access_token(updated.id, updated.role)
    resp = _no_store(
        TokenResponse(
            message="Password changed.",
            access_token=token,
            account=AccountResponse.from_account(updated),
        ).model_dump(mode="json")
    )
    set_auth_cookie(resp, token)
    return resp


@router.get("/auth/password-status", response_model=PasswordStatusResponse)
async def password_status(
    account: Account = Depends(get_account_allowing_password_change),
) -> PasswordStatusResponse:
    return PasswordStatusResponse.from_status(get_password_status(account))
