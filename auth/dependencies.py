"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and authorization.

Token sources, checked in priority order:
  1. Authorization: Bearer <token> header -- API clients.
  2. "access_token" cookie -- set by login for browser clients.

Every guard re-resolves the account from the store on each request. The token
only proves identity; activity, role and the must-change-password state are
read fresh, so deactivation, demotion and forced password changes take effect
on the very next request even though the token is still valid.

  get_account_allowing_password_change()  authenticated + active
  get_current_account()                   ... + no pending password change
  require_role(*roles)                    ... + role in roles
  require_feature(*fields)                ... + payload only uses allowed features
  get_setup_account_id()                  valid MFA setup token (not a session)

Errors are raised as auth/errors.py types; api/main.py maps them to responses.

Layer rule: no imports from api/ or core/.
  auth/dependencies.py may import from fastapi (for Depends/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import Depends, Request

from auth.errors import AccountDisabled, Forbidden, PasswordChangeRequired, Unauthorized
from auth.features import check_features
from auth.models import Account, Role
from auth.tokens import decode_access_token, decode_setup_token


def _bearer_or_cookie(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:]
    return request.cookies.get("access_token")


def get_account_allowing_password_change(request: Request) -> Account:
    """Require a valid session for an active account.

    Use directly only on endpoints that must stay reachable while a password
    change is pending (change-password, password-status, me, logout).
    """
    token = _bearer_or_cookie(request)
    payload = decode_access_token(token) if token else None
    if payload is None:
        raise Unauthorized()
    account = request.app.state.account_store.get_by_id(payload["sub"])
    if account is None:
        raise Unauthorized()
    if not account.is_active:
        raise AccountDisabled()
    return account


def get_current_account(account: Account = Depends(get_account_allowing_password_change)) -> Account:
    """Require authentication. Blocks tokens whose account must change its password.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(account: Account = Depends(get_current_account)): ...
    """
    now = datetime.now(timezone.utc)
    if account.must_change(now):
        raise PasswordChangeRequired(expired=account.is_password_expired(now))
    return account


def require_role(*roles: Role):
    """Dependency factory. The role comes from the freshly loaded account, not the token.

        @router.get("/admin-only")
        async def route(account: Account = Depends(require_role(Role.ADMIN))): ...
    """
    allowed = {Role(r) for r in roles}

    def _guard(account: Account = Depends(get_current_account)) -> Account:
        if account.role not in allowed:
            raise Forbidden()
        return account

    return _guard


def require_feature(*field_names: str):
    """Dependency factory gating premium request fields by role.

    Reads the JSON body (Starlette caches it, so the route still receives it)
    and rejects non-default values in gated fields with UpgradeRequired.
    """

    async def _guard(request: Request, account: Account = Depends(get_current_account)) -> Account:
        try:
            payload = await request.json()
        except ValueError:
            payload = {}
        if isinstance(payload, dict):
            check_features(account.role, payload, field_names)
        return account

    return _guard


def get_setup_account_id(request: Request) -> str:
    """Require an MFA setup token (Bearer header). Session tokens are not accepted."""
    auth_header = request.headers.get("Authorization", "")
    token = auth_header[7:] if auth_header.startswith("Bearer ") else ""
    account_id = decode_setup_token(token) if token else None
    if account_id is None:
        raise Unauthorized("Invalid or expired setup token.")
    return account_id
