"""
api/routes/v1/admin.py -- Account administration endpoints (ADMIN role only).

Routes:
  GET  /api/v1/admin/users                                -- list accounts
  GET  /api/v1/admin/stats                                -- account counts
  PUT  /api/v1/admin/users/{id}/role                      -- change role
  PUT  /api/v1/admin/users/{id}/toggle-status             -- activate / deactivate
  POST /api/v1/admin/users/{id}/force-password-change     -- require a new password at next sign-in

Guards:
  require_role(Role.ADMIN) re-reads the caller's role from the store, so a
  demoted admin loses access on the next request.
  Admins cannot demote or deactivate themselves, and the last active admin
  can never be demoted or deactivated (no recovery path without DB access).
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import AccountActionResponse, AccountListResponse, AccountResponse, RoleUpdate, StatsResponse, UserStats
from auth.dependencies import require_role
from auth.errors import AccountNotFound
from auth.models import Account, Role
from auth.passwords import force_password_change as run_force_password_change
from auth.store import AccountStore

logger = logging.getLogger("taskguard.api.admin")

router = APIRouter()

_require_admin = require_role(Role.ADMIN)


def _get_target(store: AccountStore, user_id: str) -> Account:
    target = store.get_by_id(user_id)
    if target is None:
        raise AccountNotFound("User not found.")
    return target


@router.get("/admin/users", response_model=AccountListResponse)
async def list_users(request: Request, admin: Account = Depends(_require_admin)) -> AccountListResponse:
    store: AccountStore = request.app.state.account_store
    accounts = store.list_accounts()
    return AccountListResponse(count=len(accounts), users=[AccountResponse.from_account(a) for a in accounts])


@router.get("/admin/stats", response_model=StatsResponse)
async def stats(request: Request, admin: Account = Depends(_require_admin)) -> StatsResponse:
    store: AccountStore = request.app.state.account_store
    by_role = store.count_by_role()
    total = sum(by_role.values())
    active = store.count_active()
    return StatsResponse(users=UserStats(total=total, active=active, inactive=total - active, by_role=by_role))


@router.put("/admin/users/{user_id}/role", response_model=AccountActionResponse)
async def update_role(
    request: Request,
    user_id: str,
    body: RoleUpdate,
    admin: Account = Depends(_require_admin),
) -> AccountActionResponse:
    store: AccountStore = request.app.state.account_store
    target = _get_target(store, user_id)

    if body.role is not Role.ADMIN and target.role is Role.ADMIN:
        if target.id == admin.id:
            raise HTTPException(
                status_code=400,
                detail={"code": "self_demotion", "message": "You cannot remove your own admin role."},
            )
        if target.is_active and store.count_active_admins() <= 1:
            raise HTTPException(
                status_code=400,
                detail={"code": "last_admin", "message": "Cannot demote the last active admin account."},
            )

    store.update_account(user_id, role=body.role)
    logger.info("Admin %s set role of account %s to %s", admin.id, user_id, body.role.value)
    return AccountActionResponse(
        message="Role updated.",
        user=AccountResponse.from_account(store.get_by_id(user_id)),
    )


@router.put("/admin/users/{user_id}/toggle-status", response_model=AccountActionResponse)
async def toggle_status(
    request: Request,
    user_id: str,
    admin: Account = Depends(_require_admin),
) -> AccountActionResponse:
    """Flip is_active. A deactivated account's existing tokens stop working immediately."""
    store: AccountStore = request.app.state.account_store
    target = _get_target(store, user_id)

    if target.id == admin.id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deactivation", "message": "You cannot deactivate your own account."},
        )
    if target.is_active and target.role is Role.ADMIN and store.count_active_admins() <= 1:
        raise HTTPException(
            status_code=400,
            detail={"code": "last_admin", "message": "Cannot deactivate the last active admin account."},
        )

    store.update_account(user_id, is_active=not target.is_active)
    logger.warning(
        "Admin %s %s account %s", admin.id, "deactivated" if target.is_active else "activated", user_id
    )
    return AccountActionResponse(
        message="User deactivated." if target.is_active else "User activated.",
        user=AccountResponse.from_account(store.get_by_id(user_id)),
    )


@router.post("/admin/users/{user_id}/force-password-change", response_model=AccountActionResponse)
async def force_password_change(
    request: Request,
    user_id: str,
    admin: Account = Depends(_require_admin),
) -> AccountActionResponse:
    """Require a new password. Existing tokens are limited to the password-change endpoints."""
    store: AccountStore = request.app.state.account_store
    _get_target(store, user_id)
    run_force_password_change(store, user_id)
    logger.info("Admin %s forced a password change for account %s", admin.id, user_id)
    return AccountActionResponse(
        message="User must change their password at next sign-in.",
        user=AccountResponse.from_account(store.get_by_id(user_id)),
    )
