"""Integration tests for api/routes/v1/admin.py.

Covers:
- ADMIN-only access, checked against the stored role (not the token claim)
- listing and stats
- role changes, including the self-demotion and last-admin guards
- toggle-status (self-deactivation guard, immediate effect on tokens)
- forced password change
"""

from __future__ import annotations

from auth.models import Role


def test_non_admin_forbidden(client, api_enroll, bearer):
    user = api_enroll()
    resp = client.get("/api/v1/admin/users", headers=bearer(user.account))
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "forbidden"


def test_unauthenticated(client):
    assert client.get("/api/v1/admin/stats").status_code == 401


def test_demoted_admin_loses_access_with_old_token(client, api_enroll, api_store, bearer):
    api_enroll(role=Role.ADMIN)  # keep another admin around
    admin = api_enroll(role=Role.ADMIN)
    headers = bearer(admin.account)  # token claims ADMIN
    assert client.get("/api/v1/admin/users", headers=headers).status_code == 200
    api_store.update_account(admin.account.id, role=Role.FREE)
    assert client.get("/api/v1/admin/users", headers=headers).status_code == 403


def test_list_users_and_stats(client, api_enroll, bearer):
    admin = api_enroll(role=Role.ADMIN)
    api_enroll(role=Role.PREMIUM)
    users = client.get("/api/v1/admin/users", headers=bearer(admin.account)).json()
    assert users["count"] == len(users["users"])
    assert all("password_hash" not in u for u in users["users"])

    stats = client.get("/api/v1/admin/stats", headers=bearer(admin.account)).json()["users"]
    assert stats["total"] == users["count"]
    assert stats["by_role"]["ADMIN"] >= 1
    assert stats["by_role"]["PREMIUM"] >= 1
    assert stats["active"] + stats["inactive"] == stats["total"]


def test_change_role(client, api_enroll, bearer):
    admin = api_enroll(role=Role.ADMIN)
    target = api_enroll()
    resp = client.put(
        f"/api/v1/admin/users/{target.account.id}/role", json={"role": "PREMIUM"}, headers=bearer(admin.account)
    )
    assert resp.status_code == 200
    assert resp.json()["user"]["role"] == "PREMIUM"


def test_invalid_role_rejected(client, api_enroll, bearer):
    admin = api_enroll(role=Role.ADMIN)
    target = api_enroll()
    resp = client.put(
        f"/api/v1/admin/users/{target.account.id}/role", json={"role": "ROOT"}, headers=bearer(admin.account)
    )
    assert resp.status_code == 422


def test_cannot_demote_self(client, api_enroll, bearer):
    admin = api_enroll(role=Role.ADMIN)
    resp = client.put(
        f"/api/v1/admin/users/{admin.account.id}/role", json={"role": "FREE"}, headers=bearer(admin.account)
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "self_demotion"


def test_unknown_user(client, api_enroll, bearer):
    admin = api_enroll(role=Role.ADMIN)
    resp = client.put("/api/v1/admin/users/does-not-exist/toggle-status", headers=bearer(admin.account))
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"


def test_toggle_status_revokes_access(client, api_enroll, bearer):
    admin = api_enroll(role=Role.ADMIN)
    target = api_enroll()
    target_headers = bearer(target.account)
    assert client.get("/api/v1/auth/mfa/status", headers=target_headers).status_code == 200

    resp = client.put(f"/api/v1/admin/users/{target.account.id}/toggle-status", headers=bearer(admin.account))
    assert resp.status_code == 200
    assert resp.json()["user"]["is_active"] is False
    assert client.get("/api/v1/auth/mfa/status", headers=target_headers).status_code == 403

    resp = client.put(f"/api/v1/admin/users/{target.account.id}/toggle-status", headers=bearer(admin.account))
    assert resp.json()["user"]["is_active"] is True
    assert client.get("/api/v1/auth/mfa/status", headers=target_headers).status_code == 200


def test_cannot_deactivate_self(client, api_enroll, bearer):
    admin = api_enroll(role=Role.ADMIN)
    resp = client.put(f"/api/v1/admin/users/{admin.account.id}/toggle-status", headers=bearer(admin.account))
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "self_deactivation"


def test_force_password_change(client, api_enroll, bearer):
    admin = api_enroll(role=Role.ADMIN)
    target = api_enroll()
    resp = client.post(
        f"/api/v1/admin/users/{target.account.id}/force-password-change", headers=bearer(admin.account)
    )
    assert resp.status_code == 200
    assert resp.json()["user"]["must_change_password"] is True

    blocked = client.get("/api/v1/auth/mfa/status", headers=bearer(target.account))
    assert blocked.status_code == 403
    assert blocked.json()["error"]["code"] == "password_change_required"
