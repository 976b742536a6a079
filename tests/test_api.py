"""
HTTP API tests.

Coverage targets:
- Route guards go through the resolver (admin bypass, role defaults)
- Engine errors map to status codes and error bodies
- Grant, approval, revoke, effective and check endpoints
- Catalog, audit, bulk, sweep and user endpoints
"""
from datetime import timedelta

import pytest

from app.features.users.models import Role
from app.utils import utcnow
from tests.helpers import auth_headers


@pytest.fixture
async def admin(make_user):
    return await make_user(role=Role.ADMIN, access_level=5, two_factor_enabled=True, name="Admin")


@pytest.fixture
async def second_admin(make_user):
    return await make_user(role=Role.ADMIN, access_level=5, two_factor_enabled=True, name="Second Admin")


# ========== Health ==========

class TestHealth:

    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    async def test_root(self, client):
        response = await client.get("/")

        assert response.json()["message"] == "Permission Engine API"


# ========== Authentication and guards ==========

class TestGuards:

    async def test_me_returns_current_user(self, client, make_user):
        user = await make_user()
        headers = auth_headers(user)
        user_id = user.id

        response = await client.get("/users/me", headers=headers)
        assert response.status_code == 200
        assert response.json()["id"] == user_id

    async def test_missing_permission_is_forbidden(self, client, make_user, make_permission):
        await make_permission("reports.read")
        user = await make_user(role=Role.SALES_MANAGER)
        target = await make_user()

        response = await client.post(
            f"/grants/users/{target.id}",
            json={"permission_code": "reports.read"},
            headers=auth_headers(user),
        )

        assert response.status_code == 403

    async def test_role_default_opens_route(self, client, make_user, make_permission):
        await make_permission("permission.view", default_for_roles=[Role.SALES_MANAGER], min_access_level=2)
        viewer = await make_user(role=Role.SALES_MANAGER, access_level=2)
        junior = await make_user(role=Role.SALES_MANAGER, access_level=1)

        allowed = await client.get("/permissions/", headers=auth_headers(viewer))
        denied = await client.get("/permissions/", headers=auth_headers(junior))

        assert allowed.status_code == 200
        assert [p["code"] for p in allowed.json()] == ["permission.view"]
        assert denied.status_code == 403

    async def test_held_permission_needs_step_up(self, client, make_user, make_permission):
        await make_permission("permission.grant", default_for_roles=[Role.SALES_MANAGER], requires_2fa=True)
        await make_permission("reports.read")
        without = await make_user(role=Role.SALES_MANAGER, two_factor_enabled=False)
        enrolled = await make_user(role=Role.SALES_MANAGER, two_factor_enabled=True)
        target = await make_user()
        target_id = target.id

        denied = await client.post(
            f"/grants/users/{target_id}", json={"permission_code": "reports.read"}, headers=auth_headers(without)
        )
        allowed = await client.post(
            f"/grants/users/{target_id}", json={"permission_code": "reports.read"}, headers=auth_headers(enrolled)
        )

        assert denied.status_code == 403
        assert denied.json()["error"] == "step_up_required"
        assert allowed.status_code == 201

    async def test_any_permission_guard_needs_step_up(self, client, make_user, make_permission):
        await make_permission("permission.grant", default_for_roles=[Role.SALES_MANAGER], requires_2fa=True)
        await make_permission("reports.read")
        user = await make_user(role=Role.SALES_MANAGER, two_factor_enabled=False)
        target = await make_user()

        response = await client.post(
            f"/grants/users/{target.id}/temporary",
            json={"permission_code": "reports.read", "hours": 4},
            headers=auth_headers(user),
        )

        assert response.status_code == 403
        assert response.json()["error"] == "step_up_required"
        assert response.json()["context"]["codes"] == ["permission.grant"]


# ========== Grants ==========

class TestGrantEndpoints:

    async def test_grant_returns_201(self, client, notifier, admin, make_user, make_permission):
        await make_permission("reports.read")
        user = await make_user()
        expires_at = (utcnow() + timedelta(days=1)).isoformat()

        response = await client.post(
            f"/grants/users/{user.id}",
            json={"permission_code": "reports.read", "reason": "quarter close", "expires_at": expires_at},
            headers=auth_headers(admin),
        )

        assert response.status_code == 201
        body = response.json()
        assert body["permission_code"] == "reports.read"
        assert body["status"] == "active"
        assert body["granted_by"] == admin.id
        assert [e.action for e in notifier.events] == ["grant"]

    async def test_gated_grant_returns_202_then_approval(self, client, admin, second_admin, make_user, make_permission):
        await make_permission("finance.approve_expenses", requires_approval=True)
        user = await make_user()

        requested = await client.post(
            f"/grants/users/{user.id}",
            json={"permission_code": "finance.approve_expenses"},
            headers=auth_headers(admin),
        )
        assert requested.status_code == 202
        grant_id = requested.json()["id"]
        assert requested.json()["status"] == "pending"

        pending = await client.get("/grants/pending", headers=auth_headers(admin))
        assert [g["id"] for g in pending.json()] == [grant_id]

        self_approval = await client.post(f"/grants/{grant_id}/approve", json={}, headers=auth_headers(admin))
        assert self_approval.status_code == 409
        assert self_approval.json()["error"] == "approval_error"

        approved = await client.post(
            f"/grants/{grant_id}/approve", json={"reason": "ok"}, headers=auth_headers(second_admin)
        )
        assert approved.status_code == 200
        assert approved.json()["status"] == "active"
        assert approved.json()["reviewed_by"] == second_admin.id

    async def test_reject(self, client, admin, second_admin, make_user, make_permission):
        await make_permission("finance.approve_expenses", requires_approval=True)
        user = await make_user()
        requested = await client.post(
            f"/grants/users/{user.id}",
            json={"permission_code": "finance.approve_expenses"},
            headers=auth_headers(admin),
        )

        response = await client.post(
            f"/grants/{requested.json()['id']}/reject", json={"reason": "no"}, headers=auth_headers(second_admin)
        )

        assert response.status_code == 200
        assert response.json()["status"] == "rejected"

    async def test_unknown_permission_is_404(self, client, admin, make_user):
        user = await make_user()

        response = await client.post(
            f"/grants/users/{user.id}",
            json={"permission_code": "nope.nothing"},
            headers=auth_headers(admin),
        )

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    async def test_missing_dependency_is_409(self, client, admin, make_user, make_permission):
        await make_permission("orders.view")
        await make_permission("orders.refund", dependencies=["orders.view"])
        user = await make_user()

        response = await client.post(
            f"/grants/users/{user.id}",
            json={"permission_code": "orders.refund"},
            headers=auth_headers(admin),
        )

        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "missing_dependency"
        assert body["context"]["missing"] == ["orders.view"]

    async def test_step_up_is_403(self, client, admin, make_user, make_permission):
        await make_permission("finance.pay", requires_2fa=True)
        user = await make_user(two_factor_enabled=False)

        response = await client.post(
            f"/grants/users/{user.id}",
            json={"permission_code": "finance.pay"},
            headers=auth_headers(admin),
        )

        assert response.status_code == 403
        assert response.json()["error"] == "step_up_required"

    async def test_invalid_body_is_400(self, client, admin, make_user):
        user = await make_user()

        response = await client.post(
            f"/grants/users/{user.id}",
            json={"permission_code": "reports.read", "delegation_limit": 2},
            headers=auth_headers(admin),
        )

        assert response.status_code == 400

    async def test_temporary_grant(self, client, admin, make_user, make_permission):
        await make_permission("reports.read")
        user = await make_user()

        response = await client.post(
            f"/grants/users/{user.id}/temporary",
            json={"permission_code": "reports.read", "hours": 4},
            headers=auth_headers(admin),
        )

        assert response.status_code == 201
        body = response.json()
        assert body["expires_at"] is not None
        assert body["grant_reason"] == "Temporary access for 4 hours"

    async def test_revoke(self, client, admin, make_user, make_permission):
        await make_permission("reports.read")
        user = await make_user()
        await client.post(
            f"/grants/users/{user.id}", json={"permission_code": "reports.read"}, headers=auth_headers(admin)
        )

        revoked = await client.post(
            f"/grants/users/{user.id}/revoke", json={"permission_code": "reports.read"}, headers=auth_headers(admin)
        )
        again = await client.post(
            f"/grants/users/{user.id}/revoke", json={"permission_code": "reports.read"}, headers=auth_headers(admin)
        )

        assert revoked.json()["revoked"] is True
        assert revoked.json()["grant"]["status"] == "revoked"
        assert again.json() == {"revoked": False, "grant": None}

    async def test_history(self, client, admin, make_user, make_permission):
        await make_permission("reports.read")
        user = await make_user()
        await client.post(
            f"/grants/users/{user.id}", json={"permission_code": "reports.read"}, headers=auth_headers(admin)
        )

        response = await client.get(f"/grants/users/{user.id}", headers=auth_headers(admin))

        assert [g["permission_code"] for g in response.json()] == ["reports.read"]

    async def test_delegate(self, client, admin, make_user, make_permission):
        await make_permission("reports.read")
        grantor = await make_user()
        user = await make_user()
        await client.post(
            f"/grants/users/{grantor.id}",
            json={"permission_code": "reports.read", "can_delegate": True, "delegation_limit": 1},
            headers=auth_headers(admin),
        )

        response = await client.post(
            f"/grants/users/{user.id}/delegate",
            json={"permission_code": "reports.read", "reason": "cover"},
            headers=auth_headers(grantor),
        )

        assert response.status_code == 201
        assert response.json()["granted_by"] == grantor.id
        assert response.json()["delegated_from_id"] is not None


# ========== Effective permissions ==========

class TestEffectiveEndpoints:

    async def test_user_sees_own_effective_set(self, client, make_user, make_permission):
        await make_permission("sales.view", default_for_roles=[Role.SALES_MANAGER])
        user = await make_user(role=Role.SALES_MANAGER)

        response = await client.get(f"/grants/users/{user.id}/effective", headers=auth_headers(user))

        assert response.status_code == 200
        body = response.json()
        assert body["codes"] == ["sales.view"]
        assert body["all_permissions"] is False
        assert body["permissions"][0]["source"] == "role"

    async def test_other_users_need_permission_view(self, client, make_user):
        user = await make_user()
        other = await make_user()

        response = await client.get(f"/grants/users/{other.id}/effective", headers=auth_headers(user))

        assert response.status_code == 403

    async def test_admin_has_all_permissions(self, client, admin):
        response = await client.get(f"/grants/users/{admin.id}/effective", headers=auth_headers(admin))

        assert response.json()["all_permissions"] is True

    async def test_check_reports_step_up(self, client, admin, make_user, make_permission):
        await make_permission("finance.pay", default_for_roles=[Role.FINANCE_MANAGER], requires_2fa=True)
        user = await make_user(role=Role.FINANCE_MANAGER)

        response = await client.get(
            f"/grants/users/{user.id}/check", params={"code": "finance.pay"}, headers=auth_headers(admin)
        )

        body = response.json()
        assert body["held"] is True
        assert body["allowed"] is False
        assert body["step_up_required"] is True


# ========== Catalog ==========

class TestPermissionEndpoints:

    async def test_create_update_delete(self, client, admin):
        created = await client.post(
            "/permissions/",
            json={"code": "reports.read", "name": "Read Reports", "category": "Reports"},
            headers=auth_headers(admin),
        )
        assert created.status_code == 201
        permission_id = created.json()["id"]

        updated = await client.patch(
            f"/permissions/{permission_id}", json={"description": "Monthly reports"}, headers=auth_headers(admin)
        )
        assert updated.json()["description"] == "Monthly reports"

        deleted = await client.delete(f"/permissions/{permission_id}", headers=auth_headers(admin))
        assert deleted.status_code == 204

        missing = await client.get(f"/permissions/{permission_id}", headers=auth_headers(admin))
        assert missing.status_code == 404

    async def test_invalid_graph_is_422(self, client, admin):
        response = await client.post(
            "/permissions/",
            json={"code": "reports.export", "name": "Export", "category": "Reports", "dependencies": ["nope"]},
            headers=auth_headers(admin),
        )

        assert response.status_code == 422
        assert response.json()["error"] == "invalid_graph"

    async def test_system_permission_is_protected(self, client, admin, make_permission):
        permission = await make_permission("system.config", is_system=True)

        response = await client.delete(f"/permissions/{permission.id}", headers=auth_headers(admin))

        assert response.status_code == 409
        assert response.json()["error"] == "protected_permission"

    async def test_tree_and_usage(self, client, admin, make_permission):
        parent = await make_permission("users.view", default_for_roles=[Role.ADMIN])
        await make_permission("users.view.own", parent_code="users.view")

        tree = await client.get("/permissions/tree", headers=auth_headers(admin))
        usage = await client.get(f"/permissions/{parent.id}/usage", headers=auth_headers(admin))

        assert tree.json()[0]["permission"]["code"] == "users.view"
        assert tree.json()[0]["children"][0]["permission"]["code"] == "users.view.own"
        assert usage.json()["role_users"] == 1


# ========== Audit, bulk and sweep ==========

class TestOperationalEndpoints:

    async def test_audit_listing(self, client, admin, make_user, make_permission):
        await make_permission("reports.read")
        user = await make_user()
        await client.post(
            f"/grants/users/{user.id}", json={"permission_code": "reports.read"}, headers=auth_headers(admin)
        )

        response = await client.get("/audit/", params={"user_id": user.id}, headers=auth_headers(admin))

        body = response.json()
        assert body["total"] == 1
        assert body["items"][0]["action"] == "grant"
        assert body["pages"] == 1

    async def test_bulk_grant_partial_failure(self, client, admin, make_user, make_permission):
        await make_permission("orders.view", default_for_roles=[Role.SALES_MANAGER])
        await make_permission("orders.refund", dependencies=["orders.view"])
        u1 = await make_user(role=Role.SALES_MANAGER)
        u2 = await make_user(role=Role.FINANCE_MANAGER)

        response = await client.post(
            "/bulk/grant",
            json={"user_ids": [u1.id, u2.id], "permission_codes": ["orders.refund"]},
            headers=auth_headers(admin),
        )

        body = response.json()
        assert response.status_code == 200
        assert body["succeeded"] == 1
        assert body["failed"] == 1
        assert [r["error"] for r in body["results"]] == [None, "missing_dependency"]

    async def test_sweep_run(self, client, admin, store, make_user, make_permission):
        permission = await make_permission("reports.read")
        user = await make_user()
        now = utcnow()
        await store.grant(
            user.id, permission.id, actor_id=None, reason="x",
            expires_at=now - timedelta(minutes=1), now=now - timedelta(hours=1),
        )

        response = await client.post("/sweeper/run", headers=auth_headers(admin))

        assert response.status_code == 200
        assert response.json()["swept"] == 1
        assert response.json()["entries"][0]["action"] == "expire"


# ========== Users ==========

class TestUserEndpoints:

    async def test_register_user(self, client, admin):
        response = await client.post(
            "/users/",
            json={"email": "new@example.com", "name": "New User", "role": "SALES_MANAGER", "access_level": 2},
            headers=auth_headers(admin),
        )

        assert response.status_code == 201
        assert response.json()["role"] == "SALES_MANAGER"

    async def test_cannot_change_own_role(self, client, admin):
        response = await client.patch(
            f"/users/{admin.id}", json={"role": "SALES_MANAGER"}, headers=auth_headers(admin)
        )

        assert response.status_code == 400
