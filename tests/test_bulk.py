"""
Tests for app/features/bulk/coordinator.py

Coverage targets:
- Partial failure: each pair commits or fails on its own
- Result order follows input order
- Bulk revoke no-ops
- Cloning direct grants
"""
from datetime import timedelta

import pytest

from app.core.errors import NotFoundError
from app.features.audit.logger import AuditLogger
from app.features.bulk.coordinator import BulkCoordinator
from app.features.users.models import Role
from app.utils import utcnow


@pytest.fixture
def coordinator(session_factory, cache, notifier) -> BulkCoordinator:
    return BulkCoordinator(session_factory, notifier=notifier, cache=cache, max_concurrency=1)


async def _audit_count(session_factory, user_id):
    async with session_factory() as db:
        return len(await AuditLogger(db).query_for_user(user_id))


class TestBulkGrant:

    async def test_partial_failure(self, coordinator, session_factory, make_user, make_permission):
        await make_permission("orders.view", default_for_roles=[Role.SALES_MANAGER])
        await make_permission("orders.refund", dependencies=["orders.view"])
        u1 = await make_user(role=Role.SALES_MANAGER)
        u2 = await make_user(role=Role.FINANCE_MANAGER)

        results = await coordinator.bulk_grant([u1.id, u2.id], ["orders.refund"], actor_id=None, reason="x")

        assert [(r.user_id, r.success, r.error) for r in results] == [
            (u1.id, True, None),
            (u2.id, False, "missing_dependency"),
        ]
        assert await _audit_count(session_factory, u1.id) == 1
        assert await _audit_count(session_factory, u2.id) == 0

    async def test_results_follow_input_order(self, coordinator, make_user, make_permission):
        await make_permission("a.one")
        await make_permission("a.two")
        users = [await make_user() for _ in range(3)]

        results = await coordinator.bulk_grant(
            [u.id for u in users], ["a.two", "a.one"], actor_id=None, reason="x"
        )

        assert [(r.user_id, r.permission_code) for r in results] == [
            (u.id, code) for u in users for code in ("a.two", "a.one")
        ]
        assert all(r.success for r in results)

    async def test_unknown_code_and_user(self, coordinator, make_user, make_permission):
        await make_permission("a.one")
        user = await make_user()

        results = await coordinator.bulk_grant(
            [user.id, "01UNKNOWNUSER0000000000000"], ["a.one", "a.missing"], actor_id=None, reason="x"
        )

        assert [r.success for r in results] == [True, False, False, False]
        assert {r.error for r in results[1:]} == {"not_found"}

    async def test_pending_pairs_are_reported(self, coordinator, notifier, make_user, make_permission):
        await make_permission("finance.approve_expenses", requires_approval=True)
        user = await make_user()

        [result] = await coordinator.bulk_grant([user.id], ["finance.approve_expenses"], actor_id=None, reason="x")

        assert result.success
        assert result.pending
        assert [e.action for e in notifier.events] == ["request"]

    async def test_expiry_applies_to_every_pair(self, coordinator, store, make_user, make_permission):
        await make_permission("a.one")
        users = [await make_user() for _ in range(2)]
        expires_at = utcnow() + timedelta(days=2)

        results = await coordinator.bulk_grant(
            [u.id for u in users], ["a.one"], actor_id=None, reason="x", expires_at=expires_at
        )

        for result in results:
            assert (await store.get(result.grant_id)).expires_at == expires_at


class TestBulkRevoke:

    async def test_revoke_with_nothing_to_revoke(self, coordinator, session_factory, make_user, make_permission):
        await make_permission("a.one")
        holder = await make_user()
        other = await make_user()
        await coordinator.bulk_grant([holder.id], ["a.one"], actor_id=None, reason="x")

        results = await coordinator.bulk_revoke([holder.id, other.id], ["a.one"], actor_id=None, reason="x")

        assert [r.success for r in results] == [True, True]
        assert results[0].grant_id is not None
        assert results[1].grant_id is None
        assert await _audit_count(session_factory, other.id) == 0


class TestCloneGrants:

    async def test_clone_copies_direct_grants(self, coordinator, store, make_user, make_permission):
        await make_permission("sales.view", default_for_roles=[Role.SALES_MANAGER])
        one = await make_permission("a.one")
        two = await make_permission("a.two")
        expires_at = utcnow() + timedelta(days=3)
        source = await make_user(role=Role.SALES_MANAGER)
        target = await make_user(role=Role.FINANCE_MANAGER)
        await store.grant(source.id, one.id, actor_id=None, reason="x", conditions={"region": "EU"})
        await store.grant(
            source.id, two.id, actor_id=None, reason="x",
            expires_at=expires_at, can_delegate=True, delegation_limit=2,
        )

        results = await coordinator.clone_grants(source.id, target.id, actor_id=None, reason=None)

        assert [r.permission_code for r in results] == ["a.one", "a.two"]
        assert all(r.success for r in results)
        assert await store.resolver.resolve(target) == frozenset({"a.one", "a.two"})

        cloned = {g.permission_id: g for g in await store.list_active_for_user(target.id)}
        assert cloned[one.id].conditions == {"region": "EU"}
        assert cloned[two.id].expires_at == expires_at
        assert not cloned[two.id].can_delegate
        assert cloned[one.id].grant_reason == f"Cloned from user {source.id}"

    async def test_clone_unknown_user(self, coordinator, make_user):
        user = await make_user()

        with pytest.raises(NotFoundError):
            await coordinator.clone_grants(user.id, "01UNKNOWNUSER0000000000000", actor_id=None, reason=None)
