"""
Tests for app/features/grants/store.py

Coverage targets:
- Grant preconditions (unknown user/permission, inactive permission, step-up,
  dependencies, conflicts in both directions, expiry in the past)
- Idempotent grant and revoke, including a lost race on the open-grant index
- Expiry boundary and inline retirement of expired rows
- Audit entries and notifications per mutation
"""
from datetime import timedelta

import pytest

from app.core.errors import (
    ConflictError,
    InactivePermissionError,
    MissingDependencyError,
    NotFoundError,
    StepUpRequiredError,
    ValidationError,
)
from app.core.notifications import GrantEvent
from app.features.audit.models import AuditAction
from app.features.grants.models import ApprovalState, GrantStatus
from app.features.grants.store import GrantStore
from app.features.permissions.catalog import PermissionCatalog
from app.features.users.models import Role
from app.utils import utcnow

CROCKFORD_BASE32 = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"


class FailingNotifier:
    async def notify(self, event: GrantEvent) -> None:
        raise RuntimeError("notification backend down")


# ========== Preconditions ==========

class TestGrantPreconditions:

    async def test_unknown_user(self, store, make_permission):
        permission = await make_permission("reports.read")

        with pytest.raises(NotFoundError):
            await store.grant("01UNKNOWNUSER0000000000000", permission.id, actor_id=None, reason="x")

    async def test_unknown_permission(self, store, make_user):
        user = await make_user()

        with pytest.raises(NotFoundError):
            await store.grant(user.id, "01UNKNOWNPERMISSION0000000", actor_id=None, reason="x")

    async def test_inactive_permission(self, catalog, store, make_user, make_permission):
        permission = await make_permission("reports.read")
        await catalog.deactivate(permission.id)
        user = await make_user()

        with pytest.raises(InactivePermissionError):
            await store.grant(user.id, permission.id, actor_id=None, reason="x")

    async def test_two_factor_permission_needs_enrolled_user(self, store, make_user, make_permission):
        permission = await make_permission("finance.pay", requires_2fa=True)
        without = await make_user(two_factor_enabled=False)
        enrolled = await make_user(two_factor_enabled=True)

        grant = await store.grant(enrolled.id, permission.id, actor_id=None, reason="x")
        assert grant.approval_state == ApprovalState.APPROVED

        with pytest.raises(StepUpRequiredError):
            await store.grant(without.id, permission.id, actor_id=None, reason="x")

    async def test_expiry_must_be_in_the_future(self, store, make_user, make_permission):
        permission = await make_permission("reports.read")
        user = await make_user()
        now = utcnow()

        with pytest.raises(ValidationError):
            await store.grant(user.id, permission.id, actor_id=None, reason="x", expires_at=now, now=now)

    async def test_failed_grant_writes_nothing(self, store, make_user, make_permission):
        permission = await make_permission("finance.pay", requires_2fa=True)
        user_id = (await make_user()).id

        with pytest.raises(StepUpRequiredError):
            await store.grant(user_id, permission.id, actor_id=None, reason="x")

        assert await store.list_for_user(user_id) == []
        assert await store.audit.query_for_user(user_id) == []


# ========== Dependency and conflict graph ==========

class TestGrantGraph:

    async def test_missing_dependency(self, store, make_user, make_permission):
        await make_permission("orders.view")
        refund = await make_permission("orders.refund", dependencies=["orders.view"])
        user = await make_user()

        with pytest.raises(MissingDependencyError) as exc_info:
            await store.grant(user.id, refund.id, actor_id=None, reason="x")

        assert exc_info.value.details["missing"] == ["orders.view"]

    async def test_dependency_satisfied_by_role_default(self, store, make_user, make_permission):
        await make_permission("orders.view", default_for_roles=[Role.SALES_MANAGER])
        refund = await make_permission("orders.refund", dependencies=["orders.view"])
        user = await make_user(role=Role.SALES_MANAGER)

        grant = await store.grant(user.id, refund.id, actor_id=None, reason="x")

        assert grant.is_active(utcnow())

    async def test_dependency_satisfied_by_direct_grant(self, store, make_user, make_permission):
        view = await make_permission("orders.view")
        refund = await make_permission("orders.refund", dependencies=["orders.view"])
        user = await make_user()

        await store.grant(user.id, view.id, actor_id=None, reason="x")
        await store.grant(user.id, refund.id, actor_id=None, reason="x")

        assert await store.resolver.resolve(user) == frozenset({"orders.view", "orders.refund"})

    async def test_conflict_declared_on_new_permission(self, store, make_user, make_permission):
        create = await make_permission("payments.create")
        approve = await make_permission("payments.approve", conflicts=["payments.create"])
        user = await make_user()
        await store.grant(user.id, create.id, actor_id=None, reason="x")

        with pytest.raises(ConflictError):
            await store.grant(user.id, approve.id, actor_id=None, reason="x")

    async def test_conflict_declared_on_held_permission(self, store, make_user, make_permission):
        create = await make_permission("payments.create")
        approve = await make_permission("payments.approve", conflicts=["payments.create"])
        user = await make_user()
        await store.grant(user.id, approve.id, actor_id=None, reason="x")

        with pytest.raises(ConflictError) as exc_info:
            await store.grant(user.id, create.id, actor_id=None, reason="x")

        assert exc_info.value.details["conflicts"] == ["payments.approve"]

    async def test_admin_skips_graph_checks(self, store, make_user, make_permission):
        await make_permission("orders.view")
        refund = await make_permission("orders.refund", dependencies=["orders.view"])
        admin = await make_user(role=Role.ADMIN)

        grant = await store.grant(admin.id, refund.id, actor_id=None, reason="x")

        assert grant.approval_state == ApprovalState.APPROVED


# ========== Idempotence and round trips ==========

class TestGrantIdempotence:

    async def test_duplicate_grant_returns_existing(self, store, make_user, make_permission):
        permission = await make_permission("reports.read")
        user = await make_user()

        first = await store.grant(user.id, permission.id, actor_id=None, reason="x")
        second = await store.grant(user.id, permission.id, actor_id=None, reason="again")

        assert second.id == first.id
        entries = await store.audit.query_for_user(user.id)
        assert [e.action for e in entries] == [AuditAction.GRANT]

    async def test_grant_then_revoke_restores_effective_set(self, store, make_user, make_permission):
        await make_permission("sales.view", default_for_roles=[Role.SALES_MANAGER])
        extra = await make_permission("finance.view")
        user = await make_user(role=Role.SALES_MANAGER)
        before = await store.resolver.resolve(user)

        await store.grant(user.id, extra.id, actor_id=None, reason="x")
        assert "finance.view" in await store.resolver.resolve(user)
        await store.revoke(user.id, extra.id, actor_id=None, reason="done")

        assert await store.resolver.resolve(user) == before

    async def test_revoke_nothing_is_a_no_op(self, store, make_user, make_permission):
        permission = await make_permission("reports.read")
        user = await make_user()

        assert await store.revoke(user.id, permission.id, actor_id=None, reason="x") is None
        assert await store.audit.query_for_user(user.id) == []

    async def test_revoke_twice(self, store, make_user, make_permission):
        permission = await make_permission("reports.read")
        user = await make_user()
        await store.grant(user.id, permission.id, actor_id=None, reason="x")

        revoked = await store.revoke(user.id, permission.id, actor_id=None, reason="x")

        assert revoked.status_at(utcnow()) == GrantStatus.REVOKED
        assert await store.revoke(user.id, permission.id, actor_id=None, reason="x") is None
        actions = [e.action for e in await store.audit.query_for_user(user.id)]
        assert actions == [AuditAction.GRANT, AuditAction.REVOKE]

    async def test_regrant_after_revoke_creates_new_row(self, store, make_user, make_permission):
        permission = await make_permission("reports.read")
        user = await make_user()
        first = await store.grant(user.id, permission.id, actor_id=None, reason="x")
        await store.revoke(user.id, permission.id, actor_id=None, reason="x")

        second = await store.grant(user.id, permission.id, actor_id=None, reason="x")

        assert second.id != first.id
        assert len(await store.list_for_user(user.id)) == 2
        assert [g.id for g in await store.list_for_user(user.id, include_inactive=False)] == [second.id]

    async def test_delegation_limit_needs_can_delegate(self, store, make_user, make_permission):
        permission = await make_permission("reports.read")
        user = await make_user()

        grant = await store.grant(user.id, permission.id, actor_id=None, reason="x", delegation_limit=3)

        assert grant.delegation_limit == 0

    async def test_concurrent_grant_returns_winning_row(
        self, db, catalog, cache, notifier, session_factory, make_user, make_permission
    ):
        permission_id = (await make_permission("reports.read")).id
        user_id = (await make_user()).id
        winners = []

        class RacingGrantStore(GrantStore):
            async def _open_grant(self, user_id, permission_id):
                if winners:
                    return await super()._open_grant(user_id, permission_id)
                # Another request commits the same grant before this one flushes
                async with session_factory() as other_db:
                    other = GrantStore(other_db, catalog=PermissionCatalog(other_db, cache))
                    winners.append((await other.grant(user_id, permission_id, actor_id=None, reason="first")).id)
                return None

        store = RacingGrantStore(db, catalog=catalog, notifier=notifier)

        grant = await store.grant(user_id, permission_id, actor_id=None, reason="second")

        assert grant.id == winners[0]
        assert len(await store.list_for_user(user_id)) == 1
        entries = await store.audit.query_for_user(user_id)
        assert [(e.action, e.reason) for e in entries] == [(AuditAction.GRANT, "first")]
        assert notifier.events == []


# ========== Expiry ==========

class TestGrantExpiry:

    async def test_expiry_boundary(self, store, make_user, make_permission):
        permission = await make_permission("reports.read")
        user = await make_user()
        now = utcnow()
        expires_at = now + timedelta(hours=1)
        await store.grant(user.id, permission.id, actor_id=None, reason="x", expires_at=expires_at, now=now)

        just_before = expires_at - timedelta(seconds=1)
        assert len(await store.list_active_for_user(user.id, now=just_before)) == 1
        assert await store.list_expired(now=just_before) == []

        assert await store.list_active_for_user(user.id, now=expires_at) == []
        assert len(await store.list_expired(now=expires_at)) == 1

    async def test_regrant_retires_expired_row(self, store, notifier, make_user, make_permission):
        permission = await make_permission("reports.read")
        user = await make_user()
        now = utcnow()
        old = await store.grant(
            user.id, permission.id, actor_id=None, reason="x",
            expires_at=now - timedelta(minutes=1), now=now - timedelta(hours=1),
        )

        new = await store.grant(user.id, permission.id, actor_id=None, reason="renewed", now=now)

        assert new.id != old.id
        assert old.swept_at == now
        # The expire and the new grant share a timestamp
        actions = sorted(e.action.value for e in await store.audit.query_for_user(user.id))
        assert actions == ["expire", "grant", "grant"]
        assert [e.action for e in notifier.events] == ["grant", "expire", "grant"]

    async def test_revoking_expired_grant_is_a_no_op(self, store, make_user, make_permission):
        permission = await make_permission("reports.read")
        user = await make_user()
        now = utcnow()
        await store.grant(
            user.id, permission.id, actor_id=None, reason="x",
            expires_at=now - timedelta(minutes=1), now=now - timedelta(hours=1),
        )

        assert await store.revoke(user.id, permission.id, actor_id=None, reason="x", now=now) is None
        assert len(await store.list_expired(now=now)) == 1


# ========== Audit and notifications ==========

class TestGrantSideEffects:

    async def test_audit_entry_carries_grant_metadata(self, store, make_user, make_permission):
        permission = await make_permission("reports.read")
        actor = await make_user(role=Role.ADMIN)
        user = await make_user()
        expires_at = utcnow() + timedelta(days=1)

        grant = await store.grant(
            user.id, permission.id, actor_id=actor.id, reason="quarter close",
            expires_at=expires_at, conditions={"region": "EU"},
        )

        [entry] = await store.audit.query_for_user(user.id)
        assert entry.action == AuditAction.GRANT
        assert entry.grant_id == grant.id
        assert entry.actor_id == actor.id
        assert entry.reason == "quarter close"
        assert entry.expires_at == grant.expires_at
        assert entry.details["permission_code"] == "reports.read"
        assert entry.details["conditions"] == {"region": "EU"}

    async def test_rows_get_ulid_identifiers(self, store, make_user, make_permission):
        permission = await make_permission("reports.read")
        user = await make_user()

        grant = await store.grant(user.id, permission.id, actor_id=None, reason="x")
        [entry] = await store.audit.query_for_user(user.id)

        for identifier in (permission.id, user.id, grant.id, entry.id):
            assert isinstance(identifier, str)
            assert len(identifier) == 26
            assert set(identifier) <= set(CROCKFORD_BASE32)
        assert len({permission.id, user.id, grant.id, entry.id}) == 4

    async def test_events_follow_commits(self, store, notifier, make_user, make_permission):
        permission = await make_permission("reports.read")
        user = await make_user()

        await store.grant(user.id, permission.id, actor_id=None, reason="x")
        await store.grant(user.id, permission.id, actor_id=None, reason="x")
        await store.revoke(user.id, permission.id, actor_id=None, reason="x")
        await store.revoke(user.id, permission.id, actor_id=None, reason="x")

        assert [e.action for e in notifier.events] == ["grant", "revoke"]
        assert notifier.events[0].details["permission_code"] == "reports.read"

    async def test_failing_notifier_does_not_undo_grant(self, db, catalog, make_user, make_permission):
        permission = await make_permission("reports.read")
        user = await make_user()
        store = GrantStore(db, catalog=catalog, notifier=FailingNotifier())

        await store.grant(user.id, permission.id, actor_id=None, reason="x")

        assert await store.resolver.has_permission(user, "reports.read")
