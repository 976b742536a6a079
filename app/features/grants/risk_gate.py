"""
Risk gate: step-up (2FA) and approval requirements attached to permissions.

The resolver answers "is this permission assigned"; the gate answers "may it
be granted" and "is it exercisable right now".
"""
from dataclasses import dataclass
from typing import Optional

from app.core.errors import ApprovalError, StepUpRequiredError
from app.features.permissions.catalog import PermissionDefinition
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)


@dataclass(frozen=True)
class AccessDecision:
    code: str
    held: bool
    allowed: bool
    step_up_required: bool = False
    requires_approval: bool = False
    reason: Optional[str] = None


class RiskGate:

    def authorize_grant(self, permission: PermissionDefinition, user: User) -> None:
        """Raise ``StepUpRequiredError`` if the target user cannot hold a 2FA-gated permission."""
        if permission.requires_2fa and not user.two_factor_enabled:
            log.warning("Step-up required: %s needs 2FA, user %s has none", permission.code, user.id)
            raise StepUpRequiredError(
                f"Permission {permission.code} requires two-factor authentication",
                {"code": permission.code, "user_id": user.id},
            )

    def requires_approval(self, permission: PermissionDefinition) -> bool:
        return permission.requires_approval

    def authorize_approval(self, requested_by: Optional[str], approver_id: str) -> None:
        """Four-eyes rule: whoever requested a grant cannot approve it."""
        if not approver_id:
            raise ApprovalError("approver_id is required")
        if requested_by is not None and requested_by == approver_id:
            raise ApprovalError(
                "Grant requests must be approved by different users",
                {"requested_by": requested_by, "approver_id": approver_id},
            )

    def authorize_check(self, permission: PermissionDefinition, user: User, held: bool) -> AccessDecision:
        if not held:
            return AccessDecision(
                code=permission.code,
                held=False,
                allowed=False,
                requires_approval=permission.requires_approval,
                reason="Permission not assigned",
            )
        if permission.requires_2fa and not user.two_factor_enabled:
            return AccessDecision(
                code=permission.code,
                held=True,
                allowed=False,
                step_up_required=True,
                requires_approval=permission.requires_approval,
                reason="Two-factor authentication required",
            )
        return AccessDecision(
            code=permission.code,
            held=True,
            allowed=True,
            requires_approval=permission.requires_approval,
        )
