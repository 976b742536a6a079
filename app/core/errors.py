"""
Domain errors raised by the permission engine.

Every error carries a stable ``code`` (returned to API clients) and the HTTP
status the application maps it to. Services raise these; only the exception
handler in ``app.main`` turns them into responses.
"""
from typing import Any, Dict, Optional


class PermissionEngineError(Exception):
    """Base class for all engine errors."""
    code = "engine_error"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.code, "detail": self.message}
        if self.details:
            body["context"] = self.details
        return body


class NotFoundError(PermissionEngineError):
    """Unknown user, permission or grant."""
    code = "not_found"
    status_code = 404


class ValidationError(PermissionEngineError):
    code = "validation_error"
    status_code = 400


class InvalidGraphError(PermissionEngineError):
    """Catalog write would create a parent cycle or a dependency/conflict overlap."""
    code = "invalid_graph"
    status_code = 422


class ProtectedPermissionError(PermissionEngineError):
    """System permission rename/delete, or code change on a referenced permission."""
    code = "protected_permission"
    status_code = 409


class InactivePermissionError(PermissionEngineError):
    code = "inactive_permission"
    status_code = 409


class MissingDependencyError(PermissionEngineError):
    code = "missing_dependency"
    status_code = 409


class ConflictError(PermissionEngineError):
    code = "conflict"
    status_code = 409


class StepUpRequiredError(PermissionEngineError):
    """Permission requires 2FA and the target user has not enabled it."""
    code = "step_up_required"
    status_code = 403


class PendingApproval(PermissionEngineError):
    """
    Informational: the grant was queued for approval.

    Not raised by the store: ``grant()`` returns the pending row, and the
    grant routes answer with this status code. Kept in the taxonomy for
    callers that only accept active grants.
    """
    code = "pending_approval"
    status_code = 202


class DuplicateActiveGrant(PermissionEngineError):
    """
    An active grant already exists.

    Not raised by the store: ``grant()`` treats the duplicate as success and
    returns the existing row. Kept in the taxonomy for callers that need to
    refuse duplicates explicitly.
    """
    code = "duplicate_active_grant"
    status_code = 409


class ApprovalError(PermissionEngineError):
    """Review of a request that is not pending, or a self-approval."""
    code = "approval_error"
    status_code = 409


class DelegationDeniedError(PermissionEngineError):
    code = "delegation_denied"
    status_code = 403


class AuditWriteError(PermissionEngineError):
    """The audit entry could not be written; the triggering mutation is rolled back."""
    code = "audit_write_failed"
    status_code = 500
