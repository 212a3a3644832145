"""
Error taxonomy for the role/permission administration core.

Registry, store and staging code raise these directly; the HTTP layer
renders them with a single exception handler (see ``rbac_admin.main``).
"""
from typing import Any, Dict, Optional


class RbacError(Exception):
    """Base class for every error surfaced by the administration core."""

    code: str = "rbac_error"
    status_code: int = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.code, "detail": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(RbacError):
    """Malformed input: bad role name, action not supported by the resource."""

    code = "validation_error"
    status_code = 400


class ConflictError(RbacError):
    """Duplicate role name or duplicate (resource, action, scope) grant."""

    code = "conflict"
    status_code = 409


class NotFoundError(RbacError):
    """Role, permission, user or resource does not exist."""

    code = "not_found"
    status_code = 404


class ProtectedResourceError(RbacError):
    """Mutation attempted on a system role."""

    code = "protected_resource"
    status_code = 403


class StaleSessionError(ConflictError):
    """A staging session's baseline can no longer be trusted as-is."""

    code = "stale_session"


class SessionBusyError(ConflictError):
    """The staging session has an apply in flight."""

    code = "session_busy"


class SessionLimitError(ConflictError):
    """Too many staging sessions hold pending edits to open another."""

    code = "session_limit"
