"""Exception hierarchy for tenantguard.

Decision functions never raise for a denial; a denial is an expected
outcome returned as ``False``. The classes below are raised by the
operation layers (tenant lifecycle, audit queries) and by the storage
layer, so callers can always tell "denied" apart from "could not
determine".

Categories:
- Authorization outcomes surfaced as errors by operation layers
- Recoverable, user-facing conditions (quota, duplicates, transitions)
- Persistence failures

Usage:
    from tenantguard.exceptions import AccessDenied, StorageFailure

    try:
        await lifecycle.delete_tenant(caller, tenant_id)
    except AccessDenied:
        return forbidden()
    except StorageFailure:
        return service_unavailable()
"""

from __future__ import annotations

from typing import Any, Optional


class TenantGuardError(Exception):
    """Base exception for all tenantguard errors."""

    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


# ── Authorization ────────────────────────────────────────────────


class AuthorizationError(TenantGuardError):
    """Base class for every refused operation.

    The decision engine has already recorded an audit event by the time
    one of these is raised.
    """

    def __init__(
        self,
        message: str,
        *,
        principal_id: Optional[str] = None,
        operation: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, details=details)
        self.principal_id = principal_id
        self.operation = operation


class AuthenticationMissing(AuthorizationError):
    """No valid principal was supplied."""


class IsolationViolation(AuthorizationError):
    """The principal's own record contradicts the role/tenant invariants.

    Example: a master principal persisted with a tenant id.
    """


class AccessDenied(AuthorizationError):
    """A well-formed principal asked for something outside their scope."""


# ── Input / state ────────────────────────────────────────────────


class NotFoundError(TenantGuardError):
    """A tenant or principal id does not exist."""

    def __init__(self, resource_type: str, resource_id: str):
        super().__init__(
            f"{resource_type} {resource_id!r} not found",
            details={"resource_type": resource_type, "resource_id": resource_id},
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class DuplicatePrincipalError(TenantGuardError, ValueError):
    """The e-mail address is already bound to another principal."""

    def __init__(self, email: str):
        super().__init__(f"Email {email!r} is already in use", details={"email": email})
        self.email = email


class InvalidTransitionError(TenantGuardError, ValueError):
    """A tenant status change is not allowed by the lifecycle state machine."""

    def __init__(self, tenant_id: str, from_status: str, to_status: str):
        super().__init__(
            f"Tenant {tenant_id} cannot move from {from_status} to {to_status}",
            details={"tenant_id": tenant_id, "from": from_status, "to": to_status},
        )
        self.tenant_id = tenant_id
        self.from_status = from_status
        self.to_status = to_status


# ── Persistence ──────────────────────────────────────────────────


class StorageFailure(TenantGuardError):
    """The persistence layer is unavailable or rejected the operation.

    Fatal to the requested operation. Never an implicit deny or permit.
    """

    def __init__(self, message: str, *, operation: Optional[str] = None):
        super().__init__(message, details={"operation": operation} if operation else None)
        self.operation = operation
