"""
Seat quota checks for tenantguard tenants.

A tenant's seat quota (``max_users``) is derived from its plan. The
check happens before a principal is provisioned and the counter itself
is moved with an atomic storage update, so the quota is a best-effort
guard: two concurrent signups may both pass the check and overshoot by
a seat. ``TenantLifecycleManager.recompute_user_count`` repairs the
counter; an overshoot is never fatal.

Example:
    from tenantguard.multitenancy.quotas import ensure_seat_available

    limits = ensure_seat_available(tenant)   # raises QuotaExceededError
    await storage.increment_user_count(tenant.id, 1)
"""

from dataclasses import dataclass
from typing import Any
import logging

from tenantguard.exceptions import TenantGuardError
from tenantguard.multitenancy.tenant import Tenant

logger = logging.getLogger(__name__)

# Warning threshold (percentage)
WARNING_THRESHOLD = 80


class QuotaExceededError(TenantGuardError):
    """No seat left in a tenant for another principal.

    Recoverable and user-facing, never a security event: the tenant
    admin can upgrade the plan or deactivate an account.

    Attributes:
        tenant_id: The full tenant.
        limit: Its ``max_users``.
        current: Seats in use when the check ran.
        requested: Seats the caller tried to take.

    Example:
        try:
            await lifecycle.provision_principal(admin, tenant_id, ...)
        except QuotaExceededError as e:
            return f"User limit reached ({e.current}/{e.limit})"
    """

    def __init__(self, tenant_id: str, limit: int, current: int, requested: int = 1):
        super().__init__(
            f"Tenant {tenant_id} has {current} of {limit} seats in use, "
            f"cannot add {requested}",
            details={"tenant_id": tenant_id, "limit": limit, "current": current},
        )
        self.tenant_id = tenant_id
        self.limit = limit
        self.current = current
        self.requested = requested

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": "quota_exceeded",
            "tenant_id": self.tenant_id,
            "resource": "users",
            "limit": self.limit,
            "current": self.current,
            "requested": self.requested,
        }


@dataclass(frozen=True)
class TenantLimits:
    """Snapshot of a tenant's seat usage.

    Attributes:
        tenant_id: The tenant.
        current_users: Seats in use.
        max_users: Seat quota.
    """

    tenant_id: str
    current_users: int
    max_users: int

    @property
    def can_add_user(self) -> bool:
        return self.current_users < self.max_users

    @property
    def usage_percent(self) -> float:
        """Calculate usage as a percentage of limit."""
        if self.max_users == 0:
            return 100.0
        return (self.current_users / self.max_users) * 100

    @property
    def near_limit(self) -> bool:
        return self.usage_percent >= WARNING_THRESHOLD

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "can_add_user": self.can_add_user,
            "current_users": self.current_users,
            "max_users": self.max_users,
            "usage_percent": round(self.usage_percent, 1),
        }


def tenant_limits(tenant: Tenant) -> TenantLimits:
    """Build the seat usage snapshot for a tenant."""
    return TenantLimits(
        tenant_id=tenant.id,
        current_users=tenant.current_users,
        max_users=tenant.max_users,
    )


def ensure_seat_available(tenant: Tenant, requested: int = 1) -> TenantLimits:
    """Check that ``requested`` more principals fit in the tenant.

    Args:
        tenant: The tenant to check.
        requested: Seats about to be taken.

    Returns:
        The usage snapshot the decision was based on.

    Raises:
        QuotaExceededError: If the seats would exceed ``max_users``.
    """
    limits = tenant_limits(tenant)
    if limits.current_users + requested > limits.max_users:
        raise QuotaExceededError(
            tenant_id=tenant.id,
            limit=limits.max_users,
            current=limits.current_users,
            requested=requested,
        )
    if limits.near_limit:
        logger.info(
            "Tenant %s at %.0f%% of its user quota (%d/%d)",
            tenant.id,
            limits.usage_percent,
            limits.current_users,
            limits.max_users,
        )
    return limits
