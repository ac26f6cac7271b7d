"""
Tenant model, principals and seat quotas for tenantguard.

Key Components:
    - Principal / Role: Authenticated actors and their privilege tiers
    - Tenant / TenantPlan / TenantStatus: Customer organizations
    - QuotaExceededError / TenantLimits: Seat quota enforcement

The lifecycle manager lives in ``tenantguard.multitenancy.lifecycle``;
it depends on the audit log and the decision engine and is not
re-exported here.

Example:
    from tenantguard.multitenancy import Principal, Role, Tenant, TenantPlan

    admin = Principal(id="u-1", email="ana@acme.com", role=Role.ADMIN, tenant_id="t-1")
    tenant = Tenant.create("t-1", "Acme", plan=TenantPlan.PROFESSIONAL)
"""

from tenantguard.multitenancy.principal import (
    TENANT_ROLES,
    Principal,
    Role,
    is_isolation_consistent,
    is_master_valid,
)
from tenantguard.multitenancy.tenant import (
    ALLOWED_TRANSITIONS,
    PLAN_DEFAULTS,
    Tenant,
    TenantPlan,
    TenantStatus,
    default_settings_for_plan,
    max_users_for_plan,
)
from tenantguard.multitenancy.quotas import (
    QuotaExceededError,
    TenantLimits,
    ensure_seat_available,
    tenant_limits,
)

__all__ = [
    # Principal
    "TENANT_ROLES",
    "Principal",
    "Role",
    "is_isolation_consistent",
    "is_master_valid",
    # Tenant
    "ALLOWED_TRANSITIONS",
    "PLAN_DEFAULTS",
    "Tenant",
    "TenantPlan",
    "TenantStatus",
    "default_settings_for_plan",
    "max_users_for_plan",
    # Quotas
    "QuotaExceededError",
    "TenantLimits",
    "ensure_seat_available",
    "tenant_limits",
]
