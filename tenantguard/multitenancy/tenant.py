"""
Tenant model and plan configuration for tenantguard.

A tenant is an independent customer organization sharing the deployment.
Each tenant has its own:
- Subscription plan and the user quota derived from it
- Lifecycle status
- Plan-dependent default settings

Plans:
    - BASIC: Small teams, 5 seats
    - PROFESSIONAL: Growing teams, 25 seats
    - ENTERPRISE: Large organizations, 100 seats

Status lifecycle:
    trial -> active -> suspended -> active (reactivation)
    trial -> suspended
    inactive is defined but not reachable through any transition.

Example:
    from tenantguard.multitenancy.tenant import Tenant, TenantPlan

    tenant = Tenant.create(
        "t-1",
        "Acme",
        plan=TenantPlan.BASIC,
        admin_principal_id="u-1",
    )
    tenant.transition(TenantStatus.ACTIVE)
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

from tenantguard.exceptions import InvalidTransitionError


class TenantStatus(str, Enum):
    """Lifecycle status of a tenant.

    Attributes:
        TRIAL: Freshly created, evaluation period.
        ACTIVE: Paying, fully operational.
        SUSPENDED: Locked out by a master operator.
        INACTIVE: Terminal state; defined in the data model but no
                  transition leads here.
    """

    TRIAL = "trial"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    INACTIVE = "inactive"


class TenantPlan(str, Enum):
    """Subscription plans.

    Attributes:
        BASIC: Entry plan, email integration only.
        PROFESSIONAL: Adds WhatsApp and API integrations.
        ENTERPRISE: All integrations plus custom branding.
    """

    BASIC = "basic"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


# Default limits and settings per plan
PLAN_DEFAULTS: dict[TenantPlan, dict[str, Any]] = {
    TenantPlan.BASIC: {
        "max_users": 5,
        "monthly_price": 199,
        "settings": {
            "max_leads": 1000,
            "max_clients": 500,
            "custom_branding": False,
            "integrations_enabled": ["email"],
        },
    },
    TenantPlan.PROFESSIONAL: {
        "max_users": 25,
        "monthly_price": 299,
        "settings": {
            "max_leads": 5000,
            "max_clients": 2000,
            "custom_branding": False,
            "integrations_enabled": ["email", "whatsapp", "api"],
        },
    },
    TenantPlan.ENTERPRISE: {
        "max_users": 100,
        "monthly_price": 499,
        "settings": {
            "max_leads": 50000,
            "max_clients": 10000,
            "custom_branding": True,
            "integrations_enabled": ["email", "whatsapp", "api", "webhook", "smartbot"],
        },
    },
}

# Allowed status moves; INACTIVE has no way in and no way out.
ALLOWED_TRANSITIONS: dict[TenantStatus, frozenset[TenantStatus]] = {
    TenantStatus.TRIAL: frozenset({TenantStatus.ACTIVE, TenantStatus.SUSPENDED}),
    TenantStatus.ACTIVE: frozenset({TenantStatus.SUSPENDED}),
    TenantStatus.SUSPENDED: frozenset({TenantStatus.ACTIVE}),
    TenantStatus.INACTIVE: frozenset(),
}


def max_users_for_plan(
    plan: TenantPlan | str,
    quotas: Mapping[str, int] | None = None,
) -> int:
    """Resolve the seat quota of a plan.

    Args:
        plan: The plan to look up.
        quotas: Optional configured quotas keyed by plan value
                (``Settings.PLAN_QUOTAS``). Falls back to PLAN_DEFAULTS.

    Returns:
        Maximum number of users for the plan.

    Raises:
        ValueError: If the plan is unknown.
    """
    plan = TenantPlan(plan)
    if quotas and plan.value in quotas:
        return int(quotas[plan.value])
    return PLAN_DEFAULTS[plan]["max_users"]


def default_settings_for_plan(plan: TenantPlan | str) -> dict[str, Any]:
    """Return a fresh copy of the plan's default tenant settings."""
    return copy.deepcopy(PLAN_DEFAULTS[TenantPlan(plan)]["settings"])


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Tenant:
    """A tenant (customer organization).

    Attributes:
        id: Unique identifier for the tenant.
        name: Human-readable organization name.
        plan: Subscription plan.
        max_users: Seat quota derived from the plan.
        current_users: Active principals bound to the tenant. Maintained
                       with atomic counter updates; may briefly exceed
                       max_users under concurrent provisioning.
        status: Lifecycle status.
        domain: Optional custom domain.
        admin_principal_id: The admin provisioned with the tenant.
        settings: Plan-dependent settings plus operator overrides.
        created_at: When the tenant was created (UTC).
        updated_at: Last modification (UTC).
    """

    id: str
    name: str
    plan: TenantPlan
    max_users: int
    current_users: int = 0
    status: TenantStatus = TenantStatus.TRIAL
    domain: str | None = None
    admin_principal_id: str | None = None
    settings: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        """Validate tenant fields after initialization."""
        if not self.id:
            raise ValueError("Tenant id cannot be empty")
        if not self.name or not self.name.strip():
            raise ValueError("Tenant name cannot be empty")
        self.plan = TenantPlan(self.plan)
        self.status = TenantStatus(self.status)
        if self.max_users < 0 or self.current_users < 0:
            raise ValueError("User counts cannot be negative")

    @classmethod
    def create(
        cls,
        tenant_id: str,
        name: str,
        plan: TenantPlan | str = TenantPlan.BASIC,
        quotas: Mapping[str, int] | None = None,
        **kwargs: Any,
    ) -> "Tenant":
        """Factory method to create a new tenant in trial.

        ``max_users`` and the default settings come from the plan.

        Args:
            tenant_id: Unique identifier for the tenant.
            name: Human-readable organization name.
            plan: Subscription plan.
            quotas: Optional configured seat quotas.
            **kwargs: Additional fields to set on the tenant.

        Returns:
            A new Tenant instance.
        """
        plan = TenantPlan(plan)
        kwargs.setdefault("settings", default_settings_for_plan(plan))
        return cls(
            id=tenant_id,
            name=name,
            plan=plan,
            max_users=max_users_for_plan(plan, quotas),
            status=TenantStatus.TRIAL,
            **kwargs,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Tenant":
        """Rebuild a tenant from its ``to_dict`` representation."""
        kwargs = dict(data)
        for key in ("created_at", "updated_at"):
            if isinstance(kwargs.get(key), str):
                kwargs[key] = datetime.fromisoformat(kwargs[key])
        return cls(**kwargs)

    @property
    def has_capacity(self) -> bool:
        """True while another user can be provisioned."""
        return self.current_users < self.max_users

    def can_transition(self, to_status: TenantStatus | str) -> bool:
        """Check whether the state machine allows moving to ``to_status``."""
        return TenantStatus(to_status) in ALLOWED_TRANSITIONS[self.status]

    def transition(self, to_status: TenantStatus | str) -> TenantStatus:
        """Move to a new status.

        Args:
            to_status: Target status.

        Returns:
            The previous status.

        Raises:
            InvalidTransitionError: If the move is not allowed.
        """
        to_status = TenantStatus(to_status)
        if not self.can_transition(to_status):
            raise InvalidTransitionError(self.id, self.status.value, to_status.value)
        previous = self.status
        self.status = to_status
        self.updated_at = _utcnow()
        return previous

    def change_plan(
        self,
        new_plan: TenantPlan | str,
        quotas: Mapping[str, int] | None = None,
    ) -> None:
        """Switch plans and re-derive the seat quota.

        The plan history is kept in ``settings["plan_history"]``.

        Args:
            new_plan: The plan to switch to.
            quotas: Optional configured seat quotas.
        """
        new_plan = TenantPlan(new_plan)
        old_plan = self.plan
        if new_plan == old_plan:
            return

        self.plan = new_plan
        self.max_users = max_users_for_plan(new_plan, quotas)
        self.settings.setdefault("plan_history", []).append({
            "from": old_plan.value,
            "to": new_plan.value,
            "at": _utcnow().isoformat(),
        })
        self.updated_at = _utcnow()

    def to_dict(self) -> dict[str, Any]:
        """Convert tenant to a dictionary.

        Returns:
            Dictionary representation of the tenant.
        """
        return {
            "id": self.id,
            "name": self.name,
            "domain": self.domain,
            "status": self.status.value,
            "plan": self.plan.value,
            "max_users": self.max_users,
            "current_users": self.current_users,
            "admin_principal_id": self.admin_principal_id,
            "settings": self.settings,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    def __repr__(self) -> str:
        return (
            f"<Tenant {self.id} name={self.name!r} plan={self.plan.value} "
            f"{self.status.value} users={self.current_users}/{self.max_users}>"
        )
