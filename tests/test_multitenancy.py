"""Tests for tenantguard.multitenancy principal, tenant and quota models.

Covers:
- Role coercion and Principal construction
- is_master_valid / is_isolation_consistent predicates
- TenantPlan defaults and the status state machine
- Plan changes and seat quotas
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import pytest

from tenantguard.exceptions import InvalidTransitionError
from tenantguard.multitenancy import (
    ALLOWED_TRANSITIONS,
    PLAN_DEFAULTS,
    Principal,
    QuotaExceededError,
    Role,
    Tenant,
    TenantLimits,
    TenantPlan,
    TenantStatus,
    default_settings_for_plan,
    ensure_seat_available,
    is_isolation_consistent,
    is_master_valid,
    max_users_for_plan,
    tenant_limits,
)


# ===========================================================================
# Role / Principal
# ===========================================================================

class TestRole:
    def test_values(self):
        assert Role.USER == "user"
        assert Role.ADMIN == "admin"
        assert Role.MASTER == "master"

    def test_coerce_known(self):
        assert Role.coerce("ADMIN") is Role.ADMIN
        assert Role.coerce(Role.USER) is Role.USER

    def test_coerce_unknown_keeps_raw_string(self):
        assert Role.coerce("auditor") == "auditor"
        assert not isinstance(Role.coerce("auditor"), Role)


class TestPrincipal:
    def test_basic_creation(self):
        p = Principal(id="u-1", email="ana@acme.com", role="admin", tenant_id="t-1")
        assert p.role is Role.ADMIN
        assert p.tenant_id == "t-1"
        assert p.is_active is True
        assert p.created_at.tzinfo is not None

    def test_empty_id_rejected(self):
        with pytest.raises(ValueError):
            Principal(id="", email="x@y.z", role=Role.USER)

    def test_empty_tenant_means_none(self):
        p = Principal(id="u-1", email="x@y.z", role=Role.USER, tenant_id="")
        assert p.tenant_id is None

    def test_from_dict_camel_case(self):
        p = Principal.from_dict({
            "id": "u-1",
            "email": "ana@acme.com",
            "role": "user",
            "tenantId": "t-1",
            "displayName": "Ana",
        })
        assert p.tenant_id == "t-1"
        assert p.display_name == "Ana"
        assert p.role is Role.USER

    def test_from_dict_requires_id_and_role(self):
        with pytest.raises(ValueError):
            Principal.from_dict({"email": "ana@acme.com"})

    def test_from_dict_parses_timestamps(self):
        ts = "2024-03-01T12:00:00+00:00"
        p = Principal.from_dict({"id": "u-1", "role": "user", "created_at": ts})
        assert p.created_at == datetime(2024, 3, 1, 12, tzinfo=timezone.utc)

    def test_to_dict(self):
        p = Principal(id="u-1", email="ana@acme.com", role="auditor")
        d = p.to_dict()
        assert d["role"] == "auditor"
        assert d["tenant_id"] is None
        assert "created_at" in d

    def test_role_properties(self):
        master = Principal(id="m-1", email="root@ops", role=Role.MASTER)
        user = Principal(id="u-1", email="u@t", role=Role.USER, tenant_id="t-1")
        assert master.is_master and not master.is_tenant_role
        assert user.is_tenant_role and not user.is_master


class TestPredicates:
    def test_master_without_tenant_is_valid(self):
        assert is_master_valid(Principal(id="m", email="m@x", role=Role.MASTER))

    def test_master_with_tenant_is_invalid(self):
        p = Principal(id="m", email="m@x", role=Role.MASTER, tenant_id="t9")
        assert not is_master_valid(p)
        assert not is_isolation_consistent(p)

    def test_non_master_never_master_valid(self):
        assert not is_master_valid(Principal(id="a", email="a@x", role=Role.ADMIN))

    def test_bound_user_consistent(self):
        p = Principal(id="u", email="u@x", role=Role.USER, tenant_id="t1")
        assert is_isolation_consistent(p)

    def test_unbound_admin_consistent_with_warning(self, caplog):
        p = Principal(id="a", email="a@x", role=Role.ADMIN)
        with caplog.at_level(logging.WARNING, logger="tenantguard.multitenancy.principal"):
            assert is_isolation_consistent(p) is True
        assert "no tenant binding" in caplog.text

    def test_unknown_role_inconsistent(self):
        p = Principal(id="x", email="x@x", role="auditor", tenant_id="t1")
        assert not is_isolation_consistent(p)


# ===========================================================================
# Tenant
# ===========================================================================

class TestPlanDefaults:
    @pytest.mark.parametrize(
        "plan,seats,price",
        [
            (TenantPlan.BASIC, 5, 199),
            (TenantPlan.PROFESSIONAL, 25, 299),
            (TenantPlan.ENTERPRISE, 100, 499),
        ],
    )
    def test_plan_table(self, plan, seats, price):
        assert PLAN_DEFAULTS[plan]["max_users"] == seats
        assert PLAN_DEFAULTS[plan]["monthly_price"] == price

    def test_max_users_uses_configured_quotas(self):
        assert max_users_for_plan("basic", {"basic": 7}) == 7
        assert max_users_for_plan("professional", {"basic": 7}) == 25

    def test_unknown_plan_rejected(self):
        with pytest.raises(ValueError):
            max_users_for_plan("platinum")

    def test_default_settings_are_copies(self):
        a = default_settings_for_plan("basic")
        a["integrations_enabled"].append("sms")
        assert "sms" not in default_settings_for_plan("basic")["integrations_enabled"]

    def test_enterprise_branding(self):
        assert default_settings_for_plan(TenantPlan.ENTERPRISE)["custom_branding"] is True


class TestTenant:
    def test_create_defaults(self):
        t = Tenant.create("t-1", "Acme")
        assert t.status == TenantStatus.TRIAL
        assert t.plan == TenantPlan.BASIC
        assert t.max_users == 5
        assert t.current_users == 0
        assert t.settings["max_leads"] == 1000

    def test_create_with_quotas(self):
        t = Tenant.create("t-1", "Acme", plan="enterprise", quotas={"enterprise": 250})
        assert t.max_users == 250

    def test_empty_name_rejected(self):
        with pytest.raises(ValueError):
            Tenant.create("t-1", "   ")

    def test_negative_counts_rejected(self):
        with pytest.raises(ValueError):
            Tenant(id="t-1", name="Acme", plan="basic", max_users=5, current_users=-1)

    def test_has_capacity(self):
        t = Tenant.create("t-1", "Acme", current_users=4)
        assert t.has_capacity
        t.current_users = 5
        assert not t.has_capacity

    def test_roundtrip_dict(self):
        t = Tenant.create("t-1", "Acme", plan="professional", domain="acme.io")
        again = Tenant.from_dict(t.to_dict())
        assert again.plan == TenantPlan.PROFESSIONAL
        assert again.domain == "acme.io"
        assert again.created_at == t.created_at


class TestTenantStateMachine:
    @pytest.mark.parametrize(
        "start,target",
        [
            (TenantStatus.TRIAL, TenantStatus.ACTIVE),
            (TenantStatus.TRIAL, TenantStatus.SUSPENDED),
            (TenantStatus.ACTIVE, TenantStatus.SUSPENDED),
            (TenantStatus.SUSPENDED, TenantStatus.ACTIVE),
        ],
    )
    def test_allowed(self, start, target):
        t = Tenant.create("t-1", "Acme")
        t.status = start
        previous = t.transition(target)
        assert previous == start
        assert t.status == target

    @pytest.mark.parametrize(
        "start,target",
        [
            (TenantStatus.ACTIVE, TenantStatus.TRIAL),
            (TenantStatus.ACTIVE, TenantStatus.ACTIVE),
            (TenantStatus.TRIAL, TenantStatus.INACTIVE),
            (TenantStatus.INACTIVE, TenantStatus.ACTIVE),
        ],
    )
    def test_rejected(self, start, target):
        t = Tenant.create("t-1", "Acme")
        t.status = start
        assert not t.can_transition(target)
        with pytest.raises(InvalidTransitionError):
            t.transition(target)
        assert t.status == start

    def test_inactive_is_unreachable(self):
        for targets in ALLOWED_TRANSITIONS.values():
            assert TenantStatus.INACTIVE not in targets


class TestChangePlan:
    def test_upgrade_rederives_max_users(self):
        t = Tenant.create("t-1", "Acme")
        t.change_plan("professional")
        assert t.plan == TenantPlan.PROFESSIONAL
        assert t.max_users == 25
        assert t.settings["plan_history"][-1]["from"] == "basic"
        assert t.settings["plan_history"][-1]["to"] == "professional"

    def test_same_plan_noop(self):
        t = Tenant.create("t-1", "Acme")
        t.change_plan("basic")
        assert "plan_history" not in t.settings


# ===========================================================================
# Quotas
# ===========================================================================

class TestQuotas:
    def test_limits_snapshot(self):
        t = Tenant.create("t-1", "Acme", current_users=4)
        limits = tenant_limits(t)
        assert isinstance(limits, TenantLimits)
        assert limits.can_add_user
        assert limits.usage_percent == 80.0
        assert limits.near_limit
        assert limits.to_dict()["usage_percent"] == 80.0

    def test_zero_quota_is_full(self):
        limits = TenantLimits(tenant_id="t", current_users=0, max_users=0)
        assert limits.usage_percent == 100.0
        assert not limits.can_add_user

    def test_ensure_seat_available_passes(self):
        t = Tenant.create("t-1", "Acme", current_users=1)
        assert ensure_seat_available(t).current_users == 1

    def test_ensure_seat_available_raises_when_full(self):
        t = Tenant.create("t-1", "Acme", current_users=5)
        with pytest.raises(QuotaExceededError) as exc_info:
            ensure_seat_available(t)
        err = exc_info.value
        assert err.tenant_id == "t-1"
        assert err.limit == 5
        assert err.current == 5
        assert err.to_dict()["error"] == "quota_exceeded"
