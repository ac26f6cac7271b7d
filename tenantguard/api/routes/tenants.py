"""Tenant administration endpoints."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from tenantguard.api.dependencies import get_lifecycle, get_principal
from tenantguard.multitenancy.lifecycle import TenantLifecycleManager
from tenantguard.multitenancy.principal import Principal, Role
from tenantguard.multitenancy.tenant import TenantPlan

router = APIRouter(prefix="/api/tenants", tags=["tenants"])


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class TenantCreate(BaseModel):
    name: str = Field(..., min_length=1)
    plan: TenantPlan = TenantPlan.BASIC
    admin_email: str
    admin_credential: str = Field(..., min_length=1)
    domain: Optional[str] = None
    admin_display_name: str = "Administrator"


class TenantUpdate(BaseModel):
    name: Optional[str] = None
    domain: Optional[str] = None
    plan: Optional[TenantPlan] = None
    settings: Optional[dict[str, Any]] = None


class SuspendPayload(BaseModel):
    reason: Optional[str] = None


class PrincipalCreate(BaseModel):
    email: str
    display_name: str = ""
    role: Role = Role.USER
    credential: Optional[str] = None


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("")
async def list_tenants(
    principal: Optional[Principal] = Depends(get_principal),
    lifecycle: TenantLifecycleManager = Depends(get_lifecycle),
) -> list[dict]:
    tenants = await lifecycle.list_tenants(principal)
    return [t.to_dict() for t in tenants]


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_tenant(
    payload: TenantCreate,
    principal: Optional[Principal] = Depends(get_principal),
    lifecycle: TenantLifecycleManager = Depends(get_lifecycle),
) -> dict:
    tenant = await lifecycle.create_tenant(
        principal,
        payload.name,
        payload.plan,
        payload.admin_email,
        payload.admin_credential,
        domain=payload.domain,
        admin_display_name=payload.admin_display_name,
    )
    return tenant.to_dict()


@router.get("/metrics")
async def system_metrics(
    principal: Optional[Principal] = Depends(get_principal),
    lifecycle: TenantLifecycleManager = Depends(get_lifecycle),
) -> dict:
    metrics = await lifecycle.system_metrics(principal)
    return metrics.to_dict()


@router.get("/{tenant_id}")
async def get_tenant(
    tenant_id: str,
    principal: Optional[Principal] = Depends(get_principal),
    lifecycle: TenantLifecycleManager = Depends(get_lifecycle),
) -> dict:
    tenant = await lifecycle.get_tenant(principal, tenant_id)
    return tenant.to_dict()


@router.patch("/{tenant_id}")
async def update_tenant(
    tenant_id: str,
    payload: TenantUpdate,
    principal: Optional[Principal] = Depends(get_principal),
    lifecycle: TenantLifecycleManager = Depends(get_lifecycle),
) -> dict:
    changes = payload.model_dump(exclude_unset=True)
    tenant = await lifecycle.update_tenant(principal, tenant_id, **changes)
    return tenant.to_dict()


@router.delete("/{tenant_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_tenant(
    tenant_id: str,
    principal: Optional[Principal] = Depends(get_principal),
    lifecycle: TenantLifecycleManager = Depends(get_lifecycle),
) -> None:
    await lifecycle.delete_tenant(principal, tenant_id)


@router.post("/{tenant_id}/suspend")
async def suspend_tenant(
    tenant_id: str,
    payload: SuspendPayload | None = None,
    principal: Optional[Principal] = Depends(get_principal),
    lifecycle: TenantLifecycleManager = Depends(get_lifecycle),
) -> dict:
    reason = payload.reason if payload else None
    tenant = await lifecycle.suspend_tenant(principal, tenant_id, reason=reason)
    return tenant.to_dict()


@router.post("/{tenant_id}/activate")
async def activate_tenant(
    tenant_id: str,
    principal: Optional[Principal] = Depends(get_principal),
    lifecycle: TenantLifecycleManager = Depends(get_lifecycle),
) -> dict:
    tenant = await lifecycle.activate_tenant(principal, tenant_id)
    return tenant.to_dict()


@router.post("/{tenant_id}/recount")
async def recount_users(
    tenant_id: str,
    principal: Optional[Principal] = Depends(get_principal),
    lifecycle: TenantLifecycleManager = Depends(get_lifecycle),
) -> dict:
    await lifecycle.get_tenant(principal, tenant_id)
    current = await lifecycle.recompute_user_count(tenant_id)
    return {"tenant_id": tenant_id, "current_users": current}


@router.get("/{tenant_id}/limits")
async def tenant_limits(
    tenant_id: str,
    principal: Optional[Principal] = Depends(get_principal),
    lifecycle: TenantLifecycleManager = Depends(get_lifecycle),
) -> dict:
    await lifecycle.get_tenant(principal, tenant_id)
    limits = await lifecycle.check_tenant_limits(tenant_id)
    return limits.to_dict()


@router.post("/{tenant_id}/principals", status_code=status.HTTP_201_CREATED)
async def provision_principal(
    tenant_id: str,
    payload: PrincipalCreate,
    principal: Optional[Principal] = Depends(get_principal),
    lifecycle: TenantLifecycleManager = Depends(get_lifecycle),
) -> dict:
    created = await lifecycle.provision_principal(
        principal,
        tenant_id,
        payload.email,
        payload.display_name,
        role=payload.role,
        credential=payload.credential,
    )
    return created.to_dict()
