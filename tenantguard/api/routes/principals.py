"""Principal account endpoints."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from tenantguard.api.dependencies import get_lifecycle, get_principal
from tenantguard.multitenancy.lifecycle import TenantLifecycleManager
from tenantguard.multitenancy.principal import Principal, Role

router = APIRouter(prefix="/api/principals", tags=["principals"])


class RoleChange(BaseModel):
    role: Role
    tenant_id: Optional[str] = None


@router.post("/{principal_id}/deactivate")
async def deactivate_principal(
    principal_id: str,
    principal: Optional[Principal] = Depends(get_principal),
    lifecycle: TenantLifecycleManager = Depends(get_lifecycle),
) -> dict:
    updated = await lifecycle.deactivate_principal(principal, principal_id)
    return updated.to_dict()


@router.post("/{principal_id}/reactivate")
async def reactivate_principal(
    principal_id: str,
    principal: Optional[Principal] = Depends(get_principal),
    lifecycle: TenantLifecycleManager = Depends(get_lifecycle),
) -> dict:
    updated = await lifecycle.reactivate_principal(principal, principal_id)
    return updated.to_dict()


@router.put("/{principal_id}/role")
async def change_role(
    principal_id: str,
    body: RoleChange,
    principal: Optional[Principal] = Depends(get_principal),
    lifecycle: TenantLifecycleManager = Depends(get_lifecycle),
) -> dict:
    """Master only: move an account between roles and tenants."""
    updated = await lifecycle.change_principal_role(
        principal, principal_id, body.role, body.tenant_id
    )
    return updated.to_dict()
