"""FastAPI dependencies.

The acting principal is put on ``request.state.principal`` by the
identity layer in front of this service (after it has verified the
credentials). It may be a ``Principal`` or the provider's raw
``{id, email, role, tenantId}`` payload. A missing principal is passed
on as None so the decision engine can deny and audit it.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import Request

from tenantguard.audit.log import AuditLog
from tenantguard.multitenancy.lifecycle import TenantLifecycleManager
from tenantguard.multitenancy.principal import Principal


def get_principal(request: Request) -> Optional[Principal]:
    raw: Any = getattr(request.state, "principal", None)
    if raw is None or isinstance(raw, Principal):
        return raw
    return Principal.from_dict(raw)


def get_lifecycle(request: Request) -> TenantLifecycleManager:
    return request.app.state.lifecycle


def get_audit_log(request: Request) -> AuditLog:
    return request.app.state.audit_log
