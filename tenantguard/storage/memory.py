"""In-memory storage backend.

Dict-backed implementation of ``Storage`` for tests, local tooling and
embedding. Records are copied on the way in and out so callers can never
mutate stored state by accident.

Thread Safety:
    Intended for a single asyncio event loop. Counter updates and range
    deletes run under an asyncio lock; transactions are serialized and
    roll back by restoring a snapshot of principals and tenants. Audit
    events are append-only and are not part of the snapshot.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

from tenantguard.audit.events import AuditEvent, AuditFilter
from tenantguard.exceptions import DuplicatePrincipalError, NotFoundError
from tenantguard.multitenancy.principal import Principal, Role
from tenantguard.multitenancy.tenant import Tenant
from tenantguard.storage.base import Storage

logger = logging.getLogger(__name__)

_PRINCIPAL_FIELDS = {"display_name", "email", "role", "tenant_id", "is_active"}
_TENANT_FIELDS = {
    "name",
    "domain",
    "status",
    "plan",
    "max_users",
    "current_users",
    "admin_principal_id",
    "settings",
}


# ids of the stores with an open transaction in the current task
_active_transactions: ContextVar[frozenset[int]] = ContextVar(
    "memory_storage_transactions", default=frozenset()
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryStorage(Storage):
    """Dict-backed store for principals, tenants and audit events."""

    def __init__(self) -> None:
        self._principals: dict[str, Principal] = {}
        self._tenants: dict[str, Tenant] = {}
        self._events: list[AuditEvent] = []
        self._lock = asyncio.Lock()
        self._tx_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Principals
    # ------------------------------------------------------------------

    async def get_principal(self, principal_id: str) -> Optional[Principal]:
        principal = self._principals.get(principal_id)
        return copy.deepcopy(principal) if principal else None

    async def find_principal_by_email(self, email: str) -> Optional[Principal]:
        needle = email.strip().lower()
        for principal in self._principals.values():
            if principal.email.lower() == needle:
                return copy.deepcopy(principal)
        return None

    async def add_principal(self, principal: Principal) -> Principal:
        if principal.id in self._principals:
            raise ValueError(f"Principal {principal.id!r} already exists")
        if await self.find_principal_by_email(principal.email) is not None:
            raise DuplicatePrincipalError(principal.email)
        self._principals[principal.id] = copy.deepcopy(principal)
        return copy.deepcopy(principal)

    async def update_principal(self, principal_id: str, **changes: Any) -> Principal:
        principal = self._principals.get(principal_id)
        if principal is None:
            raise NotFoundError("principal", principal_id)
        for key, value in changes.items():
            if key not in _PRINCIPAL_FIELDS:
                raise AttributeError(f"Principal has no updatable attribute {key!r}")
            setattr(principal, key, Role.coerce(value) if key == "role" else value)
        principal.updated_at = _utcnow()
        return copy.deepcopy(principal)

    async def list_principals(
        self,
        tenant_id: Optional[str] = None,
        role: Optional[Role] = None,
        is_active: Optional[bool] = None,
    ) -> list[Principal]:
        principals = list(self._principals.values())
        if tenant_id is not None:
            principals = [p for p in principals if p.tenant_id == tenant_id]
        if role is not None:
            principals = [p for p in principals if p.role == role]
        if is_active is not None:
            principals = [p for p in principals if p.is_active == is_active]
        return [copy.deepcopy(p) for p in sorted(principals, key=lambda p: p.created_at)]

    async def count_active_principals(self, tenant_id: str) -> int:
        return sum(
            1 for p in self._principals.values()
            if p.tenant_id == tenant_id and p.is_active
        )

    async def delete_principals_for_tenant(self, tenant_id: str) -> int:
        doomed = [pid for pid, p in self._principals.items() if p.tenant_id == tenant_id]
        for pid in doomed:
            del self._principals[pid]
        return len(doomed)

    # ------------------------------------------------------------------
    # Tenants
    # ------------------------------------------------------------------

    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        tenant = self._tenants.get(tenant_id)
        return copy.deepcopy(tenant) if tenant else None

    async def add_tenant(self, tenant: Tenant) -> Tenant:
        if tenant.id in self._tenants:
            raise ValueError(f"Tenant {tenant.id!r} already exists")
        self._tenants[tenant.id] = copy.deepcopy(tenant)
        return copy.deepcopy(tenant)

    async def update_tenant(self, tenant_id: str, **changes: Any) -> Tenant:
        tenant = self._tenants.get(tenant_id)
        if tenant is None:
            raise NotFoundError("tenant", tenant_id)
        for key, value in changes.items():
            if key not in _TENANT_FIELDS:
                raise AttributeError(f"Tenant has no updatable attribute {key!r}")
            setattr(tenant, key, copy.deepcopy(value))
        tenant.updated_at = _utcnow()
        return copy.deepcopy(tenant)

    async def delete_tenant(self, tenant_id: str) -> None:
        if self._tenants.pop(tenant_id, None) is None:
            raise NotFoundError("tenant", tenant_id)

    async def list_tenants(self) -> list[Tenant]:
        tenants = sorted(self._tenants.values(), key=lambda t: t.created_at, reverse=True)
        return [copy.deepcopy(t) for t in tenants]

    async def increment_user_count(self, tenant_id: str, delta: int) -> int:
        async with self._lock:
            tenant = self._tenants.get(tenant_id)
            if tenant is None:
                raise NotFoundError("tenant", tenant_id)
            tenant.current_users = max(0, tenant.current_users + delta)
            tenant.updated_at = _utcnow()
            return tenant.current_users

    # ------------------------------------------------------------------
    # Audit events
    # ------------------------------------------------------------------

    async def append_event(self, event: AuditEvent) -> None:
        self._events.append(event)

    async def query_events(self, audit_filter: AuditFilter) -> list[AuditEvent]:
        matched = [e for e in self._events if audit_filter.matches(e)]
        matched.sort(key=lambda e: e.timestamp, reverse=True)
        if audit_filter.limit is not None:
            matched = matched[: audit_filter.limit]
        return matched

    async def delete_events_before(self, cutoff: datetime) -> int:
        async with self._lock:
            before = len(self._events)
            self._events = [e for e in self._events if e.timestamp >= cutoff]
            return before - len(self._events)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        active = _active_transactions.get()
        if id(self) in active:
            # Nested: the outermost transaction owns the snapshot.
            yield
            return

        async with self._tx_lock:
            snapshot = (copy.deepcopy(self._principals), copy.deepcopy(self._tenants))
            token = _active_transactions.set(active | {id(self)})
            try:
                yield
            except BaseException:
                self._principals, self._tenants = snapshot
                logger.debug("In-memory transaction rolled back")
                raise
            finally:
                _active_transactions.reset(token)

    def __repr__(self) -> str:
        return (
            f"<InMemoryStorage principals={len(self._principals)} "
            f"tenants={len(self._tenants)} events={len(self._events)}>"
        )
