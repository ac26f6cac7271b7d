"""Storage interface over principals, tenants and audit events.

The persistence engine is an external collaborator. Everything the
engine needs from it is listed here; two implementations ship with the
package (``InMemoryStorage`` and ``SQLAlchemyStorage``).

Contract notes:
    - ``get_*`` return None for unknown ids; ``update_*`` and
      ``delete_tenant`` raise ``NotFoundError``.
    - ``increment_user_count`` is an atomic counter update at the
      storage level, never read-modify-write in the caller.
    - ``delete_events_before`` is a single range delete, safe to run
      while events are being appended.
    - ``transaction()`` makes the enclosed calls all-or-nothing.
    - Persistence problems surface as ``StorageFailure``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, AsyncContextManager, Optional

from tenantguard.audit.events import AuditEvent, AuditFilter
from tenantguard.multitenancy.principal import Principal, Role
from tenantguard.multitenancy.tenant import Tenant


class Storage(ABC):
    """CRUD over the three collections used by tenantguard."""

    # -- principals ---------------------------------------------------------

    @abstractmethod
    async def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    @abstractmethod
    async def find_principal_by_email(self, email: str) -> Optional[Principal]: ...

    @abstractmethod
    async def add_principal(self, principal: Principal) -> Principal: ...

    @abstractmethod
    async def update_principal(self, principal_id: str, **changes: Any) -> Principal: ...

    @abstractmethod
    async def list_principals(
        self,
        tenant_id: Optional[str] = None,
        role: Optional[Role] = None,
        is_active: Optional[bool] = None,
    ) -> list[Principal]: ...

    @abstractmethod
    async def count_active_principals(self, tenant_id: str) -> int: ...

    @abstractmethod
    async def delete_principals_for_tenant(self, tenant_id: str) -> int: ...

    # -- tenants ------------------------------------------------------------

    @abstractmethod
    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    @abstractmethod
    async def add_tenant(self, tenant: Tenant) -> Tenant: ...

    @abstractmethod
    async def update_tenant(self, tenant_id: str, **changes: Any) -> Tenant: ...

    @abstractmethod
    async def delete_tenant(self, tenant_id: str) -> None: ...

    @abstractmethod
    async def list_tenants(self) -> list[Tenant]: ...

    @abstractmethod
    async def increment_user_count(self, tenant_id: str, delta: int) -> int:
        """Atomically add ``delta`` to ``current_users`` and return the new value."""

    # -- audit events -------------------------------------------------------

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> None: ...

    @abstractmethod
    async def query_events(self, audit_filter: AuditFilter) -> list[AuditEvent]:
        """Events matching the filter, newest first, at most ``audit_filter.limit``."""

    @abstractmethod
    async def delete_events_before(self, cutoff: datetime) -> int:
        """Range-delete events with ``timestamp < cutoff``; return the count."""

    # -- transactions -------------------------------------------------------

    @abstractmethod
    def transaction(self) -> AsyncContextManager[None]: ...
