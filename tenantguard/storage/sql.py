"""SQLAlchemy storage backend.

Implements ``Storage`` on the async SQLAlchemy ORM. Each call runs in
its own session and transaction unless a ``transaction()`` block is
open in the current task, in which case every call inside the block
shares that block's session and commits or rolls back with it.

Every ``SQLAlchemyError`` is re-raised as ``StorageFailure`` so that a
database outage can never be mistaken for a deny.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantguard.audit.events import AuditContext, AuditEvent, AuditFilter
from tenantguard.exceptions import DuplicatePrincipalError, NotFoundError, StorageFailure
from tenantguard.models.tenant import AuditEventRecord, PrincipalRecord, TenantRecord
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

# (id of the store, session) of the transaction open in the current task
_current_session: ContextVar[Optional[tuple[int, AsyncSession]]] = ContextVar(
    "sql_storage_session", default=None
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _value(obj: Any) -> Any:
    """Enum members are stored by value."""
    return getattr(obj, "value", obj)


# ---------------------------------------------------------------------------
# Record <-> domain conversion
# ---------------------------------------------------------------------------


def _principal_from_record(row: PrincipalRecord) -> Principal:
    return Principal(
        id=row.id,
        email=row.email,
        role=row.role,
        tenant_id=row.tenant_id,
        display_name=row.display_name or "",
        is_active=row.is_active,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _tenant_from_record(row: TenantRecord) -> Tenant:
    return Tenant(
        id=row.id,
        name=row.name,
        plan=row.plan,
        max_users=row.max_users,
        current_users=row.current_users,
        status=row.status,
        domain=row.domain,
        admin_principal_id=row.admin_principal_id,
        settings=dict(row.settings or {}),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _event_from_record(row: AuditEventRecord) -> AuditEvent:
    return AuditEvent(
        id=row.id,
        timestamp=row.timestamp,
        principal_id=row.principal_id,
        event_kind=row.event_kind,
        resource_type=row.resource_type,
        resource_id=row.resource_id,
        old_data=row.old_data,
        new_data=row.new_data,
        context=AuditContext(ip=row.ip, user_agent=row.user_agent, url=row.url),
    )


class SQLAlchemyStorage(Storage):
    """Relational store for principals, tenants and audit events.

    Args:
        session_factory: ``async_sessionmaker`` bound to the engine,
            usually ``tenantguard.db.async_session``.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        current = _current_session.get()
        if current is not None and current[0] == id(self):
            try:
                yield current[1]
            except SQLAlchemyError as exc:
                logger.error("Storage operation %s failed: %s", operation, exc)
                raise StorageFailure(f"{operation} failed: {exc}", operation=operation) from exc
            return

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as exc:
            logger.error("Storage operation %s failed: %s", operation, exc)
            raise StorageFailure(f"{operation} failed: {exc}", operation=operation) from exc

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        current = _current_session.get()
        if current is not None and current[0] == id(self):
            yield
            return

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    token = _current_session.set((id(self), session))
                    try:
                        yield
                    finally:
                        _current_session.reset(token)
        except SQLAlchemyError as exc:
            logger.error("Storage transaction failed: %s", exc)
            raise StorageFailure(f"transaction failed: {exc}", operation="transaction") from exc

    # ------------------------------------------------------------------
    # Principals
    # ------------------------------------------------------------------

    async def get_principal(self, principal_id: str) -> Optional[Principal]:
        async with self._session("get_principal") as session:
            row = await session.get(PrincipalRecord, principal_id)
            return _principal_from_record(row) if row is not None else None

    async def find_principal_by_email(self, email: str) -> Optional[Principal]:
        stmt = select(PrincipalRecord).where(
            func.lower(PrincipalRecord.email) == email.strip().lower()
        )
        async with self._session("find_principal_by_email") as session:
            result = await session.execute(stmt)
            row = result.scalars().first()
            return _principal_from_record(row) if row is not None else None

    async def add_principal(self, principal: Principal) -> Principal:
        row = PrincipalRecord(
            id=principal.id,
            email=principal.email,
            display_name=principal.display_name,
            role=_value(principal.role),
            tenant_id=principal.tenant_id,
            is_active=principal.is_active,
            created_at=principal.created_at,
            updated_at=principal.updated_at,
        )
        async with self._session("add_principal") as session:
            session.add(row)
            try:
                await session.flush()
            except IntegrityError as exc:
                if "email" in str(exc.orig).lower():
                    raise DuplicatePrincipalError(principal.email) from exc
                raise ValueError(f"Principal {principal.id!r} conflicts with an existing record") from exc
        return principal

    async def update_principal(self, principal_id: str, **changes: Any) -> Principal:
        unknown = set(changes) - _PRINCIPAL_FIELDS
        if unknown:
            raise AttributeError(f"Principal has no updatable attribute {sorted(unknown)[0]!r}")
        async with self._session("update_principal") as session:
            row = await session.get(PrincipalRecord, principal_id)
            if row is None:
                raise NotFoundError("principal", principal_id)
            for key, value in changes.items():
                setattr(row, key, _value(Role.coerce(value)) if key == "role" else value)
            row.updated_at = _utcnow()
            await session.flush()
            return _principal_from_record(row)

    async def list_principals(
        self,
        tenant_id: Optional[str] = None,
        role: Optional[Role] = None,
        is_active: Optional[bool] = None,
    ) -> list[Principal]:
        stmt = select(PrincipalRecord)
        if tenant_id is not None:
            stmt = stmt.where(PrincipalRecord.tenant_id == tenant_id)
        if role is not None:
            stmt = stmt.where(PrincipalRecord.role == _value(role))
        if is_active is not None:
            stmt = stmt.where(PrincipalRecord.is_active == is_active)
        stmt = stmt.order_by(PrincipalRecord.created_at)
        async with self._session("list_principals") as session:
            result = await session.execute(stmt)
            return [_principal_from_record(r) for r in result.scalars().all()]

    async def count_active_principals(self, tenant_id: str) -> int:
        stmt = (
            select(func.count())
            .select_from(PrincipalRecord)
            .where(PrincipalRecord.tenant_id == tenant_id, PrincipalRecord.is_active.is_(True))
        )
        async with self._session("count_active_principals") as session:
            result = await session.execute(stmt)
            return int(result.scalar_one())

    async def delete_principals_for_tenant(self, tenant_id: str) -> int:
        stmt = delete(PrincipalRecord).where(PrincipalRecord.tenant_id == tenant_id)
        async with self._session("delete_principals_for_tenant") as session:
            result = await session.execute(stmt)
            return result.rowcount or 0

    # ------------------------------------------------------------------
    # Tenants
    # ------------------------------------------------------------------

    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        async with self._session("get_tenant") as session:
            row = await session.get(TenantRecord, tenant_id)
            return _tenant_from_record(row) if row is not None else None

    async def add_tenant(self, tenant: Tenant) -> Tenant:
        row = TenantRecord(
            id=tenant.id,
            name=tenant.name,
            domain=tenant.domain,
            status=tenant.status.value,
            plan=tenant.plan.value,
            max_users=tenant.max_users,
            current_users=tenant.current_users,
            admin_principal_id=tenant.admin_principal_id,
            settings=tenant.settings,
            created_at=tenant.created_at,
            updated_at=tenant.updated_at,
        )
        async with self._session("add_tenant") as session:
            session.add(row)
            try:
                await session.flush()
            except IntegrityError as exc:
                raise ValueError(f"Tenant {tenant.id!r} already exists") from exc
        return tenant

    async def update_tenant(self, tenant_id: str, **changes: Any) -> Tenant:
        unknown = set(changes) - _TENANT_FIELDS
        if unknown:
            raise AttributeError(f"Tenant has no updatable attribute {sorted(unknown)[0]!r}")
        async with self._session("update_tenant") as session:
            row = await session.get(TenantRecord, tenant_id)
            if row is None:
                raise NotFoundError("tenant", tenant_id)
            for key, value in changes.items():
                setattr(row, key, _value(value))
            row.updated_at = _utcnow()
            await session.flush()
            return _tenant_from_record(row)

    async def delete_tenant(self, tenant_id: str) -> None:
        async with self._session("delete_tenant") as session:
            row = await session.get(TenantRecord, tenant_id)
            if row is None:
                raise NotFoundError("tenant", tenant_id)
            await session.delete(row)
            await session.flush()

    async def list_tenants(self) -> list[Tenant]:
        stmt = select(TenantRecord).order_by(TenantRecord.created_at.desc())
        async with self._session("list_tenants") as session:
            result = await session.execute(stmt)
            return [_tenant_from_record(r) for r in result.scalars().all()]

    async def increment_user_count(self, tenant_id: str, delta: int) -> int:
        new_value = TenantRecord.current_users + delta
        stmt = (
            update(TenantRecord)
            .where(TenantRecord.id == tenant_id)
            .values(
                current_users=case((new_value < 0, 0), else_=new_value),
                updated_at=_utcnow(),
            )
            .returning(TenantRecord.current_users)
        )
        async with self._session("increment_user_count") as session:
            result = await session.execute(stmt)
            value = result.scalar_one_or_none()
            if value is None:
                raise NotFoundError("tenant", tenant_id)
            return int(value)

    # ------------------------------------------------------------------
    # Audit events
    # ------------------------------------------------------------------

    async def append_event(self, event: AuditEvent) -> None:
        row = AuditEventRecord(
            id=event.id,
            timestamp=event.timestamp,
            principal_id=event.principal_id,
            event_kind=event.event_kind.value,
            resource_type=event.resource_type,
            resource_id=event.resource_id,
            old_data=event.old_data,
            new_data=event.new_data,
            ip=event.context.ip,
            user_agent=event.context.user_agent,
            url=event.context.url,
        )
        async with self._session("append_event") as session:
            session.add(row)
            await session.flush()

    async def query_events(self, audit_filter: AuditFilter) -> list[AuditEvent]:
        stmt = select(AuditEventRecord)
        if audit_filter.principal_id is not None:
            stmt = stmt.where(AuditEventRecord.principal_id == audit_filter.principal_id)
        if audit_filter.event_kind is not None:
            stmt = stmt.where(AuditEventRecord.event_kind == audit_filter.event_kind.value)
        if audit_filter.resource_type is not None:
            stmt = stmt.where(AuditEventRecord.resource_type == audit_filter.resource_type)
        if audit_filter.resource_id is not None:
            stmt = stmt.where(AuditEventRecord.resource_id == audit_filter.resource_id)
        if audit_filter.date_from is not None:
            stmt = stmt.where(AuditEventRecord.timestamp >= audit_filter.date_from)
        if audit_filter.date_to is not None:
            stmt = stmt.where(AuditEventRecord.timestamp <= audit_filter.date_to)
        if audit_filter.search:
            term = f"%{audit_filter.search.lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(AuditEventRecord.event_kind).like(term),
                    func.lower(AuditEventRecord.resource_type).like(term),
                )
            )
        stmt = stmt.order_by(AuditEventRecord.timestamp.desc())
        if audit_filter.limit is not None:
            stmt = stmt.limit(audit_filter.limit)

        async with self._session("query_events") as session:
            result = await session.execute(stmt)
            return [_event_from_record(r) for r in result.scalars().all()]

    async def delete_events_before(self, cutoff: datetime) -> int:
        stmt = delete(AuditEventRecord).where(AuditEventRecord.timestamp < cutoff)
        async with self._session("delete_events_before") as session:
            result = await session.execute(stmt)
            return result.rowcount or 0

    def __repr__(self) -> str:
        return f"<SQLAlchemyStorage {self._session_factory!r}>"
