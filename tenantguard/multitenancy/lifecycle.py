"""
Tenant lifecycle management.

``TenantLifecycleManager`` orchestrates tenant CRUD, status changes and
principal provisioning. Every operation:

1. takes the calling principal explicitly,
2. asks the decision engine before touching storage and turns a deny
   into ``AuthenticationMissing``, ``IsolationViolation`` or
   ``AccessDenied`` (the engine has already audited it),
3. records an audit event for the state change, on success and on
   failure alike.

Audit events are written after the storage transaction has finished,
so a failed change still leaves a record and an audit problem can never
revert a change.

Example:
    from tenantguard.multitenancy.lifecycle import TenantLifecycleManager

    lifecycle = TenantLifecycleManager(storage, engine, audit_log)
    tenant = await lifecycle.create_tenant(
        master, "Acme", "basic", "admin@acme.com", "s3cret"
    )
    await lifecycle.suspend_tenant(master, tenant.id, reason="unpaid invoice")
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Mapping, Optional, Protocol

from tenantguard.audit.events import EventKind
from tenantguard.audit.log import AuditLog
from tenantguard.config.settings import settings
from tenantguard.exceptions import (
    AccessDenied,
    AuthenticationMissing,
    AuthorizationError,
    DuplicatePrincipalError,
    IsolationViolation,
    NotFoundError,
)
from tenantguard.multitenancy.principal import (
    TENANT_ROLES,
    Principal,
    Role,
    is_master_valid,
)
from tenantguard.multitenancy.quotas import (
    TenantLimits,
    ensure_seat_available,
    tenant_limits,
)
from tenantguard.multitenancy.tenant import (
    PLAN_DEFAULTS,
    Tenant,
    TenantPlan,
    TenantStatus,
)
from tenantguard.security.authorization import AuthorizationEngine
from tenantguard.storage.base import Storage

logger = logging.getLogger(__name__)

UPDATABLE_TENANT_FIELDS = frozenset({"name", "domain", "plan", "settings"})


class CredentialRegistrar(Protocol):
    """External credential store (identity provider).

    The credential itself never reaches tenantguard's storage or logs.
    """

    async def register(self, principal_id: str, email: str, credential: str) -> None:
        """Create login credentials for a new principal."""
        ...

    async def revoke(self, principal_id: str) -> None:
        """Remove credentials created by ``register``."""
        ...


@dataclass(frozen=True)
class SystemMetrics:
    """Platform-wide tenant figures for master operators."""

    total_tenants: int
    active_tenants: int
    trial_tenants: int
    suspended_tenants: int
    total_principals: int
    monthly_revenue: int
    health: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_tenants": self.total_tenants,
            "active_tenants": self.active_tenants,
            "trial_tenants": self.trial_tenants,
            "suspended_tenants": self.suspended_tenants,
            "total_principals": self.total_principals,
            "monthly_revenue": self.monthly_revenue,
            "health": self.health,
        }


def health_band(active: int, total: int) -> str:
    """Classify the share of active tenants."""
    if total == 0:
        return "excellent"
    ratio = active / total
    if ratio < 0.5:
        return "critical"
    if ratio < 0.7:
        return "warning"
    if ratio < 0.9:
        return "good"
    return "excellent"


def _new_id() -> str:
    return str(uuid.uuid4())


class TenantLifecycleManager:
    """Authorized, audited tenant and principal lifecycle operations.

    Attributes:
        storage: Persistence for tenants and principals.
        engine: Decision engine consulted before every storage access.
        audit_log: Where lifecycle events are recorded.
        registrar: Optional external credential store.
        quotas: Seat quotas per plan value (``Settings.PLAN_QUOTAS``).
    """

    def __init__(
        self,
        storage: Storage,
        engine: AuthorizationEngine,
        audit_log: AuditLog,
        registrar: Optional[CredentialRegistrar] = None,
        quotas: Optional[Mapping[str, int]] = None,
        id_factory: Callable[[], str] = _new_id,
    ) -> None:
        self.storage = storage
        self.engine = engine
        self.audit_log = audit_log
        self.registrar = registrar
        self.quotas = dict(quotas) if quotas is not None else dict(settings.PLAN_QUOTAS)
        self._new_id = id_factory

    # ------------------------------------------------------------------
    # Authorization helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _denial(caller: Optional[Principal], operation: str) -> AuthorizationError:
        if caller is None:
            return AuthenticationMissing(
                f"{operation} requires an authenticated principal", operation=operation
            )
        if caller.role == Role.MASTER and not is_master_valid(caller):
            return IsolationViolation(
                "Master principal carries a tenant binding",
                principal_id=caller.id,
                operation=operation,
            )
        return AccessDenied(
            f"Principal {caller.id} may not perform {operation}",
            principal_id=caller.id,
            operation=operation,
        )

    async def _authorize(
        self,
        caller: Optional[Principal],
        operation: str,
        target_tenant_id: Optional[str] = None,
        *,
        require_role: Optional[Role] = None,
    ) -> Principal:
        allowed = await self.engine.enforce_isolation(caller, operation, target_tenant_id)
        if not allowed or caller is None:
            raise self._denial(caller, operation)

        if require_role is not None and caller.role != require_role:
            await self.audit_log.log_action(
                EventKind.ACCESS_DENIED,
                "operation",
                operation,
                old_data={"tenant_id": caller.tenant_id},
                new_data={"operation": operation, "required_role": require_role.value},
                principal_id=caller.id,
            )
            raise self._denial(caller, operation)
        return caller

    @asynccontextmanager
    async def _audited(
        self,
        kind: EventKind,
        caller: Optional[Principal],
        resource_type: str,
        resource_id: Optional[str],
    ) -> AsyncIterator[None]:
        """Record a failure event if the enclosed change raises."""
        try:
            yield
        except Exception as exc:
            logger.warning(
                "%s %s %s failed: %s", kind.value, resource_type, resource_id, exc
            )
            await self.audit_log.log_action(
                kind,
                resource_type,
                resource_id,
                new_data={
                    "outcome": "failure",
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                },
                principal_id=caller.id if caller is not None else None,
            )
            raise

    async def _load_tenant(self, tenant_id: str) -> Tenant:
        tenant = await self.storage.get_tenant(tenant_id)
        if tenant is None:
            raise NotFoundError("tenant", tenant_id)
        return tenant

    async def _register_credential(
        self, principal_id: str, email: str, credential: Optional[str]
    ) -> bool:
        if self.registrar is None or credential is None:
            return False
        await self.registrar.register(principal_id, email, credential)
        return True

    async def _revoke_credential(self, principal_id: str) -> None:
        if self.registrar is None:
            return
        try:
            await self.registrar.revoke(principal_id)
        except Exception:
            logger.exception("Could not revoke credentials of %s after rollback", principal_id)

    # ------------------------------------------------------------------
    # Tenant CRUD
    # ------------------------------------------------------------------

    async def create_tenant(
        self,
        caller: Optional[Principal],
        name: str,
        plan: TenantPlan | str,
        admin_email: str,
        admin_credential: str,
        domain: Optional[str] = None,
        admin_display_name: str = "Administrator",
    ) -> Tenant:
        """Create a tenant together with its first admin principal.

        The tenant row and the admin principal are written in one storage
        transaction. If either fails, neither exists afterwards and any
        credential registered for the admin is revoked.

        Args:
            caller: Must be a valid master.
            name: Organization name.
            plan: Subscription plan; sets ``max_users``.
            admin_email: Login of the admin principal.
            admin_credential: Initial credential, handed to the registrar only.
            domain: Optional custom domain.
            admin_display_name: Display name of the admin principal.

        Returns:
            The created tenant (``status=trial``, ``current_users=1``).

        Raises:
            AuthorizationError: The caller may not create tenants.
            DuplicatePrincipalError: admin_email is already in use.
            ValueError: Invalid name, plan, e-mail or credential.
            StorageFailure: The store rejected the transaction.
        """
        caller = await self._authorize(caller, "create_tenant", require_role=Role.MASTER)
        tenant_id = self._new_id()
        admin_id = self._new_id()

        async with self._audited(EventKind.CREATE, caller, "tenant", tenant_id):
            if not name or not name.strip():
                raise ValueError("Tenant name cannot be empty")
            plan = TenantPlan(plan)
            email = (admin_email or "").strip().lower()
            if "@" not in email:
                raise ValueError(f"Invalid admin e-mail {admin_email!r}")
            if not admin_credential:
                raise ValueError("Admin credential cannot be empty")
            if await self.storage.find_principal_by_email(email) is not None:
                raise DuplicatePrincipalError(email)

            registered = await self._register_credential(admin_id, email, admin_credential)
            try:
                async with self.storage.transaction():
                    tenant = await self.storage.add_tenant(
                        Tenant.create(
                            tenant_id,
                            name.strip(),
                            plan=plan,
                            quotas=self.quotas,
                            domain=domain,
                            admin_principal_id=admin_id,
                            current_users=1,
                        )
                    )
                    admin = await self.storage.add_principal(
                        Principal(
                            id=admin_id,
                            email=email,
                            role=Role.ADMIN,
                            tenant_id=tenant_id,
                            display_name=admin_display_name,
                        )
                    )
            except Exception:
                if registered:
                    await self._revoke_credential(admin_id)
                raise

        logger.info("Created tenant %s (%s, %s) with admin %s", tenant.id, tenant.name, plan.value, admin.id)
        await self.audit_log.log_create("tenant", tenant.id, tenant.to_dict(), principal_id=caller.id)
        await self.audit_log.log_create("principal", admin.id, admin.to_dict(), principal_id=caller.id)
        return tenant

    async def update_tenant(
        self, caller: Optional[Principal], tenant_id: str, **changes: Any
    ) -> Tenant:
        """Update name, domain, plan or settings of a tenant.

        A plan change re-derives ``max_users``. ``settings`` is merged
        into the existing settings. Status changes go through
        ``suspend_tenant`` / ``activate_tenant``.

        Raises:
            AuthorizationError: The caller may not update tenants.
            NotFoundError: Unknown tenant.
            ValueError: Unknown or invalid field.
        """
        caller = await self._authorize(caller, "update_tenant", tenant_id, require_role=Role.MASTER)

        async with self._audited(EventKind.UPDATE, caller, "tenant", tenant_id):
            unknown = set(changes) - UPDATABLE_TENANT_FIELDS
            if unknown:
                raise ValueError(f"Cannot update tenant field(s): {', '.join(sorted(unknown))}")

            tenant = await self._load_tenant(tenant_id)
            if not changes:
                return tenant
            before = tenant.to_dict()

            if "name" in changes:
                name = changes["name"]
                if not name or not str(name).strip():
                    raise ValueError("Tenant name cannot be empty")
                tenant.name = str(name).strip()
            if "domain" in changes:
                tenant.domain = changes["domain"] or None
            if "settings" in changes:
                tenant.settings = {**tenant.settings, **(changes["settings"] or {})}
            if "plan" in changes:
                tenant.change_plan(changes["plan"], self.quotas)

            updated = await self.storage.update_tenant(
                tenant_id,
                name=tenant.name,
                domain=tenant.domain,
                plan=tenant.plan,
                max_users=tenant.max_users,
                settings=tenant.settings,
            )

        await self.audit_log.log_update(
            "tenant", tenant_id, before, updated.to_dict(), principal_id=caller.id
        )
        return updated

    async def delete_tenant(self, caller: Optional[Principal], tenant_id: str) -> None:
        """Delete a tenant and every principal bound to it.

        Raises:
            AuthorizationError: The caller may not delete tenants.
            NotFoundError: Unknown tenant.
        """
        caller = await self._authorize(caller, "delete_tenant", tenant_id, require_role=Role.MASTER)

        async with self._audited(EventKind.DELETE, caller, "tenant", tenant_id):
            tenant = await self._load_tenant(tenant_id)
            async with self.storage.transaction():
                removed = await self.storage.delete_principals_for_tenant(tenant_id)
                await self.storage.delete_tenant(tenant_id)

        logger.info("Deleted tenant %s and %d principals", tenant_id, removed)
        await self.audit_log.log_delete(
            "tenant",
            tenant_id,
            {**tenant.to_dict(), "principals_removed": removed},
            principal_id=caller.id,
        )

    async def suspend_tenant(
        self, caller: Optional[Principal], tenant_id: str, reason: Optional[str] = None
    ) -> Tenant:
        """Lock a tenant out. Audited as ``suspend``."""
        return await self._change_status(
            caller, tenant_id, TenantStatus.SUSPENDED, EventKind.SUSPEND, reason
        )

    async def activate_tenant(self, caller: Optional[Principal], tenant_id: str) -> Tenant:
        """Activate a trial tenant or reactivate a suspended one. Audited as ``activate``."""
        return await self._change_status(
            caller, tenant_id, TenantStatus.ACTIVE, EventKind.ACTIVATE
        )

    async def _change_status(
        self,
        caller: Optional[Principal],
        tenant_id: str,
        to_status: TenantStatus,
        kind: EventKind,
        reason: Optional[str] = None,
    ) -> Tenant:
        caller = await self._authorize(caller, "update_tenant", tenant_id, require_role=Role.MASTER)

        async with self._audited(kind, caller, "tenant", tenant_id):
            tenant = await self._load_tenant(tenant_id)
            previous = tenant.transition(to_status)
            updated = await self.storage.update_tenant(tenant_id, status=tenant.status)

        new_data: dict[str, Any] = {"status": updated.status.value}
        if reason:
            new_data["reason"] = reason
        logger.info("Tenant %s: %s -> %s", tenant_id, previous.value, updated.status.value)
        await self.audit_log.log_action(
            kind,
            "tenant",
            tenant_id,
            {"status": previous.value},
            new_data,
            principal_id=caller.id,
        )
        return updated

    async def recompute_user_count(self, tenant_id: str) -> int:
        """Recount active principals of a tenant and repair ``current_users``.

        Idempotent. An ``update`` event is recorded only when the stored
        value was wrong.

        Raises:
            NotFoundError: Unknown tenant.
        """
        tenant = await self._load_tenant(tenant_id)
        actual = await self.storage.count_active_principals(tenant_id)
        if actual == tenant.current_users:
            return actual

        await self.storage.update_tenant(tenant_id, current_users=actual)
        logger.warning(
            "Repaired user count of tenant %s: %d -> %d",
            tenant_id,
            tenant.current_users,
            actual,
        )
        await self.audit_log.log_update(
            "tenant",
            tenant_id,
            {"current_users": tenant.current_users},
            {"current_users": actual, "reason": "recount"},
        )
        return actual

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_tenants(self, caller: Optional[Principal]) -> list[Tenant]:
        await self._authorize(caller, "list_tenants", require_role=Role.MASTER)
        return await self.storage.list_tenants()

    async def get_tenant(self, caller: Optional[Principal], tenant_id: str) -> Tenant:
        """Fetch one tenant record.

        Masters read tenant records through ``list_tenants``; admins and
        users only ever read their own tenant.
        """
        if caller is not None and caller.role == Role.MASTER:
            await self._authorize(caller, "list_tenants")
        elif not await self.engine.can_access_tenant(caller, tenant_id):
            raise self._denial(caller, "view_tenant")
        return await self._load_tenant(tenant_id)

    async def check_tenant_limits(self, tenant_id: str) -> TenantLimits:
        return tenant_limits(await self._load_tenant(tenant_id))

    async def system_metrics(self, caller: Optional[Principal]) -> SystemMetrics:
        """Platform totals, revenue of active tenants and a health band."""
        await self._authorize(caller, "list_tenants", require_role=Role.MASTER)
        tenants = await self.storage.list_tenants()
        principals = await self.storage.list_principals()

        by_status = {status: 0 for status in TenantStatus}
        revenue = 0
        for tenant in tenants:
            by_status[tenant.status] += 1
            if tenant.status == TenantStatus.ACTIVE:
                revenue += PLAN_DEFAULTS[tenant.plan]["monthly_price"]

        return SystemMetrics(
            total_tenants=len(tenants),
            active_tenants=by_status[TenantStatus.ACTIVE],
            trial_tenants=by_status[TenantStatus.TRIAL],
            suspended_tenants=by_status[TenantStatus.SUSPENDED],
            total_principals=len(principals),
            monthly_revenue=revenue,
            health=health_band(by_status[TenantStatus.ACTIVE], len(tenants)),
        )

    # ------------------------------------------------------------------
    # Principals
    # ------------------------------------------------------------------

    async def provision_principal(
        self,
        caller: Optional[Principal],
        tenant_id: str,
        email: str,
        display_name: str,
        role: Role | str = Role.USER,
        credential: Optional[str] = None,
    ) -> Principal:
        """Add a user or admin to the caller's own tenant.

        The seat check runs before the insert and the counter moves with
        an atomic storage update, so concurrent provisioning may overshoot
        ``max_users`` by a seat; ``recompute_user_count`` repairs it.

        Raises:
            AuthorizationError: The caller is not an admin of the tenant.
            QuotaExceededError: The tenant has no seat left.
            DuplicatePrincipalError: The e-mail is already in use.
            NotFoundError: Unknown tenant.
        """
        caller = await self._authorize(caller, "create_user", tenant_id, require_role=Role.ADMIN)
        principal_id = self._new_id()

        async with self._audited(EventKind.CREATE, caller, "principal", principal_id):
            role = Role.coerce(role)
            if role not in TENANT_ROLES:
                raise ValueError(f"Cannot provision a principal with role {role!r}")
            email = (email or "").strip().lower()
            if "@" not in email:
                raise ValueError("Invalid e-mail address")

            tenant = await self._load_tenant(tenant_id)
            ensure_seat_available(tenant)
            if await self.storage.find_principal_by_email(email) is not None:
                raise DuplicatePrincipalError(email)

            registered = await self._register_credential(principal_id, email, credential)
            try:
                async with self.storage.transaction():
                    principal = await self.storage.add_principal(
                        Principal(
                            id=principal_id,
                            email=email,
                            role=role,
                            tenant_id=tenant_id,
                            display_name=display_name,
                        )
                    )
                    await self.storage.increment_user_count(tenant_id, 1)
            except Exception:
                if registered:
                    await self._revoke_credential(principal_id)
                raise

        await self.audit_log.log_create(
            "principal", principal.id, principal.to_dict(), principal_id=caller.id
        )
        return principal

    async def deactivate_principal(
        self, caller: Optional[Principal], principal_id: str
    ) -> Principal:
        """Deactivate an account and free its seat.

        Deactivating an already inactive principal is a no-op.

        Raises:
            AuthorizationError: The caller is unbound, a master, bound to
                another tenant, or may not manage the target account.
            NotFoundError: Unknown principal.
        """
        caller = await self._authorize(caller, "deactivate_user")
        target = await self.storage.get_principal(principal_id)
        if target is None:
            raise NotFoundError("principal", principal_id)
        if target.tenant_id is not None:
            caller = await self._authorize(caller, "deactivate_user", target.tenant_id)
        if not await self.engine.can_manage_principal(caller, target):
            raise self._denial(caller, "deactivate_user")
        if not target.is_active:
            return target

        async with self._audited(EventKind.UPDATE, caller, "principal", principal_id):
            async with self.storage.transaction():
                updated = await self.storage.update_principal(principal_id, is_active=False)
                if target.tenant_id is not None:
                    await self.storage.increment_user_count(target.tenant_id, -1)

        await self.audit_log.log_update(
            "principal",
            principal_id,
            {"is_active": True},
            {"is_active": False},
            principal_id=caller.id,
        )
        return updated

    async def reactivate_principal(
        self, caller: Optional[Principal], principal_id: str
    ) -> Principal:
        """Reactivate a deactivated account, taking a seat again.

        Reactivating an active principal is a no-op.

        Raises:
            AuthorizationError: Same rules as ``deactivate_principal``.
            QuotaExceededError: The tenant has no seat left.
            NotFoundError: Unknown principal or tenant.
        """
        caller = await self._authorize(caller, "reactivate_user")
        target = await self.storage.get_principal(principal_id)
        if target is None:
            raise NotFoundError("principal", principal_id)
        if target.tenant_id is not None:
            caller = await self._authorize(caller, "reactivate_user", target.tenant_id)
        if not await self.engine.can_manage_principal(caller, target):
            raise self._denial(caller, "reactivate_user")
        if target.is_active:
            return target

        async with self._audited(EventKind.UPDATE, caller, "principal", principal_id):
            if target.tenant_id is not None:
                ensure_seat_available(await self._load_tenant(target.tenant_id))
            async with self.storage.transaction():
                updated = await self.storage.update_principal(principal_id, is_active=True)
                if target.tenant_id is not None:
                    await self.storage.increment_user_count(target.tenant_id, 1)

        await self.audit_log.log_update(
            "principal",
            principal_id,
            {"is_active": False},
            {"is_active": True},
            principal_id=caller.id,
        )
        return updated

    async def change_principal_role(
        self,
        caller: Optional[Principal],
        principal_id: str,
        role: Role | str,
        tenant_id: Optional[str] = None,
    ) -> Principal:
        """Change the role and tenant binding of an account.

        Binding an account to a tenant changes that tenant's membership, so
        this runs as ``update_tenant`` and only masters may call it. Seats
        follow the account: the old tenant gets one back and the new tenant
        must have one free.

        Args:
            caller: Must be a valid master.
            principal_id: Account to change.
            role: New role.
            tenant_id: Tenant to bind to. For admin and user roles the
                current binding is kept when omitted; a master may not have
                one at all.

        Raises:
            AuthorizationError: The caller is not a valid master.
            IsolationViolation: The change would bind a master to a tenant.
            QuotaExceededError: The new tenant has no seat left.
            NotFoundError: Unknown principal or tenant.
            ValueError: Unknown role, or a tenant role without a tenant.
        """
        caller = await self._authorize(caller, "update_tenant", tenant_id, require_role=Role.MASTER)
        target = await self.storage.get_principal(principal_id)
        if target is None:
            raise NotFoundError("principal", principal_id)

        role = Role.coerce(role)
        if role == Role.MASTER and tenant_id is not None:
            await self.audit_log.log_action(
                EventKind.MASTER_ISOLATION_VIOLATION,
                "principal",
                principal_id,
                old_data={"role": target.role_value, "tenant_id": target.tenant_id},
                new_data={"role": role.value, "tenant_id": tenant_id},
                principal_id=caller.id,
            )
            raise IsolationViolation(
                "A master principal cannot be bound to a tenant",
                principal_id=principal_id,
                operation="change_role",
            )

        old_state = {"role": target.role_value, "tenant_id": target.tenant_id}
        async with self._audited(EventKind.UPDATE, caller, "principal", principal_id):
            if role == Role.MASTER:
                new_tenant_id = None
            elif role in TENANT_ROLES:
                new_tenant_id = tenant_id or target.tenant_id
                if new_tenant_id is None:
                    raise ValueError(f"Role {role.value!r} requires a tenant")
            else:
                raise ValueError(f"Unknown role {role!r}")

            rebinds = new_tenant_id != target.tenant_id
            moves_seat = target.is_active and rebinds
            if rebinds and new_tenant_id is not None:
                new_tenant = await self._load_tenant(new_tenant_id)
                if moves_seat:
                    ensure_seat_available(new_tenant)

            async with self.storage.transaction():
                updated = await self.storage.update_principal(
                    principal_id, role=role, tenant_id=new_tenant_id
                )
                if moves_seat:
                    if target.tenant_id is not None:
                        await self.storage.increment_user_count(target.tenant_id, -1)
                    if new_tenant_id is not None:
                        await self.storage.increment_user_count(new_tenant_id, 1)

        logger.info(
            "Principal %s changed from %s@%s to %s@%s",
            principal_id,
            old_state["role"],
            old_state["tenant_id"],
            role.value,
            new_tenant_id,
        )
        await self.audit_log.log_update(
            "principal",
            principal_id,
            old_state,
            {"role": role.value, "tenant_id": new_tenant_id},
            principal_id=caller.id,
        )
        return updated
