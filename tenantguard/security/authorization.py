"""
Authorization decision engine.

Answers three separate questions for an explicitly supplied principal:

- ``can_access_tenant``: may this principal read tenant X's business data?
- ``enforce_isolation``: may this principal perform operation Y (on tenant X)?
- ``validate_tenant_isolation``: is the principal's own record consistent?

Every answer is a boolean. A denial is an expected outcome, never an
exception, and every ``False`` records exactly one audit event whose
kind names the reason. Permits are not recorded. Only malformed input
(``ValueError``) is raised; the audit write never raises.

The engine keeps no state besides its audit log, so one instance can
serve any number of concurrent requests.

Example:
    from tenantguard.security.authorization import AuthorizationEngine

    engine = AuthorizationEngine(audit_log)
    if not await engine.enforce_isolation(caller, "update_lead", "t-2"):
        raise AccessDenied("cross-tenant update")
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Optional

from tenantguard.audit.events import EventKind
from tenantguard.audit.log import AuditLog
from tenantguard.multitenancy.principal import (
    TENANT_ROLES,
    Principal,
    Role,
    is_master_valid,
)

logger = logging.getLogger(__name__)


class MasterOperation(str, Enum):
    """The closed set of operations a master principal may perform.

    Adding a member here is the only way to widen master privileges.
    """

    LIST_TENANTS = "list_tenants"
    CREATE_TENANT = "create_tenant"
    UPDATE_TENANT = "update_tenant"
    DELETE_TENANT = "delete_tenant"
    MANAGE_GLOBAL_SETTINGS = "manage_global_settings"

    @classmethod
    def allows(cls, operation: str) -> bool:
        return operation in cls._value2member_map_


def _require_name(value: Any, what: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{what} must be a non-empty string")
    return value


class AuthorizationEngine:
    """Stateless decision procedure backed by an audit log.

    Attributes:
        audit_log: Where denials and violations are recorded.
    """

    def __init__(self, audit_log: AuditLog) -> None:
        self.audit_log = audit_log

    async def _deny(
        self,
        kind: EventKind,
        principal: Optional[Principal],
        resource_type: str,
        resource_id: Optional[str],
        old_data: Optional[dict[str, Any]] = None,
        new_data: Optional[dict[str, Any]] = None,
    ) -> bool:
        principal_id = principal.id if principal is not None else None
        log = logger.warning if kind.is_violation else logger.info
        log(
            "Denied %s for principal %s on %s %s",
            kind.value,
            principal_id,
            resource_type,
            resource_id,
        )
        await self.audit_log.log_action(
            kind,
            resource_type,
            resource_id,
            old_data,
            new_data,
            principal_id=principal_id,
        )
        return False

    # ------------------------------------------------------------------
    # Tenant data access
    # ------------------------------------------------------------------

    async def can_access_tenant(
        self, principal: Optional[Principal], target_tenant_id: str
    ) -> bool:
        """Decide whether ``principal`` may read the business data of a tenant.

        Masters never may. Admins and users may only read their own tenant.

        Args:
            principal: The caller, or None if unauthenticated.
            target_tenant_id: Tenant whose data is requested.

        Returns:
            True if access is permitted.

        Raises:
            ValueError: If target_tenant_id is empty or not a string.
        """
        _require_name(target_tenant_id, "target_tenant_id")
        attempted = {"attempted_tenant": target_tenant_id}

        if principal is None:
            return await self._deny(
                EventKind.UNAUTHORIZED_OPERATION,
                None,
                "tenant",
                target_tenant_id,
                new_data={"reason": "no_principal", **attempted},
            )

        if principal.role == Role.MASTER:
            if not is_master_valid(principal):
                return await self._deny(
                    EventKind.MASTER_ISOLATION_VIOLATION,
                    principal,
                    "tenant",
                    target_tenant_id,
                    old_data={"tenant_id": principal.tenant_id},
                    new_data=attempted,
                )
            return await self._deny(
                EventKind.MASTER_TENANT_ACCESS_ATTEMPT,
                principal,
                "tenant",
                target_tenant_id,
                new_data=attempted,
            )

        if principal.role in TENANT_ROLES:
            if principal.tenant_id == target_tenant_id:
                return True
            return await self._deny(
                EventKind.CROSS_TENANT_ACCESS_ATTEMPT,
                principal,
                "tenant",
                target_tenant_id,
                old_data={"tenant_id": principal.tenant_id},
                new_data={"user_tenant": principal.tenant_id, **attempted},
            )

        return await self._deny(
            EventKind.ACCESS_DENIED,
            principal,
            "tenant",
            target_tenant_id,
            new_data={"role": principal.role_value, **attempted},
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def enforce_isolation(
        self,
        principal: Optional[Principal],
        operation: str,
        target_tenant_id: Optional[str] = None,
    ) -> bool:
        """Decide whether ``principal`` may perform ``operation``.

        Args:
            principal: The caller, or None if unauthenticated.
            operation: Operation name, e.g. ``update_tenant`` or ``update_lead``.
            target_tenant_id: Tenant the operation acts on, when there is one.

        Returns:
            True if the operation is permitted. Permits are not audited.

        Raises:
            ValueError: If operation is empty, or target_tenant_id is
                supplied but empty.
        """
        _require_name(operation, "operation")
        if target_tenant_id is not None:
            _require_name(target_tenant_id, "target_tenant_id")

        if principal is None:
            return await self._deny(
                EventKind.UNAUTHORIZED_OPERATION,
                None,
                "operation",
                operation,
                new_data={"reason": "no_principal", "attempted_tenant": target_tenant_id},
            )

        if principal.role == Role.MASTER:
            if not is_master_valid(principal):
                return await self._deny(
                    EventKind.MASTER_ISOLATION_VIOLATION,
                    principal,
                    "operation",
                    operation,
                    old_data={"tenant_id": principal.tenant_id},
                    new_data={"operation": operation},
                )
            if MasterOperation.allows(operation):
                return True
            return await self._deny(
                EventKind.MASTER_FORBIDDEN_OPERATION,
                principal,
                "operation",
                operation,
                new_data={"operation": operation, "attempted_tenant": target_tenant_id},
            )

        if principal.role in TENANT_ROLES:
            if principal.tenant_id is None:
                return await self._deny(
                    EventKind.USER_NO_TENANT_OPERATION,
                    principal,
                    "operation",
                    operation,
                    new_data={"operation": operation, "attempted_tenant": target_tenant_id},
                )
            if target_tenant_id is not None and target_tenant_id != principal.tenant_id:
                return await self._deny(
                    EventKind.CROSS_TENANT_OPERATION,
                    principal,
                    "operation",
                    operation,
                    old_data={"tenant_id": principal.tenant_id},
                    new_data={
                        "user_tenant": principal.tenant_id,
                        "attempted_tenant": target_tenant_id,
                        "operation": operation,
                    },
                )
            return True

        return await self._deny(
            EventKind.ACCESS_DENIED,
            principal,
            "operation",
            operation,
            new_data={"role": principal.role_value, "operation": operation},
        )

    # ------------------------------------------------------------------
    # Record self-check
    # ------------------------------------------------------------------

    async def validate_tenant_isolation(self, principal: Optional[Principal]) -> bool:
        """Check the shape of the principal record itself.

        A master carrying a tenant id is a violation. An admin or user
        without a tenant passes (accounts mid-provisioning) with an
        operator warning.
        """
        if principal is None:
            return await self._deny(
                EventKind.UNAUTHORIZED_OPERATION,
                None,
                "principal",
                None,
                new_data={"reason": "no_principal"},
            )

        if principal.role == Role.MASTER:
            if is_master_valid(principal):
                return True
            return await self._deny(
                EventKind.MASTER_ISOLATION_VIOLATION,
                principal,
                "principal",
                principal.id,
                old_data={"tenant_id": principal.tenant_id},
                new_data={"expected_tenant": None},
            )

        if principal.role in TENANT_ROLES:
            if principal.tenant_id is None:
                logger.warning(
                    "Principal %s (%s) has no tenant binding; allowed as grace state",
                    principal.id,
                    principal.role_value,
                )
            return True

        return await self._deny(
            EventKind.ACCESS_DENIED,
            principal,
            "principal",
            principal.id,
            new_data={"role": principal.role_value},
        )

    # ------------------------------------------------------------------
    # Account management
    # ------------------------------------------------------------------

    async def can_manage_principal(
        self, manager: Optional[Principal], target: Principal
    ) -> bool:
        """Decide whether ``manager`` may change ``target``'s account.

        Anyone may manage themself and an admin may manage users of their
        own tenant. Masters manage accounts only through allow-listed
        operations, never through this check; a master with a tenant
        binding is reported as a violation.
        """
        if manager is None:
            return await self._deny(
                EventKind.UNAUTHORIZED_OPERATION,
                None,
                "principal",
                target.id,
                new_data={"reason": "no_principal"},
            )

        if manager.role == Role.MASTER and not is_master_valid(manager):
            return await self._deny(
                EventKind.MASTER_ISOLATION_VIOLATION,
                manager,
                "principal",
                target.id,
                old_data={"tenant_id": manager.tenant_id},
                new_data={"operation": "manage_principal"},
            )

        if manager.id == target.id:
            return True

        if (
            manager.role == Role.ADMIN
            and manager.tenant_id is not None
            and target.role == Role.USER
            and target.tenant_id == manager.tenant_id
        ):
            return True

        return await self._deny(
            EventKind.ACCESS_DENIED,
            manager,
            "principal",
            target.id,
            old_data={"tenant_id": manager.tenant_id},
            new_data={
                "operation": "manage_principal",
                "target_role": target.role_value,
                "target_tenant": target.tenant_id,
            },
        )
