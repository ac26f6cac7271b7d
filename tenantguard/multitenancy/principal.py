"""
Principal model for tenantguard.

A principal is an authenticated actor handed to us by the external
identity provider. It carries a role and, for non-master roles, a
binding to exactly one tenant.

Roles:
    - USER: Operates within one tenant.
    - ADMIN: Manages one tenant.
    - MASTER: Manages tenants globally, never their business data.

Binding rules:
    - A master never carries a tenant id. A master that does is evidence
      of tampering or a provisioning bug and is denied everywhere.
    - An admin or user should carry a tenant id. A missing one is a
      tolerated grace state for freshly provisioned accounts, flagged
      with a warning but never trusted for cross-tenant decisions.

Example:
    from tenantguard.multitenancy.principal import Principal, Role

    principal = Principal.from_dict({
        "id": "u-1",
        "email": "ana@acme.com",
        "role": "admin",
        "tenantId": "t-1",
    })
    assert is_isolation_consistent(principal)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

logger = logging.getLogger(__name__)


class Role(str, Enum):
    """Privilege tiers.

    Attributes:
        USER: Regular operator inside one tenant.
        ADMIN: Administrator of one tenant.
        MASTER: Platform operator administering tenants.
    """

    USER = "user"
    ADMIN = "admin"
    MASTER = "master"

    @classmethod
    def coerce(cls, value: Any) -> "Role | str":
        """Map a raw role string onto the enum.

        Unknown values are returned unchanged so that downstream checks
        can deny them explicitly instead of failing to construct the
        principal.
        """
        if isinstance(value, Role):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return str(value)


TENANT_ROLES = frozenset({Role.USER, Role.ADMIN})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Principal:
    """An authenticated actor.

    Attributes:
        id: Stable identifier issued by the identity provider.
        display_name: Human-readable name.
        email: Login e-mail address.
        role: One of the ``Role`` values, or a raw string for roles this
              engine does not know about.
        tenant_id: Bound tenant for admin/user; absent for master.
        is_active: False once the account has been deactivated.
        created_at: When the account was provisioned (UTC).
        updated_at: Last change to role, binding or activity flag (UTC).
    """

    id: str
    email: str
    role: Role | str
    tenant_id: str | None = None
    display_name: str = ""
    is_active: bool = True
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Principal id cannot be empty")
        self.role = Role.coerce(self.role)
        # Empty strings from upstream forms mean "no tenant".
        if self.tenant_id == "":
            self.tenant_id = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Principal":
        """Build a principal from an identity-provider payload.

        Accepts both snake_case and camelCase keys
        (``tenant_id``/``tenantId``, ``display_name``/``displayName``,
        ``is_active``/``isActive``).

        Args:
            data: Mapping with at least ``id`` and ``role``.

        Returns:
            A new Principal.

        Raises:
            ValueError: If ``id`` or ``role`` is missing.
        """
        if "id" not in data or "role" not in data:
            raise ValueError("Principal payload requires 'id' and 'role'")

        def pick(*keys: str, default: Any = None) -> Any:
            for key in keys:
                if key in data:
                    return data[key]
            return default

        kwargs: dict[str, Any] = {
            "id": str(data["id"]),
            "email": pick("email", default="") or "",
            "role": data["role"],
            "tenant_id": pick("tenant_id", "tenantId"),
            "display_name": pick("display_name", "displayName", "name", default="") or "",
            "is_active": bool(pick("is_active", "isActive", default=True)),
        }
        for key in ("created_at", "updated_at"):
            value = data.get(key)
            if isinstance(value, str):
                value = datetime.fromisoformat(value)
            if isinstance(value, datetime):
                kwargs[key] = value
        return cls(**kwargs)

    @property
    def role_value(self) -> str:
        return self.role.value if isinstance(self.role, Role) else str(self.role)

    @property
    def is_master(self) -> bool:
        return self.role == Role.MASTER

    @property
    def is_tenant_role(self) -> bool:
        return self.role in TENANT_ROLES

    def to_dict(self) -> dict[str, Any]:
        """Convert the principal to a JSON-friendly dictionary."""
        return {
            "id": self.id,
            "display_name": self.display_name,
            "email": self.email,
            "role": self.role_value,
            "tenant_id": self.tenant_id,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    def __repr__(self) -> str:
        return f"<Principal {self.id} role={self.role_value} tenant={self.tenant_id}>"


def is_master_valid(principal: Principal) -> bool:
    """True iff the principal is a master with no tenant binding.

    False for a master means the record itself is compromised; callers
    must deny and log rather than ignore the tenant id.
    """
    return principal.role == Role.MASTER and principal.tenant_id is None


def is_isolation_consistent(principal: Principal) -> bool:
    """Check the principal's role/tenant binding.

    Masters must have no tenant. Admins and users should have one; a
    missing tenant still returns True (grace period for accounts in the
    middle of provisioning) but is reported as a warning. Unknown roles
    are never consistent.
    """
    if principal.role == Role.MASTER:
        return principal.tenant_id is None

    if principal.role in TENANT_ROLES:
        if principal.tenant_id is None:
            logger.warning(
                "Principal %s (%s) has no tenant binding; tolerated during provisioning",
                principal.id,
                principal.role.value,
            )
        return True

    return False
