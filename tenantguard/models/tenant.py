"""Tenant, principal and audit event SQLAlchemy models.

- **TenantRecord**: one row per tenant, with the seat counter that is
  moved by atomic ``UPDATE ... SET current_users = current_users + n``.
- **PrincipalRecord**: accounts bound to at most one tenant.
- **AuditEventRecord**: append-only audit trail. ``principal_id`` is a
  plain column, not a foreign key, so events outlive the principal.

JSON columns use JSONB on PostgreSQL and generic JSON elsewhere.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from tenantguard.audit.events import (
    MAX_IP_LENGTH,
    MAX_RESOURCE_ID_LENGTH,
    MAX_URL_LENGTH,
    MAX_USER_AGENT_LENGTH,
)
from tenantguard.db import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Tenant
# ---------------------------------------------------------------------------


class TenantRecord(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    domain: Mapped[str | None] = mapped_column(String(256), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="trial")
    plan: Mapped[str] = mapped_column(String(32), nullable=False, default="basic")
    max_users: Mapped[int] = mapped_column(Integer, nullable=False)
    current_users: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    admin_principal_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    settings: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


# ---------------------------------------------------------------------------
# Principal
# ---------------------------------------------------------------------------


class PrincipalRecord(Base):
    __tablename__ = "principals"
    __table_args__ = (
        Index("ix_principals_tenant_active", "tenant_id", "is_active"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    role: Mapped[str] = mapped_column(String(32), nullable=False)
    tenant_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


# ---------------------------------------------------------------------------
# AuditEvent
# ---------------------------------------------------------------------------


class AuditEventRecord(Base):
    """Append-only audit row.

    Attributes
    ----------
    id:             Event id (UUID string).
    timestamp:      UTC time of the event; indexed for range deletes.
    principal_id:   Acting principal, weak reference.
    event_kind:     ``EventKind`` value.
    resource_type:  Kind of object involved.
    resource_id:    Identifier of the object involved.
    old_data:       State before / caller context.
    new_data:       State after / attempted target.
    ip, user_agent, url: Request annotation.
    """

    __tablename__ = "audit_events"
    __table_args__ = (
        Index("ix_audit_events_timestamp", "timestamp"),
        Index("ix_audit_events_principal_timestamp", "principal_id", "timestamp"),
        Index("ix_audit_events_resource", "resource_type", "resource_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    principal_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    event_kind: Mapped[str] = mapped_column(String(64), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(64), nullable=False)
    resource_id: Mapped[str | None] = mapped_column(String(MAX_RESOURCE_ID_LENGTH), nullable=True)
    old_data: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    new_data: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    ip: Mapped[str | None] = mapped_column(String(MAX_IP_LENGTH), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(MAX_USER_AGENT_LENGTH), nullable=True)
    url: Mapped[str | None] = mapped_column(String(MAX_URL_LENGTH), nullable=True)
