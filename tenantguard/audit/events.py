"""Audit event types.

An audit event is an immutable record of a security-relevant decision or
state change. Events reference principals by id only so they survive
the principal's deletion.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional


# ---------------------------------------------------------------------------
# Kinds
# ---------------------------------------------------------------------------

class Severity(str, Enum):
    INFO = "info"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class EventKind(str, Enum):
    """Every kind of event the audit trail knows about.

    Upper-case kinds come from authorization decisions; lower-case kinds
    describe lifecycle changes and session activity.
    """

    # Decisions
    MASTER_TENANT_ACCESS_ATTEMPT = "MASTER_TENANT_ACCESS_ATTEMPT"
    CROSS_TENANT_ACCESS_ATTEMPT = "CROSS_TENANT_ACCESS_ATTEMPT"
    UNAUTHORIZED_OPERATION = "UNAUTHORIZED_OPERATION"
    MASTER_FORBIDDEN_OPERATION = "MASTER_FORBIDDEN_OPERATION"
    USER_NO_TENANT_OPERATION = "USER_NO_TENANT_OPERATION"
    CROSS_TENANT_OPERATION = "CROSS_TENANT_OPERATION"
    MASTER_ISOLATION_VIOLATION = "MASTER_ISOLATION_VIOLATION"
    ACCESS_DENIED = "ACCESS_DENIED"

    # Lifecycle / activity
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    SUSPEND = "suspend"
    ACTIVATE = "activate"
    VIEW = "view"
    LOGIN = "login"
    LOGOUT = "logout"

    @property
    def severity(self) -> Severity:
        return _SEVERITY[self]

    @property
    def is_violation(self) -> bool:
        return self.value.endswith("_VIOLATION")

    @property
    def is_denial(self) -> bool:
        return self in _DENIALS


_DENIALS = frozenset({
    EventKind.MASTER_TENANT_ACCESS_ATTEMPT,
    EventKind.CROSS_TENANT_ACCESS_ATTEMPT,
    EventKind.UNAUTHORIZED_OPERATION,
    EventKind.MASTER_FORBIDDEN_OPERATION,
    EventKind.USER_NO_TENANT_OPERATION,
    EventKind.CROSS_TENANT_OPERATION,
    EventKind.MASTER_ISOLATION_VIOLATION,
    EventKind.ACCESS_DENIED,
})

_SEVERITY: dict[EventKind, Severity] = {
    EventKind.MASTER_ISOLATION_VIOLATION: Severity.CRITICAL,
    EventKind.MASTER_TENANT_ACCESS_ATTEMPT: Severity.HIGH,
    EventKind.CROSS_TENANT_ACCESS_ATTEMPT: Severity.HIGH,
    EventKind.MASTER_FORBIDDEN_OPERATION: Severity.HIGH,
    EventKind.CROSS_TENANT_OPERATION: Severity.HIGH,
    EventKind.UNAUTHORIZED_OPERATION: Severity.MEDIUM,
    EventKind.USER_NO_TENANT_OPERATION: Severity.MEDIUM,
    EventKind.ACCESS_DENIED: Severity.MEDIUM,
    EventKind.CREATE: Severity.INFO,
    EventKind.UPDATE: Severity.INFO,
    EventKind.DELETE: Severity.INFO,
    EventKind.SUSPEND: Severity.INFO,
    EventKind.ACTIVATE: Severity.INFO,
    EventKind.VIEW: Severity.INFO,
    EventKind.LOGIN: Severity.INFO,
    EventKind.LOGOUT: Severity.INFO,
}


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# Column widths of the audit table; client-supplied values are cut to fit.
MAX_IP_LENGTH = 64
MAX_USER_AGENT_LENGTH = 512
MAX_URL_LENGTH = 2048
MAX_RESOURCE_ID_LENGTH = 128


def _clip(value: Optional[str], limit: int) -> Optional[str]:
    if value is None or len(value) <= limit:
        return value
    return value[:limit]


@dataclass(frozen=True)
class AuditContext:
    """Where a request came from. Annotation only, never trusted for decisions."""

    ip: Optional[str] = None
    user_agent: Optional[str] = None
    url: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "ip", _clip(self.ip, MAX_IP_LENGTH))
        object.__setattr__(self, "user_agent", _clip(self.user_agent, MAX_USER_AGENT_LENGTH))
        object.__setattr__(self, "url", _clip(self.url, MAX_URL_LENGTH))

    def to_dict(self) -> dict[str, Optional[str]]:
        return {"ip": self.ip, "user_agent": self.user_agent, "url": self.url}

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "AuditContext":
        if not data:
            return cls()
        return cls(
            ip=data.get("ip"),
            user_agent=data.get("user_agent") or data.get("agent"),
            url=data.get("url"),
        )


@dataclass(frozen=True)
class AuditEvent:
    """One append-only audit record.

    Attributes:
        event_kind: What happened.
        resource_type: Kind of object involved (``tenant``, ``operation``,
                       ``principal`` ...).
        principal_id: Acting principal, if any (weak reference).
        resource_id: Identifier of the object involved.
        old_data: State before the change, or the caller's own context.
        new_data: State after the change, or the attempted target.
        context: Request annotation.
        timestamp: When the event happened (UTC).
        id: Unique event id.
    """

    event_kind: EventKind
    resource_type: str
    principal_id: Optional[str] = None
    resource_id: Optional[str] = None
    old_data: Optional[dict[str, Any]] = None
    new_data: Optional[dict[str, Any]] = None
    context: AuditContext = field(default_factory=AuditContext)
    timestamp: datetime = field(default_factory=_utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self) -> None:
        # frozen: normalise through object.__setattr__
        object.__setattr__(self, "event_kind", EventKind(self.event_kind))
        object.__setattr__(self, "timestamp", _as_utc(self.timestamp))
        object.__setattr__(self, "resource_id", _clip(self.resource_id, MAX_RESOURCE_ID_LENGTH))

    @property
    def severity(self) -> Severity:
        return self.event_kind.severity

    @property
    def day(self) -> date:
        """UTC calendar day of the event."""
        return self.timestamp.date()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "principal_id": self.principal_id,
            "event_kind": self.event_kind.value,
            "severity": self.severity.value,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "old_data": self.old_data,
            "new_data": self.new_data,
            "context": self.context.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AuditEvent":
        timestamp = data.get("timestamp")
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        return cls(
            id=data.get("id") or str(uuid.uuid4()),
            timestamp=timestamp or _utcnow(),
            principal_id=data.get("principal_id"),
            event_kind=EventKind(data["event_kind"]),
            resource_type=data["resource_type"],
            resource_id=data.get("resource_id"),
            old_data=data.get("old_data"),
            new_data=data.get("new_data"),
            context=AuditContext.from_dict(data.get("context")),
        )


@dataclass
class AuditFilter:
    """Query parameters for the audit trail.

    Attributes:
        principal_id: Only events of this principal.
        event_kind: Only events of this kind.
        resource_type: Only events on this resource type.
        resource_id: Only events on this resource.
        date_from: Inclusive lower bound on timestamp.
        date_to: Inclusive upper bound on timestamp.
        search: Case-insensitive substring of kind or resource type.
        limit: Maximum number of events, newest first. None means the
               configured default.
    """

    principal_id: Optional[str] = None
    event_kind: Optional[EventKind] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    search: Optional[str] = None
    limit: Optional[int] = None

    def __post_init__(self) -> None:
        if self.event_kind is not None:
            self.event_kind = EventKind(self.event_kind)
        if self.date_from is not None:
            self.date_from = _as_utc(self.date_from)
        if self.date_to is not None:
            self.date_to = _as_utc(self.date_to)
        if self.limit is not None and self.limit <= 0:
            raise ValueError("limit must be positive")

    def matches(self, event: AuditEvent) -> bool:
        """Check a single event against every set criterion."""
        if self.principal_id is not None and event.principal_id != self.principal_id:
            return False
        if self.event_kind is not None and event.event_kind != self.event_kind:
            return False
        if self.resource_type is not None and event.resource_type != self.resource_type:
            return False
        if self.resource_id is not None and event.resource_id != self.resource_id:
            return False
        if self.date_from is not None and event.timestamp < self.date_from:
            return False
        if self.date_to is not None and event.timestamp > self.date_to:
            return False
        if self.search:
            term = self.search.lower()
            if term not in event.event_kind.value.lower() and term not in event.resource_type.lower():
                return False
        return True


@dataclass
class AuditStats:
    """Aggregation of a set of audit events."""

    total_count: int = 0
    counts_by_kind: dict[str, int] = field(default_factory=dict)
    counts_by_resource_type: dict[str, int] = field(default_factory=dict)
    counts_by_principal: dict[str, int] = field(default_factory=dict)
    daily_counts: list[tuple[date, int]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_count": self.total_count,
            "counts_by_kind": self.counts_by_kind,
            "counts_by_resource_type": self.counts_by_resource_type,
            "counts_by_principal": self.counts_by_principal,
            "daily_counts": [
                {"date": day.isoformat(), "count": count} for day, count in self.daily_counts
            ],
        }
