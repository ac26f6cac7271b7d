"""
Audit trail for tenantguard.

Key Components:
    - AuditEvent / EventKind: Immutable records and their kinds
    - AuditFilter / AuditStats: Query criteria and aggregations
    - AuditSink chain: Storage first, local log as fallback
    - AuditLog: Record, query, aggregate, export and prune
    - RequestContext: Request metadata used to annotate events

Example:
    from tenantguard.audit import AuditLog, AuditFilter, EventKind

    audit_log = AuditLog(storage)
    denials = await audit_log.query(
        master, AuditFilter(event_kind=EventKind.CROSS_TENANT_ACCESS_ATTEMPT)
    )
"""

from tenantguard.audit.events import (
    AuditContext,
    AuditEvent,
    AuditFilter,
    AuditStats,
    EventKind,
    Severity,
)
from tenantguard.audit.sinks import (
    AuditSink,
    FallbackAuditSink,
    LoggingAuditSink,
    StorageAuditSink,
)
from tenantguard.audit.context import (
    RequestContext,
    RequestContextData,
    RequestContextMiddleware,
    current_audit_context,
    get_request_context,
)
from tenantguard.audit.log import AuditLog, aggregate

__all__ = [
    # Events
    "AuditContext",
    "AuditEvent",
    "AuditFilter",
    "AuditStats",
    "EventKind",
    "Severity",
    # Sinks
    "AuditSink",
    "FallbackAuditSink",
    "LoggingAuditSink",
    "StorageAuditSink",
    # Context
    "RequestContext",
    "RequestContextData",
    "RequestContextMiddleware",
    "current_audit_context",
    "get_request_context",
    # Log
    "AuditLog",
    "aggregate",
]
