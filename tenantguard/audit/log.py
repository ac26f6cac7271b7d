"""
Append-only audit log for tenantguard.

Every authorization denial, isolation violation and tenant state change
ends up here. Writes go through a sink chain and never raise to the
caller: a failing audit store must not block or revert the operation
being described. Reads enforce self-service transparency: non-master
principals only ever see their own events.

Example:
    from tenantguard.audit.log import AuditLog
    from tenantguard.storage.memory import InMemoryStorage

    audit_log = AuditLog(InMemoryStorage())
    await audit_log.log_create("tenant", "t-1", {"name": "Acme"}, principal_id="u-1")

    events = await audit_log.query(master, AuditFilter(resource_type="tenant"))
    stats = await audit_log.stats(master)
    removed = await audit_log.prune(retention_days=90)
"""

from __future__ import annotations

import csv
import io
import logging
from collections import Counter
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Optional

from tenantguard.audit.context import current_audit_context
from tenantguard.audit.events import (
    AuditContext,
    AuditEvent,
    AuditFilter,
    AuditStats,
    EventKind,
)
from tenantguard.audit.sinks import (
    AuditSink,
    FallbackAuditSink,
    LoggingAuditSink,
    StorageAuditSink,
)
from tenantguard.config.settings import Settings, settings as default_settings
from tenantguard.exceptions import AuthenticationMissing, IsolationViolation
from tenantguard.multitenancy.principal import Principal, Role, is_master_valid

if TYPE_CHECKING:
    from tenantguard.storage.base import Storage

logger = logging.getLogger(__name__)

CSV_HEADERS = ["timestamp", "principal", "event_kind", "resource", "ip", "user_agent"]

_CSV_FORMULA_PREFIXES = ("=", "+", "-", "@", "\t")


def _csv_cell(value: str) -> str:
    """Neutralise spreadsheet formulas in exported cells."""
    if value.startswith(_CSV_FORMULA_PREFIXES):
        return "'" + value
    return value


class AuditLog:
    """Records, queries, aggregates and prunes audit events.

    Attributes:
        storage: Store holding the audit events collection.
        sink: Write path; defaults to store-then-local-log fallback.
        settings: Limits and retention defaults.
    """

    def __init__(
        self,
        storage: Storage,
        sink: Optional[AuditSink] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.storage = storage
        self.settings = settings or default_settings
        self.sink = sink or FallbackAuditSink(
            StorageAuditSink(storage),
            LoggingAuditSink(self.settings.AUDIT_FALLBACK_LOGGER),
        )

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def record(self, event: AuditEvent) -> None:
        """Persist one event. Never raises.

        Events recorded without request metadata pick up the current
        request context.
        """
        try:
            if event.context == AuditContext():
                event = replace(event, context=current_audit_context())
            await self.sink.record(event)
        except Exception:
            # Custom sinks may not be fail-safe; the caller's operation wins.
            logger.exception("Audit record failed for %s", event.event_kind.value)

    async def log_action(
        self,
        kind: EventKind | str,
        resource_type: str,
        resource_id: Optional[str] = None,
        old_data: Optional[dict[str, Any]] = None,
        new_data: Optional[dict[str, Any]] = None,
        *,
        principal_id: Optional[str] = None,
        context: Optional[AuditContext] = None,
    ) -> AuditEvent:
        """Build an event and record it.

        Returns:
            The event handed to the sink chain.
        """
        event = AuditEvent(
            event_kind=EventKind(kind),
            resource_type=resource_type,
            principal_id=principal_id,
            resource_id=resource_id,
            old_data=old_data,
            new_data=new_data,
            context=context or AuditContext(),
        )
        await self.record(event)
        return event

    async def log_create(
        self, resource_type: str, resource_id: str, data: Any, *, principal_id: Optional[str] = None
    ) -> AuditEvent:
        return await self.log_action(
            EventKind.CREATE, resource_type, resource_id, None, data, principal_id=principal_id
        )

    async def log_update(
        self,
        resource_type: str,
        resource_id: str,
        old_data: Any,
        new_data: Any,
        *,
        principal_id: Optional[str] = None,
    ) -> AuditEvent:
        return await self.log_action(
            EventKind.UPDATE, resource_type, resource_id, old_data, new_data, principal_id=principal_id
        )

    async def log_delete(
        self, resource_type: str, resource_id: str, data: Any, *, principal_id: Optional[str] = None
    ) -> AuditEvent:
        return await self.log_action(
            EventKind.DELETE, resource_type, resource_id, data, None, principal_id=principal_id
        )

    async def log_view(
        self, resource_type: str, resource_id: str, *, principal_id: Optional[str] = None
    ) -> AuditEvent:
        return await self.log_action(
            EventKind.VIEW, resource_type, resource_id, principal_id=principal_id
        )

    async def log_login(self, principal_id: str) -> AuditEvent:
        return await self.log_action(
            EventKind.LOGIN, "auth", principal_id, principal_id=principal_id
        )

    async def log_logout(self, principal_id: str) -> AuditEvent:
        return await self.log_action(
            EventKind.LOGOUT, "auth", principal_id, principal_id=principal_id
        )

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def _scope_filter(
        self, caller: Optional[Principal], audit_filter: AuditFilter
    ) -> AuditFilter:
        """Apply the visibility rule to a filter.

        Raises:
            AuthenticationMissing: No caller.
            IsolationViolation: The caller is a master bound to a tenant.
        """
        if caller is None:
            await self.log_action(
                EventKind.UNAUTHORIZED_OPERATION,
                "audit_log",
                "query",
                new_data={"reason": "no_principal"},
            )
            raise AuthenticationMissing("Audit queries require an authenticated principal", operation="query_audit")

        if caller.role == Role.MASTER:
            if not is_master_valid(caller):
                await self.log_action(
                    EventKind.MASTER_ISOLATION_VIOLATION,
                    "audit_log",
                    "query",
                    old_data={"tenant_id": caller.tenant_id},
                    new_data={"operation": "query_audit"},
                    principal_id=caller.id,
                )
                raise IsolationViolation(
                    "Master principal carries a tenant binding",
                    principal_id=caller.id,
                    operation="query_audit",
                )
            scoped = replace(audit_filter)
        else:
            # Self-service: a non-master only ever sees their own events.
            scoped = replace(audit_filter, principal_id=caller.id)

        if scoped.limit is None:
            scoped.limit = self.settings.AUDIT_QUERY_LIMIT
        return scoped

    async def query(
        self,
        caller: Optional[Principal],
        audit_filter: Optional[AuditFilter] = None,
    ) -> list[AuditEvent]:
        """Query events visible to ``caller``, newest first.

        Args:
            caller: The principal asking.
            audit_filter: Criteria; ``limit`` defaults to AUDIT_QUERY_LIMIT.

        Returns:
            Matching events.

        Raises:
            AuthenticationMissing: No caller.
            IsolationViolation: Caller is a master with a tenant binding.
            StorageFailure: The store could not be read.
        """
        scoped = await self._scope_filter(caller, audit_filter or AuditFilter())
        return await self.storage.query_events(scoped)

    async def stats(
        self,
        caller: Optional[Principal],
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> AuditStats:
        """Aggregate the events visible to ``caller`` in a time range.

        One query, one pass: each event is counted exactly once per
        dimension. Daily buckets use the UTC date of the timestamp.
        """
        events = await self.query(
            caller,
            AuditFilter(
                date_from=date_from,
                date_to=date_to,
                limit=self.settings.AUDIT_STATS_LIMIT,
            ),
        )
        return aggregate(events)

    async def recent_activity(self, caller: Optional[Principal], limit: int = 20) -> list[AuditEvent]:
        return await self.query(caller, AuditFilter(limit=limit))

    async def principal_activity(
        self, caller: Optional[Principal], principal_id: str, limit: int = 50
    ) -> list[AuditEvent]:
        """Events of one principal; non-masters are limited to themselves."""
        return await self.query(caller, AuditFilter(principal_id=principal_id, limit=limit))

    async def resource_activity(
        self, caller: Optional[Principal], resource_type: str, resource_id: str
    ) -> list[AuditEvent]:
        return await self.query(
            caller, AuditFilter(resource_type=resource_type, resource_id=resource_id)
        )

    async def search(self, caller: Optional[Principal], term: str, limit: int = 100) -> list[AuditEvent]:
        """Case-insensitive search over event kind and resource type."""
        if not term or not term.strip():
            raise ValueError("Search term cannot be empty")
        return await self.query(caller, AuditFilter(search=term.strip(), limit=limit))

    async def export_csv(
        self,
        caller: Optional[Principal],
        audit_filter: Optional[AuditFilter] = None,
    ) -> str:
        """Export visible events as CSV text."""
        events = await self.query(caller, audit_filter)
        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
        writer.writerow(CSV_HEADERS)
        for event in events:
            resource = event.resource_type
            if event.resource_id:
                resource = f"{resource}:{event.resource_id}"
            writer.writerow([
                _csv_cell(cell)
                for cell in (
                    event.timestamp.isoformat(),
                    event.principal_id or "system",
                    event.event_kind.value,
                    resource,
                    event.context.ip or "N/A",
                    event.context.user_agent or "N/A",
                )
            ])
        return buffer.getvalue()

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    async def prune(self, retention_days: Optional[int] = None) -> int:
        """Delete events older than ``now - retention_days``. Irreversible.

        Uses a single storage-level range delete, so it is safe to run
        while events are being recorded.

        Args:
            retention_days: Days to keep; defaults to AUDIT_RETENTION_DAYS.

        Returns:
            Number of events removed.

        Raises:
            ValueError: If retention_days is negative.
            StorageFailure: The store rejected the delete.
        """
        if retention_days is None:
            retention_days = self.settings.AUDIT_RETENTION_DAYS
        if retention_days < 0:
            raise ValueError("retention_days must be >= 0")

        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
        removed = await self.storage.delete_events_before(cutoff)
        logger.info(
            "Pruned %d audit events older than %s (retention %d days)",
            removed,
            cutoff.isoformat(),
            retention_days,
        )
        return removed


def aggregate(events: list[AuditEvent]) -> AuditStats:
    """Pure aggregation of a list of events."""
    by_kind: Counter[str] = Counter()
    by_resource: Counter[str] = Counter()
    by_principal: Counter[str] = Counter()
    by_day: Counter = Counter()
    seen: set[str] = set()

    for event in events:
        if event.id in seen:
            continue
        seen.add(event.id)
        by_kind[event.event_kind.value] += 1
        by_resource[event.resource_type] += 1
        if event.principal_id:
            by_principal[event.principal_id] += 1
        by_day[event.day] += 1

    return AuditStats(
        total_count=len(seen),
        counts_by_kind=dict(by_kind),
        counts_by_resource_type=dict(by_resource),
        counts_by_principal=dict(by_principal),
        daily_counts=sorted(by_day.items()),
    )
