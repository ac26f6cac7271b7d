"""Audit trail endpoints.

Visibility is enforced by ``AuditLog``: non-master callers only ever
get their own events back, whatever filter they send.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import PlainTextResponse

from tenantguard.api.dependencies import get_audit_log, get_principal
from tenantguard.audit.events import AuditFilter, EventKind
from tenantguard.audit.log import AuditLog
from tenantguard.multitenancy.principal import Principal

router = APIRouter(prefix="/api/audit", tags=["audit"])


def _filter(
    principal_id: Optional[str] = None,
    event_kind: Optional[EventKind] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    search: Optional[str] = None,
    limit: Optional[int] = Query(None, ge=1, le=10000),
) -> AuditFilter:
    return AuditFilter(
        principal_id=principal_id,
        event_kind=event_kind,
        resource_type=resource_type,
        resource_id=resource_id,
        date_from=date_from,
        date_to=date_to,
        search=search,
        limit=limit,
    )


@router.get("/events")
async def list_events(
    audit_filter: AuditFilter = Depends(_filter),
    principal: Optional[Principal] = Depends(get_principal),
    audit_log: AuditLog = Depends(get_audit_log),
) -> list[dict]:
    events = await audit_log.query(principal, audit_filter)
    return [e.to_dict() for e in events]


@router.get("/stats")
async def audit_stats(
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    principal: Optional[Principal] = Depends(get_principal),
    audit_log: AuditLog = Depends(get_audit_log),
) -> dict:
    stats = await audit_log.stats(principal, date_from, date_to)
    return stats.to_dict()


@router.get("/export", response_class=PlainTextResponse)
async def export_events(
    audit_filter: AuditFilter = Depends(_filter),
    principal: Optional[Principal] = Depends(get_principal),
    audit_log: AuditLog = Depends(get_audit_log),
) -> PlainTextResponse:
    body = await audit_log.export_csv(principal, audit_filter)
    return PlainTextResponse(
        body,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="audit_events.csv"'},
    )
