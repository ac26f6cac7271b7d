"""Audit sinks.

An ``AuditSink`` persists one event. Sinks compose into a fallback chain
(primary store, then local log) so that the rule "an audit failure never
blocks or reverts the operation it describes" is part of the structure
rather than a try/except sprinkled over call sites.

Usage:
    sink = FallbackAuditSink(StorageAuditSink(storage), LoggingAuditSink())
    await sink.record(event)        # never raises
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from tenantguard.audit.events import AuditEvent, Severity

if TYPE_CHECKING:
    from tenantguard.storage.base import Storage

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_LOGGER = "tenantguard.audit.fallback"

_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.MEDIUM: logging.WARNING,
    Severity.HIGH: logging.WARNING,
    Severity.CRITICAL: logging.CRITICAL,
}


class AuditSink(ABC):
    """Destination for audit events."""

    name: str = "sink"

    @abstractmethod
    async def record(self, event: AuditEvent) -> None:
        """Persist one event. Implementations may raise."""


class StorageAuditSink(AuditSink):
    """Primary sink: the audit events collection of the store."""

    name = "storage"

    def __init__(self, storage: "Storage") -> None:
        self.storage = storage

    async def record(self, event: AuditEvent) -> None:
        await self.storage.append_event(event)


class LoggingAuditSink(AuditSink):
    """Local fallback: one JSON line per event on a dedicated logger.

    The log level follows the event severity, so isolation violations
    stand out even when only the fallback received them.
    """

    name = "log"

    def __init__(self, logger_name: str = DEFAULT_FALLBACK_LOGGER) -> None:
        self._logger = logging.getLogger(logger_name)

    async def record(self, event: AuditEvent) -> None:
        self._logger.log(
            _LEVELS[event.severity],
            "audit_event %s",
            json.dumps(event.to_dict(), default=str, sort_keys=True),
        )


class FallbackAuditSink(AuditSink):
    """Try each sink in order until one accepts the event.

    Never raises. When every sink fails the event is written to this
    module's logger at ERROR so the loss is at least visible locally.
    """

    name = "fallback"

    def __init__(self, primary: AuditSink, *fallbacks: AuditSink) -> None:
        self.sinks: list[AuditSink] = [primary, *fallbacks]

    async def record(self, event: AuditEvent) -> None:
        for sink in self.sinks:
            try:
                await sink.record(event)
                return
            except Exception as exc:
                logger.warning(
                    "Audit sink %s failed for event %s (%s): %s",
                    sink.name,
                    event.id,
                    event.event_kind.value,
                    exc,
                )
        logger.error(
            "Audit event lost after %d sinks failed: %s",
            len(self.sinks),
            json.dumps(event.to_dict(), default=str, sort_keys=True),
        )
