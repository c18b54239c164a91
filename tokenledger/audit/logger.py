"""
Audit Trail Emitter

DESIGN DECISION: Every ledger mutation leaves an AuditEvent behind.
LedgerService collects the events of one operation while its transaction
runs and hands them over here only after the commit:
- A rolled-back operation leaves no trail
- Audit writes never hold ledger row locks
- Events of one operation share a correlation id, so a meter reading
  correction and the contribution it recalculated can be read back together

Persistence is best effort. A failed append is logged and reported to the
caller as False; it never undoes the ledger write that produced the event.
"""

from typing import Iterable, Optional
from uuid import UUID, uuid4

import structlog

from tokenledger.models.audit import AuditEvent, AuditSeverity
from tokenledger.services.storage import AuditStorageInterface, StorageError


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

# Overrides are WARNING events; nothing the ledger emits is below INFO
_LOG_LEVEL = {
    AuditSeverity.DEBUG: "debug",
    AuditSeverity.INFO: "info",
    AuditSeverity.WARNING: "warning",
    AuditSeverity.ERROR: "error",
    AuditSeverity.CRITICAL: "critical",
}


def create_correlation_id() -> UUID:
    """New id shared by every event of one ledger operation."""
    return uuid4()


class AuditLogger:
    """
    Writes ledger audit events to the structured log and, when configured,
    to an AuditStorageInterface.
    """

    def __init__(self, storage: Optional[AuditStorageInterface] = None):
        self._storage = storage
        self._logger = structlog.get_logger("tokenledger.audit")

    @property
    def storage(self) -> Optional[AuditStorageInterface]:
        return self._storage

    def log(self, event: AuditEvent) -> bool:
        """
        Record one event.

        Returns:
            True when the event was persisted, or when there is no store
        """
        emit = getattr(self._logger, _LOG_LEVEL[event.severity])
        emit("audit_event", **event.to_log_dict())

        if self._storage is None:
            return True

        try:
            return self._storage.append_event(event)
        except StorageError as e:
            self._logger.error(
                "audit_storage_failed",
                error=str(e),
                event_id=str(event.event_id),
                entity_type=event.entity_type.value,
                entity_id=str(event.entity_id),
                correlation_id=str(event.correlation_id) if event.correlation_id else None,
            )
            return False

    def log_many(self, events: Iterable[AuditEvent]) -> bool:
        """
        Record the events of one operation in order.

        Every event is attempted even after a failure. Returns True only
        if all of them were persisted.
        """
        failed = [event for event in events if not self.log(event)]
        if failed:
            self._logger.error(
                "audit_batch_incomplete",
                failed_event_ids=[str(event.event_id) for event in failed],
                correlation_id=(
                    str(failed[0].correlation_id) if failed[0].correlation_id else None
                ),
            )
        return not failed
