"""
Audit Models for Token Ledger

Every mutation of the ledger is recorded as an audit event.
This provides:
1. Complete traceability of purchases and contributions
2. A record of every sequencing override and who made it
3. Before/after snapshots for administrator corrections
4. Tamper evidence through an integrity hash

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
Events point at entities by type and id; entities never point back.
"""

import hashlib
import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, model_validator

from tokenledger.models.ledger import Actor, Contribution, Purchase, User, utcnow


class AuditAction(str, Enum):
    """What happened to the entity."""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    RECALCULATE = "RECALCULATE"


class AuditEntityType(str, Enum):
    """Entity types that appear in the audit trail."""
    PURCHASE = "TokenPurchase"
    CONTRIBUTION = "UserContribution"
    USER = "User"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


def _snapshot(model: Optional[BaseModel]) -> Optional[dict[str, Any]]:
    if model is None:
        return None
    return model.model_dump(mode="json")


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    Every create, edit, delete and recalculation creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=utcnow,
        description="When the event occurred (UTC)"
    )

    # Who and what
    actor_id: UUID = Field(
        ...,
        description="User who performed the action"
    )
    action: AuditAction
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )
    entity_type: AuditEntityType
    entity_id: UUID

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="Shared by all events written by one operation"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )

    # State snapshots
    before: Optional[dict[str, Any]] = None
    after: Optional[dict[str, Any]] = None

    # Additional data (override reason, linked entities, warnings)
    details: dict[str, Any] = Field(default_factory=dict)

    integrity_hash: Optional[str] = Field(
        default=None,
        description="SHA-256 over the event content; computed when omitted"
    )

    @model_validator(mode='after')
    def seal(self) -> 'AuditEvent':
        """Compute the integrity hash for freshly built events."""
        if self.integrity_hash is None:
            self.integrity_hash = self.compute_integrity_hash()
        return self

    def _hash_payload(self) -> dict[str, Any]:
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "actor_id": str(self.actor_id),
            "action": self.action.value,
            "entity_type": self.entity_type.value,
            "entity_id": str(self.entity_id),
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "before": self.before,
            "after": self.after,
            "details": self.details,
        }

    def compute_integrity_hash(self) -> str:
        data = json.dumps(self._hash_payload(), sort_keys=True, default=str)
        return hashlib.sha256(data.encode("utf-8")).hexdigest()

    def verify_integrity(self) -> bool:
        """True when the stored hash still matches the event content."""
        return self.integrity_hash == self.compute_integrity_hash()

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "actor_id": str(self.actor_id),
            "action": self.action.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type.value,
            "entity_id": str(self.entity_id),
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "integrity_hash": self.integrity_hash,
        }


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.purchase_created(purchase, actor, correlation_id)
        event = AuditEventBuilder.contribution_deleted(contribution, actor, correlation_id)
    """

    @staticmethod
    def user_registered(
        user: User,
        correlation_id: UUID,
        actor: Optional[Actor] = None,
    ) -> AuditEvent:
        return AuditEvent(
            actor_id=actor.user_id if actor else user.id,
            action=AuditAction.CREATE,
            entity_type=AuditEntityType.USER,
            entity_id=user.id,
            correlation_id=correlation_id,
            description=f"User registered: {user.name} ({user.role.value})",
            after=_snapshot(user),
        )

    @staticmethod
    def purchase_created(
        purchase: Purchase,
        actor: Actor,
        correlation_id: UUID,
        warnings: Optional[list[str]] = None,
    ) -> AuditEvent:
        return AuditEvent(
            actor_id=actor.user_id,
            action=AuditAction.CREATE,
            severity=AuditSeverity.WARNING if warnings else AuditSeverity.INFO,
            entity_type=AuditEntityType.PURCHASE,
            entity_id=purchase.id,
            correlation_id=correlation_id,
            description=(
                f"Purchase recorded: {purchase.total_tokens} kWh for "
                f"{purchase.total_payment} at reading {purchase.meter_reading}"
            ),
            after=_snapshot(purchase),
            details={"warnings": warnings or []},
        )

    @staticmethod
    def purchase_updated(
        before: Purchase,
        after: Purchase,
        actor: Actor,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            actor_id=actor.user_id,
            action=AuditAction.UPDATE,
            entity_type=AuditEntityType.PURCHASE,
            entity_id=after.id,
            correlation_id=correlation_id,
            description="Purchase details updated",
            before=_snapshot(before),
            after=_snapshot(after),
        )

    @staticmethod
    def purchase_deleted(
        purchase: Purchase,
        actor: Actor,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            actor_id=actor.user_id,
            action=AuditAction.DELETE,
            entity_type=AuditEntityType.PURCHASE,
            entity_id=purchase.id,
            correlation_id=correlation_id,
            description="Purchase deleted",
            before=_snapshot(purchase),
        )

    @staticmethod
    def contribution_created(
        contribution: Contribution,
        actor: Actor,
        correlation_id: UUID,
        override_reason: Optional[str] = None,
        skipped_purchase_ids: Optional[list[UUID]] = None,
    ) -> AuditEvent:
        details: dict[str, Any] = {}
        severity = AuditSeverity.INFO
        description = f"Contribution of {contribution.contribution_amount} recorded"
        if skipped_purchase_ids:
            # Sequencing was bypassed; record who did it and why
            severity = AuditSeverity.WARNING
            description += " (sequencing override)"
            details = {
                "sequencing_override": True,
                "override_by": str(actor.user_id),
                "override_reason": override_reason or "No reason provided",
                "skipped_purchase_ids": [str(pid) for pid in skipped_purchase_ids],
            }
        return AuditEvent(
            actor_id=actor.user_id,
            action=AuditAction.CREATE,
            severity=severity,
            entity_type=AuditEntityType.CONTRIBUTION,
            entity_id=contribution.id,
            correlation_id=correlation_id,
            description=description,
            after=_snapshot(contribution),
            details=details,
        )

    @staticmethod
    def contribution_updated(
        before: Contribution,
        after: Contribution,
        actor: Actor,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            actor_id=actor.user_id,
            action=AuditAction.UPDATE,
            entity_type=AuditEntityType.CONTRIBUTION,
            entity_id=after.id,
            correlation_id=correlation_id,
            description=(
                f"Contribution amount changed from {before.contribution_amount} "
                f"to {after.contribution_amount}"
            ),
            before=_snapshot(before),
            after=_snapshot(after),
        )

    @staticmethod
    def contribution_deleted(
        contribution: Contribution,
        actor: Actor,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            actor_id=actor.user_id,
            action=AuditAction.DELETE,
            entity_type=AuditEntityType.CONTRIBUTION,
            entity_id=contribution.id,
            correlation_id=correlation_id,
            description="Contribution deleted",
            before=_snapshot(contribution),
        )

    @staticmethod
    def meter_reading_changed(
        before: Purchase,
        after: Purchase,
        actor: Actor,
        correlation_id: UUID,
        recalculated_contribution_id: Optional[UUID] = None,
        downstream_contribution_id: Optional[UUID] = None,
        override: bool = False,
    ) -> AuditEvent:
        details: dict[str, Any] = {
            "field": "meter_reading",
            "recalculated_contribution_id": (
                str(recalculated_contribution_id) if recalculated_contribution_id else None
            ),
        }
        if downstream_contribution_id:
            details["downstream_contribution_id"] = str(downstream_contribution_id)
            details["override"] = override
        return AuditEvent(
            actor_id=actor.user_id,
            action=AuditAction.UPDATE,
            severity=AuditSeverity.WARNING if override else AuditSeverity.INFO,
            entity_type=AuditEntityType.PURCHASE,
            entity_id=after.id,
            correlation_id=correlation_id,
            description=(
                f"Meter reading corrected from {before.meter_reading} "
                f"to {after.meter_reading}"
            ),
            before=_snapshot(before),
            after=_snapshot(after),
            details=details,
        )

    @staticmethod
    def contribution_recalculated(
        before: Contribution,
        after: Contribution,
        actor: Actor,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            actor_id=actor.user_id,
            action=AuditAction.RECALCULATE,
            entity_type=AuditEntityType.CONTRIBUTION,
            entity_id=after.id,
            correlation_id=correlation_id,
            description=(
                f"Tokens consumed recalculated from {before.tokens_consumed} "
                f"to {after.tokens_consumed} kWh"
            ),
            before=_snapshot(before),
            after=_snapshot(after),
            details={"purchase_id": str(after.purchase_id)},
        )
