"""
Relational schema for the ledger (SQLAlchemy ORM).

Rows never leave the storage package; SqlLedgerTransaction converts
them to the pydantic models in tokenledger.models.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from tokenledger.models.ledger import KWH_PLACES, MAX_DIGITS, MONEY_PLACES


# Same scale the models enforce, so a write never rounds
MONEY = Numeric(precision=MAX_DIGITS, scale=MONEY_PLACES, asdecimal=True)
KWH = Numeric(precision=MAX_DIGITS, scale=KWH_PLACES, asdecimal=True)


class Base(DeclarativeBase):
    pass


class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="USER")
    is_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    def __repr__(self) -> str:
        return f"<UserRow(id={self.id}, name={self.name!r}, role={self.role})>"


class PurchaseRow(Base):
    __tablename__ = "purchases"
    __table_args__ = (
        Index("ix_purchases_chronology", "purchase_date", "created_at"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    total_tokens: Mapped[Decimal] = mapped_column(KWH, nullable=False)
    total_payment: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    meter_reading: Mapped[Decimal] = mapped_column(KWH, nullable=False)
    purchase_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    is_emergency: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_by: Mapped[UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<PurchaseRow(id={self.id}, tokens={self.total_tokens}, "
            f"reading={self.meter_reading})>"
        )


class ContributionRow(Base):
    __tablename__ = "contributions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    # One contribution per purchase
    purchase_id: Mapped[UUID] = mapped_column(
        ForeignKey("purchases.id"), nullable=False, unique=True
    )
    user_id: Mapped[UUID] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    contribution_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    meter_reading: Mapped[Decimal] = mapped_column(KWH, nullable=False)
    tokens_consumed: Mapped[Decimal] = mapped_column(KWH, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)

    def __repr__(self) -> str:
        return (
            f"<ContributionRow(id={self.id}, purchase_id={self.purchase_id}, "
            f"amount={self.contribution_amount})>"
        )


class AuditEventRow(Base):
    """
    Append-only audit trail.

    entity_id is a plain column, not a foreign key: audit rows outlive
    the entities they describe.
    """

    __tablename__ = "audit_events"
    __table_args__ = (
        Index("ix_audit_entity", "entity_type", "entity_id"),
    )

    event_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    actor_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    action: Mapped[str] = mapped_column(String(16), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    correlation_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True, index=True)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    before: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    after: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    integrity_hash: Mapped[str] = mapped_column(String(64), nullable=False)
