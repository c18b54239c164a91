"""
SQL Storage Implementation

DESIGN DECISION: A conventional relational store backs the ledger because
its invariants (one contribution per purchase, the chronological chain,
all-or-nothing recalculation) need real transactions.

- PostgreSQL: run with isolation_level=SERIALIZABLE; guarded reads use
  SELECT ... FOR UPDATE.
- SQLite: every transaction starts with BEGIN IMMEDIATE, which takes the
  database write lock up front and serialises writers.

The implementation follows the abstract interface, so business logic never
touches SQLAlchemy directly.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import Engine, create_engine, event, select, text
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from tokenledger.config import DatabaseSettings, get_settings
from tokenledger.models.audit import AuditEntityType, AuditEvent
from tokenledger.models.ledger import Contribution, Purchase, User
from tokenledger.services.storage.interface import (
    AuditStorageInterface,
    IntegrityConflictError,
    LedgerStorageInterface,
    LedgerTransaction,
    StorageConnectionError,
    StorageError,
)
from tokenledger.services.storage.tables import (
    AuditEventRow,
    Base,
    ContributionRow,
    PurchaseRow,
    UserRow,
)

logger = structlog.get_logger(__name__)


def build_engine(settings: Optional[DatabaseSettings] = None) -> Engine:
    """
    Create the SQLAlchemy engine from settings.

    In-memory SQLite URLs get a StaticPool so every session sees the
    same database.
    """
    settings = settings or get_settings().database
    url = settings.url
    kwargs: dict = {
        "echo": settings.echo,
        "pool_pre_ping": settings.pool_pre_ping,
    }
    is_sqlite = url.startswith("sqlite")

    if is_sqlite:
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    elif settings.isolation_level:
        kwargs["isolation_level"] = settings.isolation_level

    engine = create_engine(url, **kwargs)

    if is_sqlite:
        _install_sqlite_locking(engine)

    return engine


def _install_sqlite_locking(engine: Engine) -> None:
    """Make pysqlite emit BEGIN IMMEDIATE and enforce foreign keys."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Hand transaction control to SQLAlchemy
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class SqlLedgerTransaction(LedgerTransaction):
    """LedgerTransaction bound to one SQLAlchemy session."""

    def __init__(self, session: Session):
        self._session = session

    # --- users -----------------------------------------------------------

    def get_user(self, user_id: UUID) -> Optional[User]:
        row = self._session.get(UserRow, user_id)
        return User.model_validate(row) if row else None

    def add_user(self, user: User) -> None:
        self._session.add(UserRow(
            id=user.id,
            name=user.name,
            role=user.role.value,
            is_locked=user.is_locked,
            created_at=user.created_at,
        ))
        self._flush()

    # --- purchases -------------------------------------------------------

    def get_purchase(self, purchase_id: UUID) -> Optional[Purchase]:
        row = self._session.get(PurchaseRow, purchase_id)
        return Purchase.model_validate(row) if row else None

    def list_purchases(self, lock: bool = False) -> list[Purchase]:
        stmt = select(PurchaseRow).order_by(
            PurchaseRow.purchase_date,
            PurchaseRow.created_at,
        )
        if lock:
            stmt = stmt.with_for_update()
        return [Purchase.model_validate(row) for row in self._session.scalars(stmt)]

    def add_purchase(self, purchase: Purchase) -> None:
        self._session.add(PurchaseRow(**purchase.model_dump()))
        self._flush()

    def update_purchase(self, purchase: Purchase) -> None:
        row = self._session.get(PurchaseRow, purchase.id)
        if row is None:
            raise StorageError(f"Purchase not found: {purchase.id}")
        for key, value in purchase.model_dump(exclude={"id"}).items():
            setattr(row, key, value)
        self._flush()

    def delete_purchase(self, purchase_id: UUID) -> None:
        row = self._session.get(PurchaseRow, purchase_id)
        if row is not None:
            self._session.delete(row)
            self._flush()

    # --- contributions ---------------------------------------------------

    def get_contribution(self, contribution_id: UUID) -> Optional[Contribution]:
        row = self._session.get(ContributionRow, contribution_id)
        return Contribution.model_validate(row) if row else None

    def get_contribution_for_purchase(self, purchase_id: UUID) -> Optional[Contribution]:
        row = self._session.scalar(
            select(ContributionRow).where(ContributionRow.purchase_id == purchase_id)
        )
        return Contribution.model_validate(row) if row else None

    def list_contributions(self, lock: bool = False) -> list[Contribution]:
        stmt = select(ContributionRow).order_by(
            ContributionRow.created_at,
            ContributionRow.id,
        )
        if lock:
            stmt = stmt.with_for_update()
        return [Contribution.model_validate(row) for row in self._session.scalars(stmt)]

    def add_contribution(self, contribution: Contribution) -> None:
        self._session.add(ContributionRow(**contribution.model_dump()))
        self._flush()

    def update_contribution(self, contribution: Contribution) -> None:
        row = self._session.get(ContributionRow, contribution.id)
        if row is None:
            raise StorageError(f"Contribution not found: {contribution.id}")
        for key, value in contribution.model_dump(exclude={"id"}).items():
            setattr(row, key, value)
        self._flush()

    def delete_contribution(self, contribution_id: UUID) -> None:
        row = self._session.get(ContributionRow, contribution_id)
        if row is not None:
            self._session.delete(row)
            self._flush()

    def _flush(self) -> None:
        try:
            self._session.flush()
        except IntegrityError as e:
            raise IntegrityConflictError(str(e.orig)) from e


class SqlLedgerStorage(LedgerStorageInterface):
    """
    Ledger storage over a SQLAlchemy engine.

    One transaction() == one session == one database transaction.
    """

    def __init__(self, engine: Optional[Engine] = None):
        self._engine = engine or build_engine()
        self._session_factory = sessionmaker(
            bind=self._engine,
            autoflush=False,
            expire_on_commit=False,
        )

    @property
    def engine(self) -> Engine:
        return self._engine

    @contextmanager
    def transaction(self) -> Iterator[SqlLedgerTransaction]:
        session = self._session_factory()
        try:
            yield SqlLedgerTransaction(session)
            session.commit()
        except IntegrityError as e:
            session.rollback()
            raise IntegrityConflictError(str(e.orig)) from e
        except OperationalError as e:
            session.rollback()
            raise StorageError(f"Ledger transaction failed: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_schema(self) -> None:
        Base.metadata.create_all(self._engine)

    @retry(
        retry=retry_if_exception_type(StorageConnectionError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def check_connection(self) -> bool:
        """
        Establish that the database answers.

        Retried with exponential backoff before giving up.
        """
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            logger.warning("ledger_storage_unreachable", error=str(e))
            raise StorageConnectionError(f"Failed to connect to ledger database: {e}") from e
        return True


class SqlAuditStorage(AuditStorageInterface):
    """
    Audit trail persisted in the audit_events table.

    Uses its own sessions: events are appended after the ledger
    transaction that produced them has committed.
    """

    def __init__(self, engine: Engine):
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    def _event_to_row(self, event: AuditEvent) -> AuditEventRow:
        return AuditEventRow(
            event_id=event.event_id,
            timestamp=event.timestamp,
            actor_id=event.actor_id,
            action=event.action.value,
            severity=event.severity.value,
            entity_type=event.entity_type.value,
            entity_id=event.entity_id,
            correlation_id=event.correlation_id,
            description=event.description,
            before=event.before,
            after=event.after,
            details=event.details,
            integrity_hash=event.integrity_hash,
        )

    def _row_to_event(self, row: AuditEventRow) -> AuditEvent:
        return AuditEvent(
            event_id=row.event_id,
            timestamp=row.timestamp,
            actor_id=row.actor_id,
            action=row.action,
            severity=row.severity,
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            correlation_id=row.correlation_id,
            description=row.description,
            before=row.before,
            after=row.after,
            details=row.details or {},
            integrity_hash=row.integrity_hash,
        )

    @retry(
        retry=retry_if_exception_type(OperationalError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def _insert(self, event: AuditEvent) -> None:
        with self._session_factory.begin() as session:
            session.add(self._event_to_row(event))

    def append_event(self, event: AuditEvent) -> bool:
        """Append one event; transient lock errors are retried first."""
        try:
            self._insert(event)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to append audit event {event.event_id}: {e}") from e
        return True

    def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(AuditEventRow)
                .where(AuditEventRow.correlation_id == correlation_id)
                .order_by(AuditEventRow.timestamp)
            )
            return [self._row_to_event(row) for row in rows]

    def get_events_by_entity(
        self,
        entity_type: AuditEntityType,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(AuditEventRow)
                .where(
                    AuditEventRow.entity_type == entity_type.value,
                    AuditEventRow.entity_id == entity_id,
                )
                .order_by(AuditEventRow.timestamp)
            )
            return [self._row_to_event(row) for row in rows]

    def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(AuditEventRow)
                .order_by(AuditEventRow.timestamp.desc())
                .limit(limit)
            )
            return [self._row_to_event(row) for row in rows]
