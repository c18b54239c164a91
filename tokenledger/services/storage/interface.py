"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Run the ledger on SQLite locally and PostgreSQL in production
2. Keep business logic decoupled from the ORM
3. Make the transaction boundary explicit in every operation

The interface is intentionally simple - we're not building a full ORM.
Just the operations the ledger needs.

CONCURRENCY: Every ledger operation runs inside exactly one
transaction(). Reads that guard a write (sequencing, latest contribution)
must pass lock=True so the rows stay locked until commit.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from typing import Optional
from uuid import UUID

from tokenledger.models.audit import AuditEntityType, AuditEvent
from tokenledger.models.ledger import Contribution, Purchase, User


class LedgerTransaction(ABC):
    """
    Unit of work over the ledger tables.

    Everything done through one instance commits or rolls back together.
    """

    # --- users -----------------------------------------------------------

    @abstractmethod
    def get_user(self, user_id: UUID) -> Optional[User]:
        """Return the user, or None."""

    @abstractmethod
    def add_user(self, user: User) -> None:
        """Insert a new user."""

    # --- purchases -------------------------------------------------------

    @abstractmethod
    def get_purchase(self, purchase_id: UUID) -> Optional[Purchase]:
        """Return the purchase, or None."""

    @abstractmethod
    def list_purchases(self, lock: bool = False) -> list[Purchase]:
        """
        All purchases in chronological order.

        Ordered by purchase_date, then created_at.

        Args:
            lock: Hold row locks on the purchases until the transaction ends
        """

    @abstractmethod
    def add_purchase(self, purchase: Purchase) -> None:
        """Insert a new purchase."""

    @abstractmethod
    def update_purchase(self, purchase: Purchase) -> None:
        """
        Overwrite a stored purchase.

        Raises:
            StorageError: If the purchase does not exist
        """

    @abstractmethod
    def delete_purchase(self, purchase_id: UUID) -> None:
        """Remove a purchase."""

    # --- contributions ---------------------------------------------------

    @abstractmethod
    def get_contribution(self, contribution_id: UUID) -> Optional[Contribution]:
        """Return the contribution, or None."""

    @abstractmethod
    def get_contribution_for_purchase(self, purchase_id: UUID) -> Optional[Contribution]:
        """Return the contribution settled against a purchase, or None."""

    @abstractmethod
    def list_contributions(self, lock: bool = False) -> list[Contribution]:
        """
        All contributions in creation order (oldest first).

        Args:
            lock: Hold row locks on the contributions until the transaction ends
        """

    @abstractmethod
    def add_contribution(self, contribution: Contribution) -> None:
        """
        Insert a new contribution.

        Raises:
            IntegrityConflictError: If the purchase already has a contribution
        """

    @abstractmethod
    def update_contribution(self, contribution: Contribution) -> None:
        """Overwrite a stored contribution."""

    @abstractmethod
    def delete_contribution(self, contribution_id: UUID) -> None:
        """Remove a contribution."""


class LedgerStorageInterface(ABC):
    """
    Abstract interface for ledger storage.

    Any storage implementation (SQLite, PostgreSQL, etc.)
    must implement these methods.
    """

    @abstractmethod
    def transaction(self) -> AbstractContextManager[LedgerTransaction]:
        """
        Open one atomic unit of work.

        Commits when the block exits normally, rolls back on any exception.
        """

    @abstractmethod
    def create_schema(self) -> None:
        """Create tables if they do not exist."""

    @abstractmethod
    def check_connection(self) -> bool:
        """
        Verify the store is reachable.

        Raises:
            StorageConnectionError: If it is not
        """


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Args:
            event: The audit event to log

        Returns:
            True if logged successfully
        """

    @abstractmethod
    def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a correlation ID (e.g., one recalculation).

        Returns:
            List of related events in chronological order
        """

    @abstractmethod
    def get_events_by_entity(
        self,
        entity_type: AuditEntityType,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a specific entity.

        Returns:
            List of events in chronological order
        """

    @abstractmethod
    def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Get the most recent audit events.

        Returns:
            List of recent events (newest first)
        """


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class IntegrityConflictError(StorageError):
    """A uniqueness or foreign-key constraint rejected the write."""
    pass


class StorageConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass
