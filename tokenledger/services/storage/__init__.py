"""
Storage Services Package

Provides abstract interfaces and concrete implementations for data storage.
Currently implements a SQLAlchemy backend, but designed to be swappable.
"""

from tokenledger.services.storage.interface import (
    AuditStorageInterface,
    IntegrityConflictError,
    LedgerStorageInterface,
    LedgerTransaction,
    StorageConnectionError,
    StorageError,
)
from tokenledger.services.storage.sql_storage import (
    SqlAuditStorage,
    SqlLedgerStorage,
    SqlLedgerTransaction,
    build_engine,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "LedgerStorageInterface",
    "LedgerTransaction",
    # Exceptions
    "IntegrityConflictError",
    "StorageConnectionError",
    "StorageError",
    # SQL implementation
    "SqlAuditStorage",
    "SqlLedgerStorage",
    "SqlLedgerTransaction",
    "build_engine",
]
