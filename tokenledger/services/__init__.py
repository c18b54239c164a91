"""Services package."""

from tokenledger.services.storage import (
    AuditStorageInterface,
    IntegrityConflictError,
    LedgerStorageInterface,
    LedgerTransaction,
    SqlAuditStorage,
    SqlLedgerStorage,
    StorageConnectionError,
    StorageError,
    build_engine,
)

__all__ = [
    "AuditStorageInterface",
    "IntegrityConflictError",
    "LedgerStorageInterface",
    "LedgerTransaction",
    "SqlAuditStorage",
    "SqlLedgerStorage",
    "StorageConnectionError",
    "StorageError",
    "build_engine",
]
