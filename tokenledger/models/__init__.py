"""
Data Models Package

This package contains all Pydantic models used in the Token Ledger.
All data flowing through the ledger must conform to these schemas.
"""

from tokenledger.models.ledger import (
    Actor,
    Allocation,
    BalanceEntry,
    ConsumptionStatistics,
    Contribution,
    ContributionProgress,
    ContributionView,
    CostBreakdown,
    ErrorCode,
    ImpactAnalysis,
    LedgerErrorInfo,
    LedgerIntegrityReport,
    LedgerIssue,
    MeterReadingSuggestion,
    OperationResult,
    Purchase,
    RecalculationOutcome,
    User,
    UserRole,
    ValidationIssue,
    ValidationResult,
    utcnow,
)
from tokenledger.models.audit import (
    AuditAction,
    AuditEntityType,
    AuditEvent,
    AuditEventBuilder,
    AuditSeverity,
)

__all__ = [
    # Ledger models
    "Actor",
    "Allocation",
    "BalanceEntry",
    "ConsumptionStatistics",
    "Contribution",
    "ContributionProgress",
    "ContributionView",
    "CostBreakdown",
    "ErrorCode",
    "ImpactAnalysis",
    "LedgerErrorInfo",
    "LedgerIntegrityReport",
    "LedgerIssue",
    "MeterReadingSuggestion",
    "OperationResult",
    "Purchase",
    "RecalculationOutcome",
    "User",
    "UserRole",
    "ValidationIssue",
    "ValidationResult",
    "utcnow",
    # Audit models
    "AuditAction",
    "AuditEntityType",
    "AuditEvent",
    "AuditEventBuilder",
    "AuditSeverity",
]
