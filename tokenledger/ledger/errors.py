"""
Ledger Error Taxonomy

Ledger components raise these exceptions; LedgerService converts them
into OperationResult values at its boundary so no ledger failure escapes
as an uncaught exception.

Storage failures (StorageError) are deliberately NOT part of this
hierarchy: they propagate to the caller, who decides whether to retry.
"""

from typing import Any, Iterable, Optional
from uuid import UUID

from tokenledger.models.ledger import ErrorCode, LedgerErrorInfo


class LedgerError(Exception):
    """Base class for every business-rule failure in the ledger."""

    code: ErrorCode = ErrorCode.VALIDATION

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_info(self) -> LedgerErrorInfo:
        return LedgerErrorInfo(code=self.code, message=self.message, details=self.details)


class LedgerValidationError(LedgerError):
    """Field-level problem: non-positive amounts, decreasing readings."""

    code = ErrorCode.VALIDATION

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        issues: Optional[list[dict[str, Any]]] = None,
    ):
        self.field = field
        details: dict[str, Any] = {}
        if field:
            details["field"] = field
        if issues:
            details["issues"] = issues
        super().__init__(message, details)


class SequencingError(LedgerError):
    """Purchase or contribution attempted out of chronological order."""

    code = ErrorCode.SEQUENCING

    def __init__(
        self,
        purchase_id: UUID,
        blocking_purchase_ids: Iterable[UUID],
        message: Optional[str] = None,
    ):
        self.purchase_id = purchase_id
        self.blocking_purchase_ids = list(blocking_purchase_ids)
        super().__init__(
            message or (
                f"You must contribute to {len(self.blocking_purchase_ids)} older "
                f"purchase(s) first"
            ),
            {
                "purchase_id": str(purchase_id),
                "blocking_purchase_ids": [str(pid) for pid in self.blocking_purchase_ids],
                "next_purchase_id": (
                    str(self.blocking_purchase_ids[0]) if self.blocking_purchase_ids else None
                ),
            },
        )


class ConstraintError(LedgerError):
    """
    The write would break a consumption or chain invariant.

    reason is one of: has_contribution, not_latest, invalid_recalculation,
    downstream_contribution.
    """

    code = ErrorCode.CONSTRAINT

    HAS_CONTRIBUTION = "has_contribution"
    NOT_LATEST = "not_latest"
    INVALID_RECALCULATION = "invalid_recalculation"
    DOWNSTREAM_CONTRIBUTION = "downstream_contribution"

    def __init__(
        self,
        reason: str,
        message: str,
        violations: Optional[list[str]] = None,
        **extra: Any,
    ):
        self.reason = reason
        self.violations = violations or []
        details: dict[str, Any] = {"reason": reason, **extra}
        if self.violations:
            details["violations"] = self.violations
        super().__init__(message, details)


class DuplicateError(LedgerError):
    """A contribution already exists for the purchase."""

    code = ErrorCode.DUPLICATE

    def __init__(self, purchase_id: UUID):
        self.purchase_id = purchase_id
        super().__init__(
            "Contribution already exists for this purchase",
            {"purchase_id": str(purchase_id)},
        )


class PermissionDeniedError(LedgerError):
    """Actor is not owner/admin, or the account is locked."""

    code = ErrorCode.PERMISSION

    def __init__(self, message: str, actor_id: Optional[UUID] = None):
        super().__init__(
            message,
            {"actor_id": str(actor_id)} if actor_id else {},
        )


class NotFoundError(LedgerError):
    """Referenced entity does not exist."""

    code = ErrorCode.NOT_FOUND

    def __init__(self, entity: str, entity_id: UUID):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(
            f"{entity} not found",
            {"entity": entity, "entity_id": str(entity_id)},
        )
