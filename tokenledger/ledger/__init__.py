"""
Ledger Core Package

Pure ledger rules: reconciliation, allocation, sequencing, edit/delete
constraints and recalculation. Nothing here opens a transaction; the
service layer passes in the rows it read inside its own.
"""

from tokenledger.ledger.allocator import (
    allocate,
    balance_total,
    cost_per_kwh,
    running_balance,
    summarize_costs,
    to_money,
    true_cost,
)
from tokenledger.ledger.constraints import (
    can_delete_contribution,
    can_delete_purchase,
    can_edit_contribution,
    can_edit_purchase,
    downstream_contribution,
    ensure_can_write,
    ensure_no_downstream_contribution,
    latest_contribution,
)
from tokenledger.ledger.errors import (
    ConstraintError,
    DuplicateError,
    LedgerError,
    LedgerValidationError,
    NotFoundError,
    PermissionDeniedError,
    SequencingError,
)
from tokenledger.ledger.recalculation import RecalculationEngine
from tokenledger.ledger.reconciler import (
    check_latest_reading_edit,
    is_latest_purchase,
    next_purchase,
    prior_purchase,
    prior_reading_for,
    reconcile,
    reconcile_in_chain,
    recover_baseline,
    sort_chronologically,
)
from tokenledger.ledger.sequencing import (
    blocking_purchases,
    contribution_progress,
    next_eligible_purchase,
    validate_contribution_order,
    validate_purchase_order,
)

__all__ = [
    # Allocation
    "allocate",
    "balance_total",
    "cost_per_kwh",
    "running_balance",
    "summarize_costs",
    "to_money",
    "true_cost",
    # Constraints
    "can_delete_contribution",
    "can_delete_purchase",
    "can_edit_contribution",
    "can_edit_purchase",
    "downstream_contribution",
    "ensure_can_write",
    "ensure_no_downstream_contribution",
    "latest_contribution",
    # Errors
    "ConstraintError",
    "DuplicateError",
    "LedgerError",
    "LedgerValidationError",
    "NotFoundError",
    "PermissionDeniedError",
    "SequencingError",
    # Recalculation
    "RecalculationEngine",
    # Reconciliation
    "check_latest_reading_edit",
    "is_latest_purchase",
    "next_purchase",
    "prior_purchase",
    "prior_reading_for",
    "reconcile",
    "reconcile_in_chain",
    "recover_baseline",
    "sort_chronologically",
    # Sequencing
    "blocking_purchases",
    "contribution_progress",
    "next_eligible_purchase",
    "validate_contribution_order",
    "validate_purchase_order",
]
