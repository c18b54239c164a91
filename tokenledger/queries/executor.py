"""
Ledger Query Engine

DESIGN DECISION: Every figure is computed from the stored rows on each
call. Nothing is cached: progress, balances and suggestions always reflect
what the ledger holds right now.

Queries never write. Each one runs in its own short read transaction.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog

from tokenledger.config import LedgerSettings, get_settings
from tokenledger.ledger import (
    balance_total,
    contribution_progress,
    next_eligible_purchase,
    prior_purchase,
    running_balance,
    summarize_costs,
    to_money,
)
from tokenledger.models.ledger import (
    BalanceEntry,
    Contribution,
    ContributionProgress,
    CostBreakdown,
    LedgerIntegrityReport,
    LedgerIssue,
    MeterReadingSuggestion,
    Purchase,
    utcnow,
)
from tokenledger.services.storage import LedgerStorageInterface
from tokenledger.validation import ReadingValidator

logger = structlog.get_logger(__name__)


class LedgerQueries:
    """
    Read-side reports over the ledger.

    GUARANTEES:
    - Only returns real data from storage
    - Never invents or estimates (suggestions are labelled as such)
    - Money stays unrounded unless a rounded view is asked for
    """

    def __init__(
        self,
        storage: LedgerStorageInterface,
        settings: Optional[LedgerSettings] = None,
    ):
        self._storage = storage
        self._settings = settings or get_settings().ledger
        self._validator = ReadingValidator(self._settings)

    def _snapshot(self) -> tuple[list[Purchase], list[Contribution]]:
        with self._storage.transaction() as tx:
            return tx.list_purchases(), tx.list_contributions()

    def _pairs(
        self,
        purchases: list[Purchase],
        contributions: list[Contribution],
    ) -> list[tuple[Contribution, Purchase]]:
        by_id = {p.id: p for p in purchases}
        return [(c, by_id[c.purchase_id]) for c in contributions if c.purchase_id in by_id]

    def contribution_progress(self) -> ContributionProgress:
        purchases, contributions = self._snapshot()
        return contribution_progress(purchases, {c.purchase_id for c in contributions})

    def next_eligible_purchase(self) -> Optional[Purchase]:
        """The oldest purchase still waiting for a contribution."""
        purchases, contributions = self._snapshot()
        return next_eligible_purchase(purchases, {c.purchase_id for c in contributions})

    def running_balance(self) -> list[BalanceEntry]:
        """System-wide cumulative overpayment, oldest contribution first."""
        purchases, contributions = self._snapshot()
        return running_balance(self._pairs(purchases, contributions))

    def cost_summary(
        self,
        user_id: Optional[UUID] = None,
        rounded: bool = False,
    ) -> CostBreakdown:
        """
        Aggregate cost figures for one user, or everyone.

        Args:
            user_id: Restrict to this user's contributions
            rounded: Quantize money fields for display
        """
        purchases, contributions = self._snapshot()
        summary = summarize_costs(self._pairs(purchases, contributions), user_id=user_id)
        if not rounded:
            return summary

        places = self._settings.money_places
        return summary.model_copy(update={
            name: to_money(getattr(summary, name), places)
            for name in (
                "total_amount_paid",
                "total_true_cost",
                "overpayment",
                "emergency_premium",
            )
        })

    def meter_reading_suggestion(
        self,
        purchase_date: Optional[datetime] = None,
    ) -> MeterReadingSuggestion:
        purchases, _ = self._snapshot()
        return self._validator.suggest(purchase_date or utcnow(), purchases)

    def verify_ledger(self) -> LedgerIntegrityReport:
        """
        Re-scan the whole ledger and report inconsistencies.

        Checks:
        - Every contribution's reading equals its purchase's reading
        - Consumption equals the difference with the previous purchase's reading
        - No contribution points at a missing purchase
        - Purchases were settled in chronological order
        - The running balance agrees with a full re-scan
        """
        purchases, contributions = self._snapshot()
        by_id = {p.id: p for p in purchases}
        contributed_ids = {c.purchase_id for c in contributions}
        issues: list[LedgerIssue] = []

        for contribution in contributions:
            purchase = by_id.get(contribution.purchase_id)
            if purchase is None:
                issues.append(LedgerIssue(
                    entity_type="UserContribution",
                    entity_id=contribution.id,
                    issue_type="missing_purchase",
                    message=f"Purchase {contribution.purchase_id} does not exist",
                ))
                continue

            if contribution.meter_reading != purchase.meter_reading:
                issues.append(LedgerIssue(
                    entity_type="UserContribution",
                    entity_id=contribution.id,
                    issue_type="reading_mismatch",
                    message=(
                        f"Contribution reading {contribution.meter_reading} kWh differs "
                        f"from purchase reading {purchase.meter_reading} kWh"
                    ),
                ))

            prior = prior_purchase(purchase, purchases)
            if prior is not None:
                expected = purchase.meter_reading - prior.meter_reading
                if contribution.tokens_consumed != expected:
                    issues.append(LedgerIssue(
                        entity_type="UserContribution",
                        entity_id=contribution.id,
                        issue_type="consumption_mismatch",
                        message=(
                            f"Tokens consumed is {contribution.tokens_consumed} kWh, "
                            f"expected {expected} kWh"
                        ),
                    ))

                if prior.id not in contributed_ids:
                    issues.append(LedgerIssue(
                        entity_type="TokenPurchase",
                        entity_id=prior.id,
                        issue_type="sequencing_gap",
                        message="Purchase has no contribution but a later purchase does",
                    ))

        entries = running_balance(self._pairs(purchases, contributions))
        running = entries[-1].balance if entries else Decimal("0")
        rescanned = balance_total(entries)
        if running != rescanned:
            issues.append(LedgerIssue(
                entity_type="Ledger",
                entity_id=entries[-1].contribution_id,
                issue_type="balance_mismatch",
                message=f"Running balance {running} differs from re-scan {rescanned}",
            ))

        if issues:
            logger.warning("ledger_integrity_issues", issue_count=len(issues))

        return LedgerIntegrityReport(
            total_purchases=len(purchases),
            total_contributions=len(contributions),
            running_balance=running,
            rescanned_balance=rescanned,
            issues=issues,
        )
