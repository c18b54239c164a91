"""
Recalculation Engine

Corrects a historical purchase's meter reading and re-derives the one
contribution that depends on it.

FLOW:
1. preview() - pure impact analysis, never writes
2. apply()   - the identical computation, then both writes, inside the
               caller's transaction

CRITICAL: Only one hop is recalculated. Contribution N depends on the
readings of purchases N and N-1 alone. The contribution on purchase N+1
was reconciled against the reading being changed; it is reported as the
downstream contribution and left alone, and touching a purchase with one
requires an explicit override.
"""

from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog

from tokenledger.config import LedgerSettings, get_settings
from tokenledger.ledger.allocator import allocate, true_cost
from tokenledger.ledger.errors import (
    ConstraintError,
    NotFoundError,
    PermissionDeniedError,
)
from tokenledger.ledger.reconciler import (
    check_latest_reading_edit,
    is_latest_purchase,
    next_purchase,
    prior_purchase,
    recover_baseline,
)
from tokenledger.models.ledger import (
    Actor,
    Contribution,
    ContributionView,
    ImpactAnalysis,
    Purchase,
    RecalculationOutcome,
)
from tokenledger.services.storage.interface import LedgerTransaction

logger = structlog.get_logger(__name__)


class RecalculationEngine:
    """Impact analysis and application of meter-reading corrections."""

    def __init__(self, settings: Optional[LedgerSettings] = None):
        self._settings = settings or get_settings().ledger

    def _baseline(self, contribution: Optional[Contribution]) -> Decimal:
        if contribution is not None:
            return recover_baseline(contribution)
        return Decimal(str(self._settings.baseline_meter_reading))

    def analyze(
        self,
        purchase: Purchase,
        new_reading: Decimal,
        chain: list[Purchase],
        contribution: Optional[Contribution],
        downstream: Optional[Contribution] = None,
    ) -> ImpactAnalysis:
        """
        Work out what changing `purchase`'s reading would do.

        Args:
            purchase: The purchase being corrected
            new_reading: Proposed meter reading
            chain: Every purchase in the ledger
            contribution: Contribution settled against `purchase`, if any
            downstream: Contribution on the following purchase, if any

        Returns:
            ImpactAnalysis; `violations` is empty when the change may be applied
        """
        prior = prior_purchase(purchase, chain)
        following = next_purchase(purchase, chain)
        prior_reading = prior.meter_reading if prior else self._baseline(contribution)
        violations: list[str] = []
        warnings: list[str] = []

        if new_reading <= 0:
            violations.append("Meter reading must be greater than zero")

        latest_violation = check_latest_reading_edit(purchase, new_reading, chain)
        if latest_violation:
            violations.append(latest_violation)
        elif prior is not None and new_reading < prior.meter_reading:
            violations.append(
                f"New reading ({new_reading} kWh) is below the previous "
                f"purchase's reading ({prior.meter_reading} kWh)"
            )

        if following is not None and new_reading > following.meter_reading:
            violations.append(
                f"New reading ({new_reading} kWh) is above the following "
                f"purchase's reading ({following.meter_reading} kWh)"
            )

        impact = ImpactAnalysis(
            purchase_id=purchase.id,
            old_meter_reading=purchase.meter_reading,
            new_meter_reading=new_reading,
            prior_reading=prior_reading,
            next_reading=following.meter_reading if following else None,
            is_latest_purchase=is_latest_purchase(purchase, chain),
            downstream_contribution_id=downstream.id if downstream else None,
        )

        if contribution is not None:
            new_tokens = new_reading - prior_reading
            if new_tokens < 0 and not violations:
                violations.append(
                    f"Invalid calculation: new reading ({new_reading} kWh) is less "
                    f"than the prior reading ({prior_reading} kWh)"
                )
            if new_tokens > purchase.total_tokens:
                violations.append(
                    f"Recalculated consumption ({new_tokens} kWh) exceeds available "
                    f"tokens ({purchase.total_tokens} kWh)"
                )

            old_allocation = allocate(contribution, purchase)
            new_cost = true_cost(new_tokens, purchase)
            impact.affected_contribution_id = contribution.id
            impact.old_tokens_consumed = contribution.tokens_consumed
            impact.new_tokens_consumed = new_tokens
            impact.old_true_cost = old_allocation.true_cost
            impact.new_true_cost = new_cost
            impact.old_overpayment = old_allocation.overpayment
            impact.new_overpayment = contribution.contribution_amount - new_cost

            delta = new_tokens - contribution.tokens_consumed
            impact.summary = (
                f"Changing this purchase will recalculate its contribution. "
                f"Tokens consumed will change from {contribution.tokens_consumed} kWh "
                f"to {new_tokens} kWh ({'+' if delta >= 0 else ''}{delta} kWh difference)."
            )
        else:
            impact.summary = "No associated contribution will be affected by this change."

        if downstream is not None:
            warnings.append(
                "The following purchase already has a contribution derived from "
                "this reading; it will not be recalculated"
            )

        impact.violations = violations
        impact.warnings = warnings
        return impact

    def _load(
        self,
        tx: LedgerTransaction,
        purchase_id: UUID,
        lock: bool,
    ) -> tuple[Purchase, list[Purchase], Optional[Contribution], Optional[Contribution]]:
        purchase = tx.get_purchase(purchase_id)
        if purchase is None:
            raise NotFoundError("Purchase", purchase_id)
        chain = tx.list_purchases(lock=lock)
        contribution = tx.get_contribution_for_purchase(purchase.id)
        following = next_purchase(purchase, chain)
        downstream = tx.get_contribution_for_purchase(following.id) if following else None
        return purchase, chain, contribution, downstream

    def preview(
        self,
        tx: LedgerTransaction,
        purchase_id: UUID,
        new_reading: Decimal,
    ) -> ImpactAnalysis:
        """Impact of a reading change. Reads only."""
        purchase, chain, contribution, downstream = self._load(tx, purchase_id, lock=False)
        return self.analyze(purchase, new_reading, chain, contribution, downstream)

    def apply(
        self,
        tx: LedgerTransaction,
        purchase_id: UUID,
        new_reading: Decimal,
        actor: Actor,
        override: bool = False,
    ) -> RecalculationOutcome:
        """
        Apply a reading change and recalculate the dependent contribution.

        Both writes go through `tx`; if anything here raises, the caller's
        transaction rolls back and neither record changes.

        Raises:
            NotFoundError: Unknown purchase
            PermissionDeniedError: Actor may not correct this purchase
            ConstraintError: The change violates a reading or consumption rule,
                or touches a downstream contribution without override
        """
        purchase, chain, contribution, downstream = self._load(tx, purchase_id, lock=True)

        if contribution is not None and not actor.is_admin:
            raise PermissionDeniedError(
                "Admin access required to correct a purchase with a contribution",
                actor_id=actor.user_id,
            )
        if purchase.created_by != actor.user_id and not actor.is_admin:
            raise PermissionDeniedError(
                "Only the purchase creator or an admin can change this purchase",
                actor_id=actor.user_id,
            )

        impact = self.analyze(purchase, new_reading, chain, contribution, downstream)

        if impact.violations:
            logger.warning(
                "recalculation_rejected",
                purchase_id=str(purchase.id),
                violations=impact.violations,
            )
            raise ConstraintError(
                ConstraintError.INVALID_RECALCULATION,
                "Meter reading change would violate ledger constraints",
                violations=impact.violations,
            )

        if downstream is not None:
            if not override:
                raise ConstraintError(
                    ConstraintError.DOWNSTREAM_CONTRIBUTION,
                    "The following purchase has a contribution based on this "
                    "reading. Pass override to apply the change anyway.",
                    downstream_contribution_id=str(downstream.id),
                )
            if not actor.is_admin:
                raise PermissionDeniedError(
                    "Only an admin can override a downstream contribution",
                    actor_id=actor.user_id,
                )

        updated = Purchase.model_validate({
            **purchase.model_dump(),
            "meter_reading": new_reading,
        })
        tx.update_purchase(updated)

        view = None
        if contribution is not None:
            recalculated = Contribution.model_validate({
                **contribution.model_dump(),
                "meter_reading": new_reading,
                "tokens_consumed": impact.new_tokens_consumed,
            })
            tx.update_contribution(recalculated)
            view = ContributionView(
                contribution=recalculated,
                allocation=allocate(recalculated, updated),
            )

        logger.info(
            "meter_reading_recalculated",
            purchase_id=str(purchase.id),
            old_reading=str(purchase.meter_reading),
            new_reading=str(new_reading),
            contribution_id=str(contribution.id) if contribution else None,
            override=override,
        )

        return RecalculationOutcome(
            updated_purchase=updated,
            recalculated_contribution=view,
            impact=impact,
            original_purchase=purchase,
            original_contribution=contribution,
        )
