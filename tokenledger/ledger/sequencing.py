"""
Contribution Sequencing

Contributions are recorded in the same chronological order as the
purchases they settle. A contribution for purchase Pk is allowed only when
every earlier purchase already has one.

Purchases follow the same discipline: a member may not add a purchase
while the one before it is still unsettled. Admins may.

DESIGN DECISION: The "next eligible purchase" is never stored. It is
recomputed from the rows read inside the caller's transaction every time,
so it can't go stale under concurrent writers.
"""

from typing import Iterable, Optional
from uuid import UUID

import structlog

from tokenledger.ledger.errors import SequencingError
from tokenledger.ledger.reconciler import prior_purchase, sort_chronologically
from tokenledger.models.ledger import Actor, ContributionProgress, Purchase

logger = structlog.get_logger(__name__)


def blocking_purchases(
    purchase: Purchase,
    chain: list[Purchase],
    contributed_ids: set[UUID],
) -> list[Purchase]:
    """Earlier purchases still lacking a contribution, oldest first."""
    return [
        p for p in sort_chronologically(chain)
        if p.id != purchase.id
        and p.chronological_key < purchase.chronological_key
        and p.id not in contributed_ids
    ]


def validate_contribution_order(
    purchase: Purchase,
    chain: list[Purchase],
    contributed_ids: set[UUID],
    override: bool = False,
) -> list[UUID]:
    """
    Check that `purchase` is next in line for a contribution.

    Args:
        purchase: Purchase about to receive a contribution
        chain: Every purchase in the ledger
        contributed_ids: Ids of purchases that already have a contribution
        override: Administrative bypass; the caller records who and why

    Returns:
        Ids of the purchases skipped (empty unless override was used)

    Raises:
        SequencingError: If older purchases are uncontributed and there is
            no override
    """
    blocking = [p.id for p in blocking_purchases(purchase, chain, contributed_ids)]
    if blocking and not override:
        logger.info(
            "sequencing_blocked",
            purchase_id=str(purchase.id),
            blocking_count=len(blocking),
        )
        raise SequencingError(purchase.id, blocking)
    if blocking:
        logger.warning(
            "sequencing_overridden",
            purchase_id=str(purchase.id),
            skipped=[str(pid) for pid in blocking],
        )
    return blocking


def validate_purchase_order(
    purchase: Purchase,
    chain: list[Purchase],
    contributed_ids: set[UUID],
    actor: Actor,
) -> None:
    """
    Check that `purchase` may join the chain where its date puts it.

    Raises:
        SequencingError: If the purchase immediately before it has no
            contribution and the actor is not an admin
    """
    prior = prior_purchase(purchase, chain)
    if prior is None or prior.id in contributed_ids:
        return
    if actor.is_admin:
        logger.info(
            "purchase_order_bypassed",
            purchase_id=str(purchase.id),
            unsettled_purchase_id=str(prior.id),
            actor_id=str(actor.user_id),
        )
        return

    logger.info(
        "purchase_order_blocked",
        purchase_id=str(purchase.id),
        unsettled_purchase_id=str(prior.id),
    )
    raise SequencingError(
        purchase.id,
        [prior.id],
        message=(
            f"Cannot create new purchase. Previous purchase from "
            f"{prior.purchase_date:%Y-%m-%d} requires a contribution first."
        ),
    )


def next_eligible_purchase(
    chain: Iterable[Purchase],
    contributed_ids: set[UUID],
) -> Optional[Purchase]:
    """The oldest purchase without a contribution, or None."""
    for purchase in sort_chronologically(chain):
        if purchase.id not in contributed_ids:
            return purchase
    return None


def contribution_progress(
    chain: list[Purchase],
    contributed_ids: set[UUID],
) -> ContributionProgress:
    total = len(chain)
    done = sum(1 for p in chain if p.id in contributed_ids)
    return ContributionProgress(
        total_purchases=total,
        purchases_with_contributions=done,
        next_purchase=next_eligible_purchase(chain, contributed_ids),
        progress_percentage=round(done / total * 100) if total else 100,
    )
