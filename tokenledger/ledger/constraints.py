"""
Deletion / Edit Constraint Engine

Pure checks of ledger state plus actor identity. Each function returns
None when the action is allowed and raises otherwise; none of them
touches storage.

RULES:
- A purchase with a contribution is frozen. Its reading changes only
  through the recalculation path.
- A purchase may not be added, removed or moved in front of a purchase
  whose contribution was reconciled against the current chain.
- A contribution may be edited (amount only) by its owner or an admin.
- Only the most recently created contribution, system-wide, may be deleted.
- Locked accounts may not create purchases or contributions.
"""

from typing import Optional
from uuid import UUID

from tokenledger.ledger.errors import ConstraintError, PermissionDeniedError
from tokenledger.ledger.reconciler import next_purchase
from tokenledger.models.ledger import Actor, Contribution, Purchase


def _ensure_creator_or_admin(purchase: Purchase, actor: Actor, verb: str) -> None:
    if purchase.created_by != actor.user_id and not actor.is_admin:
        raise PermissionDeniedError(
            f"Only the purchase creator or an admin can {verb} this purchase",
            actor_id=actor.user_id,
        )


def _ensure_owner_or_admin(contribution: Contribution, actor: Actor, verb: str) -> None:
    if contribution.user_id != actor.user_id and not actor.is_admin:
        raise PermissionDeniedError(
            f"Only the contribution owner or an admin can {verb} this contribution",
            actor_id=actor.user_id,
        )


def ensure_can_write(actor: Actor) -> None:
    """Locked accounts are read-only."""
    if actor.is_locked:
        raise PermissionDeniedError(
            "Account is locked and cannot create ledger entries",
            actor_id=actor.user_id,
        )


def downstream_contribution(
    purchase: Purchase,
    chain: list[Purchase],
    contributions: dict[UUID, Contribution],
) -> Optional[Contribution]:
    """Contribution on the purchase right after `purchase`'s slot, if any."""
    following = next_purchase(purchase, chain)
    return contributions.get(following.id) if following else None


def ensure_no_downstream_contribution(
    downstream: Optional[Contribution],
    action: str,
) -> None:
    """Its tokens_consumed depends on the reading before it; keep that fixed."""
    if downstream is not None:
        raise ConstraintError(
            ConstraintError.DOWNSTREAM_CONTRIBUTION,
            f"Cannot {action}: the following purchase has a contribution "
            f"reconciled against the current meter readings",
            downstream_contribution_id=str(downstream.id),
        )


def can_delete_purchase(
    purchase: Purchase,
    contribution: Optional[Contribution],
    actor: Actor,
    downstream: Optional[Contribution] = None,
) -> None:
    _ensure_creator_or_admin(purchase, actor, "delete")
    if contribution is not None:
        raise ConstraintError(
            ConstraintError.HAS_CONTRIBUTION,
            "Cannot delete a purchase that has a contribution",
            contribution_id=str(contribution.id),
        )
    ensure_no_downstream_contribution(downstream, "delete this purchase")


def can_edit_purchase(
    purchase: Purchase,
    contribution: Optional[Contribution],
    actor: Actor,
) -> None:
    _ensure_creator_or_admin(purchase, actor, "edit")
    if contribution is not None:
        raise ConstraintError(
            ConstraintError.HAS_CONTRIBUTION,
            "Cannot edit a purchase that has a contribution. "
            "Use a meter reading correction instead.",
            contribution_id=str(contribution.id),
        )


def can_edit_contribution(contribution: Contribution, actor: Actor) -> None:
    _ensure_owner_or_admin(contribution, actor, "edit")


def latest_contribution(contributions: list[Contribution]) -> Optional[Contribution]:
    """Most recently created contribution across all users."""
    if not contributions:
        return None
    return max(contributions, key=lambda c: (c.created_at, str(c.id)))


def can_delete_contribution(
    contribution: Contribution,
    all_contributions: list[Contribution],
    actor: Actor,
) -> None:
    """
    Only the system-wide latest contribution may go.

    "Latest" is by created_at, not by the purchase date it settles.
    """
    _ensure_owner_or_admin(contribution, actor, "delete")
    latest = latest_contribution(all_contributions)
    if latest is None or latest.id != contribution.id:
        raise ConstraintError(
            ConstraintError.NOT_LATEST,
            "Only the most recent contribution can be deleted",
            latest_contribution_id=str(latest.id) if latest else None,
        )
