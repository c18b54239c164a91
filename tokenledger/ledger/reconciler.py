"""
Meter Reading Reconciler

Turns two chronologically adjacent meter readings into a token-consumption
figure:

    tokens_consumed(Pk) = Pk.meter_reading - P(k-1).meter_reading

For the very first purchase a caller-supplied baseline stands in for
P(k-1). Every function here is pure: callers pass the purchase chain they
read inside their own transaction.
"""

from decimal import Decimal
from typing import Iterable, Optional

from tokenledger.ledger.errors import LedgerValidationError
from tokenledger.models.ledger import Contribution, Purchase


def sort_chronologically(purchases: Iterable[Purchase]) -> list[Purchase]:
    """Order by purchase_date, tie-broken by created_at."""
    return sorted(purchases, key=lambda p: p.chronological_key)


def prior_purchase(purchase: Purchase, chain: list[Purchase]) -> Optional[Purchase]:
    """The purchase immediately before `purchase`, or None if it is the first."""
    earlier = [
        p for p in chain
        if p.id != purchase.id and p.chronological_key < purchase.chronological_key
    ]
    return max(earlier, key=lambda p: p.chronological_key) if earlier else None


def next_purchase(purchase: Purchase, chain: list[Purchase]) -> Optional[Purchase]:
    """The purchase immediately after `purchase`, or None if it is the latest."""
    later = [
        p for p in chain
        if p.id != purchase.id and p.chronological_key > purchase.chronological_key
    ]
    return min(later, key=lambda p: p.chronological_key) if later else None


def is_latest_purchase(purchase: Purchase, chain: list[Purchase]) -> bool:
    return next_purchase(purchase, chain) is None


def prior_reading_for(
    purchase: Purchase,
    chain: list[Purchase],
    baseline: Decimal,
) -> Decimal:
    """Reading of P(k-1), or the baseline when `purchase` is the first."""
    prior = prior_purchase(purchase, chain)
    return prior.meter_reading if prior else baseline


def reconcile(purchase: Purchase, prior_reading: Decimal) -> Decimal:
    """
    Consumption since the previous reading.

    Raises:
        LedgerValidationError: If the meter appears to run backwards
    """
    consumed = purchase.meter_reading - prior_reading
    if consumed < 0:
        raise LedgerValidationError(
            f"Meter reading cannot decrease: {purchase.meter_reading} kWh is below "
            f"the previous reading of {prior_reading} kWh",
            field="meter_reading",
        )
    return consumed


def reconcile_in_chain(
    purchase: Purchase,
    chain: list[Purchase],
    baseline: Decimal,
) -> Decimal:
    return reconcile(purchase, prior_reading_for(purchase, chain, baseline))


def recover_baseline(contribution: Contribution) -> Decimal:
    """
    The prior reading a contribution was reconciled against.

    For the first purchase this is the baseline the caller supplied
    when the contribution was created.
    """
    return contribution.meter_reading - contribution.tokens_consumed


def check_latest_reading_edit(
    purchase: Purchase,
    new_reading: Decimal,
    chain: list[Purchase],
) -> Optional[str]:
    """
    Direct edits to the most recent purchase's reading must move forward.

    Returns a violation message, or None when the edit is acceptable
    (or the purchase is not the most recent one).
    """
    if not is_latest_purchase(purchase, chain):
        return None
    prior = prior_purchase(purchase, chain)
    if prior is not None and new_reading <= prior.meter_reading:
        return (
            f"New reading ({new_reading} kWh) must be greater than the previous "
            f"purchase's reading ({prior.meter_reading} kWh)"
        )
    return None
