"""
Cost Allocator

Each contribution pays for the tokens its user actually consumed, at the
unit price of the purchase it settles:

    true_cost   = tokens_consumed / total_tokens * total_payment
    overpayment = contribution_amount - true_cost

DESIGN DECISION: Everything here is unrounded Decimal arithmetic.
Rounding happens only at presentation, through to_money(). Summing
rounded values would let cents drift away from what was actually paid.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional
from uuid import UUID

from tokenledger.models.ledger import (
    Allocation,
    BalanceEntry,
    Contribution,
    CostBreakdown,
    Purchase,
)

ZERO = Decimal("0")


def to_money(value: Decimal, places: int = 2) -> Decimal:
    """Quantize for display, half-up."""
    return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


def cost_per_kwh(purchase: Purchase) -> Decimal:
    return purchase.total_payment / purchase.total_tokens


def true_cost(tokens_consumed: Decimal, purchase: Purchase) -> Decimal:
    # Multiply first so exact shares stay exact
    return tokens_consumed * purchase.total_payment / purchase.total_tokens


def allocate(contribution: Contribution, purchase: Purchase) -> Allocation:
    """
    Allocate the cost of one contribution against its purchase.

    Args:
        contribution: The contribution (tokens_consumed already derived)
        purchase: The purchase it settles

    Returns:
        Allocation with true cost, efficiency and overpayment
    """
    cost = true_cost(contribution.tokens_consumed, purchase)
    amount = contribution.contribution_amount
    efficiency = float(cost / amount * 100) if amount > 0 else 0.0
    return Allocation(
        true_cost=cost,
        efficiency_pct=efficiency,
        overpayment=amount - cost,
    )


def running_balance(
    pairs: Iterable[tuple[Contribution, Purchase]],
) -> list[BalanceEntry]:
    """
    Cumulative overpayment over contributions in creation order.

    The input is re-sorted by created_at, so callers may pass pairs in any
    order.
    """
    ordered = sorted(pairs, key=lambda pair: (pair[0].created_at, str(pair[0].id)))
    entries = []
    balance = ZERO
    for contribution, purchase in ordered:
        overpayment = allocate(contribution, purchase).overpayment
        balance += overpayment
        entries.append(BalanceEntry(
            contribution_id=contribution.id,
            created_at=contribution.created_at,
            overpayment=overpayment,
            balance=balance,
        ))
    return entries


def balance_total(entries: Iterable[BalanceEntry]) -> Decimal:
    """Full re-scan of the overpayments; must equal the last running value."""
    return sum((entry.overpayment for entry in entries), ZERO)


def summarize_costs(
    pairs: Iterable[tuple[Contribution, Purchase]],
    user_id: Optional[UUID] = None,
) -> CostBreakdown:
    """
    Aggregate cost figures, optionally for a single user.

    The emergency premium is what emergency tokens cost over the regular
    rate: emergency_tokens * (emergency_rate - regular_rate). It is zero
    unless both kinds of purchase were consumed.
    """
    count = 0
    tokens = paid = cost = ZERO
    regular_tokens = regular_cost = ZERO
    emergency_tokens = emergency_cost = ZERO

    for contribution, purchase in pairs:
        if user_id is not None and contribution.user_id != user_id:
            continue
        allocation = allocate(contribution, purchase)
        count += 1
        tokens += contribution.tokens_consumed
        paid += contribution.contribution_amount
        cost += allocation.true_cost
        if purchase.is_emergency:
            emergency_tokens += contribution.tokens_consumed
            emergency_cost += allocation.true_cost
        else:
            regular_tokens += contribution.tokens_consumed
            regular_cost += allocation.true_cost

    regular_rate = regular_cost / regular_tokens if regular_tokens > 0 else ZERO
    emergency_rate = emergency_cost / emergency_tokens if emergency_tokens > 0 else ZERO
    premium = ZERO
    if regular_tokens > 0 and emergency_tokens > 0:
        premium = emergency_tokens * (emergency_rate - regular_rate)

    return CostBreakdown(
        contribution_count=count,
        total_tokens_used=tokens,
        total_amount_paid=paid,
        total_true_cost=cost,
        average_cost_per_kwh=cost / tokens if tokens > 0 else ZERO,
        efficiency_pct=float(cost / paid * 100) if paid > 0 else 0.0,
        overpayment=paid - cost,
        regular_cost_per_kwh=regular_rate,
        emergency_cost_per_kwh=emergency_rate,
        emergency_premium=premium,
    )
