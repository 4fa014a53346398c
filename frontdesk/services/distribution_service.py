"""
Distribution strategy engine.

Pure functions: given a pending amount and a strategy, resolve the amount each
responsible party is assigned. Problems come back as DistributionError values
so callers decide whether to raise, display or log them.

Rules:
- single: exactly one party, receives everything
- equal: whole cents spread evenly, leftover cents on the final parties, so
  every share is within one cent of pending / N and the sum is exact
- percentage: percentages sum to 100 (+-0.01), each share floored to the
  cent, leftover cents on the final parties the same way as equal
- fixed: explicit amounts must sum to the pending amount to the cent
"""

from decimal import ROUND_DOWN, Decimal
from typing import List, Optional, Union

from frontdesk.core.errors import DistributionError, DistributionErrorCode
from frontdesk.models.distribution import (
    DistributionPlan,
    EqualStrategy,
    FixedStrategy,
    PercentageStrategy,
    PlannedShare,
    SingleStrategy,
    Strategy,
    StrategyKind,
)
from frontdesk.models.folio import Folio
from frontdesk.utils.money import (
    HUNDRED,
    MONEY_EPSILON,
    TWOPLACES,
    format_amount,
    money_sum,
    to_money,
)

PERCENT_TOLERANCE = Decimal("0.01")

DistributionResult = Union[DistributionPlan, DistributionError]


def _error(code: DistributionErrorCode, message: str, **details) -> DistributionError:
    return DistributionError(code, message, details)


def _plan(pending: Decimal, kind: StrategyKind, shares: List[PlannedShare],
          idempotency_key: Optional[str]) -> DistributionPlan:
    return DistributionPlan(
        pending_amount=pending,
        strategy=kind,
        shares=shares,
        idempotency_key=idempotency_key,
    )


def _distribute_single(pending: Decimal, strategy: SingleStrategy) -> Union[List[PlannedShare], DistributionError]:
    if len(strategy.party_ids) > 1:
        return _error(
            DistributionErrorCode.TOO_MANY_TARGETS,
            f"Single strategy takes exactly one party, got {len(strategy.party_ids)}",
            count=len(strategy.party_ids),
        )
    return [PlannedShare(party_id=strategy.party_ids[0], amount=pending, percentage=HUNDRED)]


def _spread_leftover(pending: Decimal, floors: List[Decimal]) -> List[Decimal]:
    """Add the cents the floored amounts leave short, one each, to the final entries."""
    count = len(floors)
    leftover = int((pending - sum(floors, Decimal("0.00"))) / TWOPLACES)
    return [
        amount + (TWOPLACES if index >= count - leftover else 0)
        for index, amount in enumerate(floors)
    ]


def _floor_cents(value: Decimal) -> Decimal:
    return value.quantize(TWOPLACES, rounding=ROUND_DOWN)


def _distribute_equal(pending: Decimal, strategy: EqualStrategy) -> List[PlannedShare]:
    count = len(strategy.party_ids)
    floors = [_floor_cents(pending / count)] * count
    amounts = _spread_leftover(pending, floors)
    return [
        PlannedShare(party_id=party_id, amount=amount)
        for party_id, amount in zip(strategy.party_ids, amounts)
    ]


def _distribute_percentage(pending: Decimal, strategy: PercentageStrategy) -> Union[List[PlannedShare], DistributionError]:
    for share in strategy.shares:
        if share.percentage <= 0:
            return _error(
                DistributionErrorCode.NON_POSITIVE_SHARE,
                f"Party {share.party_id} has non-positive percentage: {share.percentage}%",
                party_id=share.party_id,
                percentage=str(share.percentage),
            )

    total_pct = sum((share.percentage for share in strategy.shares), Decimal("0"))
    if abs(total_pct - HUNDRED) > PERCENT_TOLERANCE:
        return _error(
            DistributionErrorCode.PERCENTAGE_SUM_MISMATCH,
            f"Percentages sum to {total_pct.quantize(TWOPLACES)}%; they must sum to exactly 100%",
            total_percentage=str(total_pct),
        )

    # Scaled by the actual sum so the floors never exceed pending and leave
    # fewer than N cents over.
    floors = [_floor_cents(pending * share.percentage / total_pct) for share in strategy.shares]
    amounts = _spread_leftover(pending, floors)
    return [
        PlannedShare(party_id=share.party_id, amount=amount, percentage=share.percentage)
        for share, amount in zip(strategy.shares, amounts)
    ]


def _distribute_fixed(pending: Decimal, strategy: FixedStrategy) -> Union[List[PlannedShare], DistributionError]:
    for entry in strategy.amounts:
        if entry.amount <= 0:
            return _error(
                DistributionErrorCode.NON_POSITIVE_SHARE,
                f"Party {entry.party_id} has non-positive amount: {format_amount(entry.amount)}",
                party_id=entry.party_id,
                amount=format_amount(entry.amount),
            )

    total = money_sum(entry.amount for entry in strategy.amounts)
    # Amounts are already cents, so any gap of a cent or more is a mismatch.
    if abs(total - pending) >= MONEY_EPSILON:
        delta = total - pending
        return _error(
            DistributionErrorCode.FIXED_SUM_MISMATCH,
            f"Amounts sum to {format_amount(total)}; they must sum to exactly "
            f"{format_amount(pending)} (difference {format_amount(delta)})",
            total=format_amount(total),
            expected=format_amount(pending),
            delta=delta,
        )
    return [PlannedShare(party_id=entry.party_id, amount=entry.amount) for entry in strategy.amounts]


def compute_distribution(
    pending_amount,
    strategy: Strategy,
    idempotency_key: Optional[str] = None,
) -> DistributionResult:
    """
    Resolve each party's share of the pending amount.

    Returns a DistributionPlan, or a DistributionError describing why the
    request cannot be applied. Never raises for bad input.
    """
    pending = to_money(pending_amount)
    party_ids = strategy.party_ids

    if not party_ids:
        return _error(DistributionErrorCode.EMPTY_TARGET_SET, "At least one responsible party is required")

    if pending < MONEY_EPSILON:
        return _error(
            DistributionErrorCode.NOTHING_TO_DISTRIBUTE,
            f"There are no pending charges to distribute (pending {format_amount(pending)})",
            pending=format_amount(pending),
        )

    seen = set()
    for party_id in party_ids:
        if party_id in seen:
            return _error(
                DistributionErrorCode.DUPLICATE_TARGET,
                f"Party {party_id} appears more than once",
                party_id=party_id,
            )
        seen.add(party_id)

    kind = StrategyKind(strategy.kind)
    if kind == StrategyKind.SINGLE:
        shares = _distribute_single(pending, strategy)
    elif kind == StrategyKind.EQUAL:
        shares = _distribute_equal(pending, strategy)
    elif kind == StrategyKind.PERCENTAGE:
        shares = _distribute_percentage(pending, strategy)
    else:
        shares = _distribute_fixed(pending, strategy)

    if isinstance(shares, DistributionError):
        return shares
    return _plan(pending, kind, shares, idempotency_key)


def validate_targets_against_folio(strategy: Strategy, folio: Folio) -> Optional[DistributionError]:
    """Every target must be a responsible party on the folio."""
    known = set(folio.party_ids())
    for party_id in strategy.party_ids:
        if party_id not in known:
            return _error(
                DistributionErrorCode.UNKNOWN_PARTY,
                f"Party {party_id} is not a responsible party on folio {folio.id}",
                party_id=party_id,
                folio_id=folio.id,
            )
    return None


def preview_distribution(
    folio: Folio,
    strategy: Strategy,
    idempotency_key: Optional[str] = None,
) -> DistributionResult:
    """Compute against the folio's unassigned amount without touching it."""
    unknown = validate_targets_against_folio(strategy, folio)
    if unknown is not None:
        return unknown
    return compute_distribution(folio.unassigned_amount, strategy, idempotency_key)
