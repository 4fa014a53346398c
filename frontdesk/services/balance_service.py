"""
Balance / invariant model.

reconcile() recomputes folio totals from the per-party figures and compares
them with what the backend reported. Deviations are surfaced as integrity
warnings and in control_diff; they are never corrected here.
"""

import logging
from decimal import Decimal
from typing import List, Union

from frontdesk.core.errors import ReconciliationError
from frontdesk.models.folio import Folio, FolioTotals
from frontdesk.utils.money import ZERO, format_amount, money_equal, money_sum

logger = logging.getLogger(__name__)


def _structural_problems(folio: Folio) -> List[str]:
    problems = []
    seen = set()
    for party in folio.parties:
        if party.id in seen:
            problems.append(f"party {party.id} appears more than once")
        seen.add(party.id)
        if party.assigned_amount < ZERO:
            problems.append(
                f"party {party.id} has negative assigned amount {format_amount(party.assigned_amount)}"
            )
        if party.paid_amount < ZERO:
            problems.append(
                f"party {party.id} has negative paid amount {format_amount(party.paid_amount)}"
            )
    if folio.totals.general_payments < ZERO:
        problems.append(
            f"general payments are negative ({format_amount(folio.totals.general_payments)})"
        )
    distributed = money_sum(p.assigned_amount for p in folio.parties)
    if distributed > folio.total_charges and not money_equal(distributed, folio.total_charges):
        problems.append(
            f"distributed amount {format_amount(distributed)} exceeds total charges "
            f"{format_amount(folio.total_charges)}"
        )
    return problems


def _compare(label: str, reported: Decimal, recomputed: Decimal, warnings: List[str]) -> None:
    if not money_equal(reported, recomputed):
        warnings.append(
            f"{label} reported as {format_amount(reported)} but recomputes to "
            f"{format_amount(recomputed)} (difference {format_amount(reported - recomputed)})"
        )


def reconcile(folio: Folio) -> Union[Folio, ReconciliationError]:
    """
    Return a copy of the folio with totals recomputed.

    - distributed = sum of assigned amounts
    - unassigned = total charges - distributed
    - payments total = party payments + general payments
    - global balance = distributed - payments total
    - control_diff = reported global balance - recomputed global balance

    Structurally impossible snapshots come back as ReconciliationError.
    """
    problems = _structural_problems(folio)
    if problems:
        return ReconciliationError(
            f"Folio {folio.id} snapshot is inconsistent: " + "; ".join(problems),
            {"folio_id": folio.id, "problems": problems},
        )

    reported = folio.totals
    distributed = money_sum(p.assigned_amount for p in folio.parties)
    party_payments = money_sum(p.paid_amount for p in folio.parties)
    payments_total = party_payments + reported.general_payments
    global_balance = distributed - payments_total
    unassigned = folio.total_charges - distributed
    control_diff = reported.global_balance - global_balance

    warnings: List[str] = []
    _compare("Distributed amount", reported.distributed_amount, distributed, warnings)
    _compare("Unassigned amount", folio.unassigned_amount, unassigned, warnings)
    _compare("Payments total", reported.payments_total, payments_total, warnings)
    _compare("Global balance", reported.global_balance, global_balance, warnings)
    if not money_equal(reported.control_diff, ZERO):
        warnings.append(
            f"Backend reported a control difference of {format_amount(reported.control_diff)}"
        )

    for warning in warnings:
        logger.warning("Folio %s integrity: %s", folio.id, warning)

    totals = FolioTotals(
        distributed_amount=distributed,
        party_payments=party_payments,
        general_payments=reported.general_payments,
        payments_total=payments_total,
        global_balance=global_balance,
        control_diff=control_diff,
    )
    return folio.model_copy(
        update={
            "unassigned_amount": unassigned,
            "totals": totals,
            "integrity_warnings": warnings,
        }
    )


def check_invariants(folio: Folio) -> List[str]:
    """List the folio invariants that do not hold (empty when consistent)."""
    violations = []
    totals = folio.totals
    if not money_equal(folio.unassigned_amount + totals.distributed_amount, folio.total_charges):
        violations.append(
            f"unassigned {format_amount(folio.unassigned_amount)} + distributed "
            f"{format_amount(totals.distributed_amount)} != total charges "
            f"{format_amount(folio.total_charges)}"
        )
    expected_balance = totals.distributed_amount - totals.payments_total
    if not money_equal(totals.global_balance, expected_balance):
        violations.append(
            f"global balance {format_amount(totals.global_balance)} != distributed "
            f"{format_amount(totals.distributed_amount)} - payments "
            f"{format_amount(totals.payments_total)}"
        )
    return violations
