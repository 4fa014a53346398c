"""Pre-checkout rule set. Pure function over a reconciled folio snapshot."""

from frontdesk.models.checkout import CheckoutConfig, CheckoutValidation
from frontdesk.models.folio import Folio
from frontdesk.utils.money import ZERO, format_amount, is_positive


def validate_checkout(folio: Folio, config: CheckoutConfig) -> CheckoutValidation:
    """
    Blocking errors:
    - folio is not active
    - outstanding balance when it is not allowed
    - undistributed charges when full distribution is required

    Warnings:
    - outstanding balance when it is allowed
    - undistributed charges
    - parties with nothing assigned while others carry charges
    - integrity warnings from reconciliation
    """
    errors = []
    warnings = []

    if not folio.is_mutable:
        errors.append(f"Folio {folio.id} is {folio.status.value} and cannot be checked out")

    balance = folio.totals.global_balance
    has_balance = is_positive(balance)
    if has_balance and not config.allow_outstanding_balance:
        errors.append(f"There is an outstanding balance of {format_amount(balance)}")
    elif has_balance:
        warnings.append(f"Outstanding balance: {format_amount(balance)}")

    unassigned = folio.unassigned_amount
    charges_distributed = not is_positive(unassigned)
    if not charges_distributed:
        if config.require_full_distribution:
            errors.append(
                f"There are {format_amount(unassigned)} in charges not distributed to any party"
            )
        elif config.check_distribution:
            warnings.append(
                f"There are {format_amount(unassigned)} in charges not distributed to any party; "
                "distributing them is recommended"
            )

    unassigned_parties = [p for p in folio.parties if p.assigned_amount == ZERO]
    parties_assigned = not (unassigned_parties and len(folio.parties) > 1)
    if not parties_assigned and config.check_distribution:
        names = ", ".join(p.display_name or p.id for p in unassigned_parties)
        warnings.append(f"Some responsible parties have no charges assigned: {names}")

    warnings.extend(folio.integrity_warnings)

    return CheckoutValidation(
        can_checkout=not errors,
        has_outstanding_balance=has_balance,
        outstanding_amount=balance if has_balance else ZERO,
        charges_distributed=charges_distributed,
        parties_assigned=parties_assigned,
        warnings=warnings,
        errors=errors,
    )
