from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from frontdesk.api.deps import get_orchestrator
from frontdesk.core.config import settings
from frontdesk.core.errors import DistributionError
from frontdesk.models.checkout import CheckoutAttempt, CheckoutResult, CheckoutValidation
from frontdesk.models.distribution import DistributionPlan
from frontdesk.models.folio import Folio, HistoryPage, LedgerEventKind
from frontdesk.models.settlement import DistributionApplied, PaymentApplied
from frontdesk.schemas.folio import CheckoutCreate, CloseCreate, DistributionCreate, PaymentCreate
from frontdesk.services.distribution_service import preview_distribution
from frontdesk.services.settlement_service import SettlementOrchestrator

router = APIRouter()


@router.get("/{folio_id}", response_model=Folio)
async def get_folio(
    folio_id: str,
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
):
    """Reconciled folio snapshot"""
    return await orchestrator.get_folio(folio_id)


@router.post("/{folio_id}/distribution/preview", response_model=DistributionPlan)
async def preview(
    folio_id: str,
    distribution_in: DistributionCreate,
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
):
    """Compute a distribution without applying it"""
    folio = await orchestrator.get_folio(folio_id)
    plan = preview_distribution(folio, distribution_in.strategy, distribution_in.idempotency_key)
    if isinstance(plan, DistributionError):
        raise plan
    return plan


@router.post("/{folio_id}/distribution", response_model=DistributionApplied)
async def distribute(
    folio_id: str,
    distribution_in: DistributionCreate,
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.distribute(
        folio_id, distribution_in.strategy, distribution_in.idempotency_key
    )


@router.post("/{folio_id}/payments", response_model=PaymentApplied)
async def register_payment(
    folio_id: str,
    payment_in: PaymentCreate,
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.register_payment(
        folio_id,
        payment_in.amount,
        payment_in.method,
        party_id=payment_in.party_id,
        note=payment_in.note,
        idempotency_key=payment_in.idempotency_key,
    )


@router.post("/{folio_id}/close", response_model=Folio)
async def close_folio(
    folio_id: str,
    close_in: CloseCreate,
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.close_folio(
        folio_id,
        close_in.titular_party_id,
        idempotency_key=close_in.idempotency_key,
        allow_outstanding_balance=close_in.allow_outstanding_balance,
    )


@router.get("/{folio_id}/checkout/validation", response_model=CheckoutValidation)
async def validate_checkout(
    folio_id: str,
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
):
    """Blocking errors and warnings for checking out now"""
    _, validation = await orchestrator.validate(folio_id)
    return validation


@router.post("/{folio_id}/checkout", response_model=CheckoutResult)
async def checkout(
    folio_id: str,
    checkout_in: CheckoutCreate,
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
):
    """Settle the outstanding balance and close the folio"""
    return await orchestrator.begin_checkout(
        folio_id,
        checkout_in.titular_party_id,
        checkout_in.config(orchestrator.config),
    )


@router.get("/{folio_id}/checkout/attempt", response_model=CheckoutAttempt)
async def get_checkout_attempt(
    folio_id: str,
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
):
    attempt = orchestrator.get_attempt(folio_id)
    if attempt is None:
        raise HTTPException(status_code=404, detail="No checkout attempt for this folio")
    return attempt


@router.get("/{folio_id}/history", response_model=HistoryPage)
async def get_history(
    folio_id: str,
    kind: Optional[LedgerEventKind] = None,
    page: int = Query(1, ge=1),
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.get_history(folio_id, kind, page, settings.HISTORY_PAGE_SIZE)
