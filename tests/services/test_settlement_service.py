import asyncio
import re
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from pymongo.errors import ServerSelectionTimeoutError

from frontdesk.core.errors import (
    CollaboratorError,
    ConcurrentAttemptError,
    DistributionError,
    DistributionErrorCode,
    ReconciliationError,
    StateViolationError,
)
from frontdesk.models.checkout import CheckoutConfig, CheckoutResult, CheckoutState
from frontdesk.models.distribution import EqualStrategy, FixedAmount, FixedStrategy, SingleStrategy
from frontdesk.models.folio import FolioStatus, LedgerEventKind
from frontdesk.models.payment import PaymentMethod
from frontdesk.services import settlement_service
from frontdesk.services.idempotency import InMemoryIdempotencyStore
from frontdesk.services.settlement_service import SettlementOrchestrator, generate_receipt_number

FOLIO = "1001"
EVERYONE = EqualStrategy(party_ids=["1", "2", "3"])
SETTLE = CheckoutConfig(allow_outstanding_balance=True)


def states(attempt):
    return [step.state for step in attempt.steps]


async def count_events(backend, kind):
    return (await backend.get_history(FOLIO, kind)).total


def test_receipt_number_format():
    now = datetime(2026, 10, 19, 14, 5, 9, 123456, tzinfo=timezone.utc)

    number = generate_receipt_number(now)

    assert re.fullmatch(r"RCP-20261019-140509123-[A-Z0-9]{4}", number)


# -- distribution --------------------------------------------------------------


@pytest.mark.asyncio
async def test_distribute_assigns_pending_charges(orchestrator):
    applied = await orchestrator.distribute(FOLIO, EVERYONE, idempotency_key="dist-1")

    assert [s.amount for s in applied.plan.shares] == [Decimal("100.00")] * 3
    assert applied.folio.unassigned_amount == Decimal("0.00")
    assert applied.folio.totals.global_balance == Decimal("300.00")
    assert applied.replayed is False


@pytest.mark.asyncio
async def test_distribute_replay_does_not_call_backend_again(orchestrator, backend):
    first = await orchestrator.distribute(FOLIO, EVERYONE, idempotency_key="dist-1")
    second = await orchestrator.distribute(FOLIO, EVERYONE, idempotency_key="dist-1")

    assert second.replayed is True
    assert second.plan == first.plan
    assert second.folio == first.folio
    assert backend.calls["distribution"] == 1


@pytest.mark.asyncio
async def test_distribute_rejects_unknown_party_before_calling_backend(orchestrator, backend):
    with pytest.raises(DistributionError) as exc_info:
        await orchestrator.distribute(FOLIO, EqualStrategy(party_ids=["1", "42"]))

    assert exc_info.value.reason == DistributionErrorCode.UNKNOWN_PARTY
    assert backend.calls["distribution"] == 0


@pytest.mark.asyncio
async def test_distribute_fixed_mismatch_reports_delta(orchestrator):
    strategy = FixedStrategy(
        amounts=[FixedAmount(party_id="1", amount="100.00"), FixedAmount(party_id="2", amount="150.00")]
    )

    with pytest.raises(DistributionError) as exc_info:
        await orchestrator.distribute(FOLIO, strategy)

    assert exc_info.value.delta == Decimal("-50.00")


@pytest.mark.asyncio
async def test_distribute_nothing_pending(orchestrator):
    await orchestrator.distribute(FOLIO, EVERYONE)

    with pytest.raises(DistributionError) as exc_info:
        await orchestrator.distribute(FOLIO, EVERYONE)

    assert exc_info.value.reason == DistributionErrorCode.NOTHING_TO_DISTRIBUTE


# -- payments ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_same_payment_key_is_applied_once(orchestrator, backend):
    await orchestrator.distribute(FOLIO, EVERYONE)

    first = await orchestrator.register_payment(
        FOLIO, "50.00", PaymentMethod.CASH, party_id="1", idempotency_key="pay-123"
    )
    second = await orchestrator.register_payment(
        FOLIO, "50.00", PaymentMethod.CASH, party_id="1", idempotency_key="pay-123"
    )

    assert first.folio.party("1").paid_amount == Decimal("50.00")
    assert second.folio.party("1").paid_amount == Decimal("50.00")
    assert second.folio == first.folio
    assert second.replayed is True
    assert backend.calls["payment"] == 1
    assert await count_events(backend, LedgerEventKind.PAYMENT) == 1


@pytest.mark.asyncio
async def test_general_payment_counts_toward_global_balance(orchestrator):
    await orchestrator.distribute(FOLIO, EVERYONE)

    applied = await orchestrator.register_payment(FOLIO, "30.00", PaymentMethod.TRANSFER)

    assert applied.folio.totals.general_payments == Decimal("30.00")
    assert applied.folio.totals.global_balance == Decimal("270.00")
    assert applied.payment.party_id is None


@pytest.mark.asyncio
async def test_backend_already_applied_answer_counts_as_success(orchestrator, backend):
    backend.fail_next(
        "payment",
        CollaboratorError("Operation already applied", operation="payment", status_code=409, already_applied=True),
        after_apply=True,
    )

    applied = await orchestrator.register_payment(FOLIO, "25.00", PaymentMethod.CARD, idempotency_key="pay-7")

    assert applied.folio.totals.general_payments == Decimal("25.00")
    assert await count_events(backend, LedgerEventKind.PAYMENT) == 1


@pytest.mark.asyncio
async def test_unexpected_backend_exception_becomes_collaborator_error(orchestrator, backend):
    backend.fail_next("snapshot", RuntimeError("connection reset by peer"))

    with pytest.raises(CollaboratorError) as exc_info:
        await orchestrator.get_folio(FOLIO)

    assert exc_info.value.message == "connection reset by peer"


@pytest.mark.asyncio
async def test_inconsistent_snapshot_raises_reconciliation_error(orchestrator, backend, make_folio):
    broken = make_folio([("1", "10.00", "0"), ("1", "10.00", "0")], total_charges="20.00")
    backend.get_folio_snapshot = AsyncMock(return_value=broken)

    with pytest.raises(ReconciliationError):
        await orchestrator.get_folio(FOLIO)


# -- closed folios -------------------------------------------------------------


@pytest.mark.asyncio
async def test_closed_folio_rejects_every_mutation(orchestrator, backend):
    backend.add_folio("2002", "0.00", [("1", "Ana Torres")], status=FolioStatus.CLOSED)

    with pytest.raises(StateViolationError):
        await orchestrator.distribute("2002", SingleStrategy(party_ids=["1"]))
    with pytest.raises(StateViolationError):
        await orchestrator.register_payment("2002", "10.00", PaymentMethod.CASH)
    with pytest.raises(StateViolationError):
        await orchestrator.close_folio("2002", "1")

    assert backend.calls["payment"] == 0
    assert backend.calls["close"] == 0


@pytest.mark.asyncio
async def test_close_refused_while_balance_outstanding(orchestrator, backend):
    await orchestrator.distribute(FOLIO, EVERYONE)

    with pytest.raises(StateViolationError) as exc_info:
        await orchestrator.close_folio(FOLIO, "1")

    assert "300.00" in exc_info.value.message
    assert backend.calls["close"] == 0


@pytest.mark.asyncio
async def test_close_with_outstanding_balance_when_allowed(orchestrator):
    await orchestrator.distribute(FOLIO, EVERYONE)

    folio = await orchestrator.close_folio(FOLIO, "1", allow_outstanding_balance=True)

    assert folio.status == FolioStatus.CLOSED
    assert folio.party("1").assigned_amount == Decimal("300.00")


# -- checkout ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_checkout_without_balance_skips_payment(orchestrator, backend):
    await orchestrator.distribute(FOLIO, SingleStrategy(party_ids=["1"]))
    await orchestrator.register_payment(FOLIO, "300.00", PaymentMethod.CARD, party_id="1")

    result = await orchestrator.begin_checkout(FOLIO, "1", SETTLE)

    assert result.success
    assert states(result.attempt) == [
        CheckoutState.VALIDATING,
        CheckoutState.CLOSING,
        CheckoutState.COMPLETED,
    ]
    assert result.payments == []
    assert result.final_folio.status == FolioStatus.CLOSED
    assert re.fullmatch(r"RCP-\d{8}-\d{9}-[A-Z0-9]{4}", result.receipt_number)
    assert backend.calls["payment"] == 1


@pytest.mark.asyncio
async def test_checkout_pays_outstanding_balance_then_closes(orchestrator):
    await orchestrator.distribute(FOLIO, EVERYONE)

    result = await orchestrator.begin_checkout(FOLIO, "1", SETTLE)

    assert result.success
    assert [step.progress_percent for step in result.attempt.steps] == [20, 50, 80, 100]
    assert result.attempt.progress_percent == 100
    assert len(result.payments) == 1
    assert result.payments[0].amount == Decimal("300.00")
    assert result.payments[0].party_id == "1"
    assert result.final_balance == Decimal("0.00")
    assert result.close_key == result.attempt.close_key
    assert orchestrator.get_attempt(FOLIO) is result.attempt


@pytest.mark.asyncio
async def test_checkout_blocked_by_validation(orchestrator, backend):
    config = CheckoutConfig(require_full_distribution=True)

    result = await orchestrator.begin_checkout(FOLIO, "1", config)

    assert not result.success
    assert result.receipt_number is None
    assert any("300.00" in error for error in result.errors)
    assert result.attempt.state == CheckoutState.FAILED
    assert result.attempt.progress_percent == 0
    assert result.attempt.error_kind == "validation"
    assert backend.calls["close"] == 0


@pytest.mark.asyncio
async def test_checkout_blocked_by_outstanding_balance(orchestrator, backend):
    await orchestrator.distribute(FOLIO, EVERYONE)

    result = await orchestrator.begin_checkout(FOLIO, "1")

    assert not result.success
    assert result.errors == ["There is an outstanding balance of 300.00"]
    assert result.final_balance == Decimal("300.00")
    assert backend.calls["payment"] == 0
    assert backend.calls["close"] == 0


@pytest.mark.asyncio
async def test_checkout_can_leave_allowed_balance_unpaid(orchestrator, backend):
    await orchestrator.distribute(FOLIO, EVERYONE)
    config = CheckoutConfig(allow_outstanding_balance=True, settle_outstanding_balance=False)

    result = await orchestrator.begin_checkout(FOLIO, "1", config)

    assert result.success
    assert CheckoutState.REGISTERING_PAYMENT not in states(result.attempt)
    assert "Outstanding balance: 300.00" in result.messages
    assert backend.calls["payment"] == 0


@pytest.mark.asyncio
async def test_payment_failure_leaves_attempt_failed_with_message(orchestrator, backend):
    await orchestrator.distribute(FOLIO, EVERYONE)
    backend.fail_next(
        "payment", CollaboratorError("Card declined by issuer", operation="payment", status_code=402)
    )

    with pytest.raises(CollaboratorError):
        await orchestrator.begin_checkout(FOLIO, "1", SETTLE)

    attempt = orchestrator.get_attempt(FOLIO)
    assert attempt.state == CheckoutState.FAILED
    assert attempt.error == "Card declined by issuer"
    assert attempt.error_kind == "collaborator_error"
    assert attempt.progress_percent == 20
    assert attempt.diagnostics["failed_in"] == "registering_payment"
    assert attempt.diagnostics["recent_events"] == []
    assert backend.calls["close"] == 0
    assert (await orchestrator.get_folio(FOLIO)).status == FolioStatus.ACTIVE


@pytest.mark.asyncio
async def test_retry_after_payment_failure_reuses_payment_key(orchestrator, backend):
    await orchestrator.distribute(FOLIO, EVERYONE)
    backend.fail_next("payment", CollaboratorError("Card declined", operation="payment"))
    with pytest.raises(CollaboratorError):
        await orchestrator.begin_checkout(FOLIO, "1", SETTLE)
    failed = orchestrator.get_attempt(FOLIO)

    result = await orchestrator.begin_checkout(FOLIO, "1", SETTLE)

    assert result.success
    assert result.attempt.payment_key == failed.payment_key
    assert result.payments[0].idempotency_key == failed.payment_key
    assert await count_events(backend, LedgerEventKind.PAYMENT) == 1


@pytest.mark.asyncio
async def test_retry_after_lost_close_response_does_not_pay_twice(orchestrator, backend):
    await orchestrator.distribute(FOLIO, EVERYONE)
    backend.fail_next(
        "close",
        CollaboratorError("Gateway timeout", operation="close", status_code=504),
        after_apply=True,
    )
    with pytest.raises(CollaboratorError):
        await orchestrator.begin_checkout(FOLIO, "1", SETTLE)
    failed = orchestrator.get_attempt(FOLIO)
    assert failed.progress_percent == 50
    assert failed.error == "Gateway timeout"

    result = await orchestrator.begin_checkout(FOLIO, "1", SETTLE)

    assert result.success
    assert result.close_key == failed.close_key
    assert len(result.payments) == 1
    assert result.final_folio.status == FolioStatus.CLOSED
    assert await count_events(backend, LedgerEventKind.PAYMENT) == 1
    assert await count_events(backend, LedgerEventKind.CLOSE) == 1


@pytest.mark.asyncio
async def test_retry_after_close_failure_reuses_close_key(orchestrator, backend):
    await orchestrator.distribute(FOLIO, EVERYONE)
    backend.fail_next("close", CollaboratorError("Service unavailable", operation="close", status_code=503))
    with pytest.raises(CollaboratorError):
        await orchestrator.begin_checkout(FOLIO, "1", SETTLE)
    failed = orchestrator.get_attempt(FOLIO)
    assert (await orchestrator.get_folio(FOLIO)).status == FolioStatus.ACTIVE

    result = await orchestrator.begin_checkout(FOLIO, "1", SETTLE)

    assert result.success
    assert result.close_key == failed.close_key
    assert CheckoutState.REGISTERING_PAYMENT not in states(result.attempt)
    assert await count_events(backend, LedgerEventKind.PAYMENT) == 1


@pytest.mark.asyncio
async def test_history_failure_is_recorded_in_diagnostics(orchestrator, backend):
    await orchestrator.distribute(FOLIO, EVERYONE)
    backend.fail_next("payment", CollaboratorError("Card declined", operation="payment"))
    backend.fail_next("history", RuntimeError("history service down"))

    with pytest.raises(CollaboratorError):
        await orchestrator.begin_checkout(FOLIO, "1", SETTLE)

    attempt = orchestrator.get_attempt(FOLIO)
    assert attempt.error == "Card declined"
    assert attempt.diagnostics["history_error"] == "history service down"


@pytest.mark.asyncio
async def test_concurrent_checkout_is_rejected(orchestrator, backend):
    await orchestrator.distribute(FOLIO, EVERYONE)
    backend.latency = 0.01

    results = await asyncio.gather(
        orchestrator.begin_checkout(FOLIO, "1", SETTLE),
        orchestrator.begin_checkout(FOLIO, "1", SETTLE),
        return_exceptions=True,
    )

    assert isinstance(results[0], CheckoutResult)
    assert results[0].success
    assert isinstance(results[1], ConcurrentAttemptError)
    assert await count_events(backend, LedgerEventKind.PAYMENT) == 1


@pytest.mark.asyncio
async def test_checkout_of_closed_folio_is_blocked(orchestrator, backend):
    backend.add_folio("2002", "0.00", [("1", "Ana Torres")], status=FolioStatus.CLOSED)

    result = await orchestrator.begin_checkout("2002", "1")

    assert not result.success
    assert "closed" in result.errors[0]
    assert backend.calls["close"] == 0


def test_no_attempt_before_checkout(orchestrator):
    assert orchestrator.get_attempt(FOLIO) is None


class UnreachableStoreOnce(InMemoryIdempotencyStore):
    """Loses the Mongo connection the first time the given operation is stored."""

    def __init__(self, operation):
        super().__init__()
        self.operation = operation

    async def store_or_replay(self, *, key, operation, folio_id, payload, compute):
        if operation == self.operation:
            self.operation = None
            raise ServerSelectionTimeoutError("mongo:27017: [Errno 111] Connection refused")
        return await super().store_or_replay(
            key=key, operation=operation, folio_id=folio_id, payload=payload, compute=compute
        )


@pytest.mark.asyncio
async def test_store_outage_during_payment_leaves_attempt_failed(backend):
    orchestrator = SettlementOrchestrator(backend, UnreachableStoreOnce("payment"), SETTLE)
    await orchestrator.distribute(FOLIO, EVERYONE)

    with pytest.raises(ServerSelectionTimeoutError):
        await orchestrator.begin_checkout(FOLIO, "1")

    failed = orchestrator.get_attempt(FOLIO)
    assert failed.state == CheckoutState.FAILED
    assert failed.error_kind == "internal_error"
    assert "Connection refused" in failed.error
    assert failed.progress_percent == 20
    assert failed.diagnostics["failed_in"] == "registering_payment"

    result = await orchestrator.begin_checkout(FOLIO, "1")

    assert result.success
    assert result.attempt.payment_key == failed.payment_key
    assert await count_events(backend, LedgerEventKind.PAYMENT) == 1


@pytest.mark.asyncio
async def test_cancelled_checkout_leaves_attempt_failed(orchestrator, backend):
    await orchestrator.distribute(FOLIO, EVERYONE)
    backend.latency = 0.05

    task = asyncio.create_task(orchestrator.begin_checkout(FOLIO, "1", SETTLE))
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    attempt = orchestrator.get_attempt(FOLIO)
    assert attempt.state == CheckoutState.FAILED
    assert attempt.error_kind == "cancelled"

    backend.latency = 0
    result = await orchestrator.begin_checkout(FOLIO, "1", SETTLE)
    assert result.success
    assert result.attempt.payment_key == attempt.payment_key


@pytest.mark.asyncio
async def test_folio_locks_are_released_after_each_call(orchestrator):
    await orchestrator.distribute(FOLIO, EVERYONE)
    await orchestrator.begin_checkout(FOLIO, "1", SETTLE)

    assert len(orchestrator._locks) == 0


@pytest.mark.asyncio
async def test_oldest_finished_attempts_are_forgotten(orchestrator, backend, monkeypatch):
    monkeypatch.setattr(settlement_service, "MAX_TRACKED_ATTEMPTS", 2)
    for folio_id in ["2001", "2002", "2003"]:
        backend.add_folio(folio_id, "0.00", [("1", "Ana Torres")])
        await orchestrator.begin_checkout(folio_id, "1")

    assert orchestrator.get_attempt("2001") is None
    assert orchestrator.get_attempt("2002").state == CheckoutState.COMPLETED
    assert orchestrator.get_attempt("2003").state == CheckoutState.COMPLETED
