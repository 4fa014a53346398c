"""
Settlement orchestrator.

Coordinates distribution, payment and closing against the folio backend, and
drives checkout:

    idle -> validating -> (registering_payment)? -> closing -> completed

with any step able to end in failed.

Every mutating call goes through the idempotency store with a key, so a
retried checkout answers already-applied steps from the store (or from the
backend's "already applied" reply) instead of applying them twice. Snapshots
are fetched and returned explicitly; the only state kept here is the latest
checkout attempt per folio and which folios have one in flight.
"""

import logging
import random
import string
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

from frontdesk.clients.base import FolioBackend
from frontdesk.core.errors import (
    CollaboratorError,
    ConcurrentAttemptError,
    DistributionError,
    FolioError,
    ReconciliationError,
    StateViolationError,
)
from frontdesk.models.checkout import (
    ALLOWED_TRANSITIONS,
    STATE_PROGRESS,
    CheckoutAttempt,
    CheckoutConfig,
    CheckoutResult,
    CheckoutState,
    CheckoutStep,
    CheckoutValidation,
    RegisteredPayment,
)
from frontdesk.models.distribution import DistributionPlan, DistributionRequest, Strategy
from frontdesk.models.folio import Folio, FolioStatus, HistoryPage, LedgerEventKind
from frontdesk.models.payment import CloseRequest, PaymentMethod, PaymentRequest
from frontdesk.models.settlement import DistributionApplied, PaymentApplied
from frontdesk.services.balance_service import reconcile
from frontdesk.services.checkout_validation import validate_checkout
from frontdesk.services.distribution_service import (
    compute_distribution,
    validate_targets_against_folio,
)
from frontdesk.services.idempotency import IdempotencyStore, generate_key
from frontdesk.utils.locks import KeyedLock
from frontdesk.utils.money import format_amount, is_positive, to_money

logger = logging.getLogger(__name__)

FAILED_STEP_OPERATION = {
    CheckoutState.REGISTERING_PAYMENT: LedgerEventKind.PAYMENT,
    CheckoutState.CLOSING: LedgerEventKind.CLOSE,
}

DIAGNOSTIC_EVENTS = 10

# Latest attempt per folio; the oldest finished ones are forgotten past this.
MAX_TRACKED_ATTEMPTS = 1000


def generate_receipt_number(now: Optional[datetime] = None) -> str:
    """RCP-YYYYMMDD-HHMMSSmmm-XXXX"""
    now = now or datetime.now(timezone.utc)
    random_part = "".join(random.choices(string.ascii_uppercase + string.digits, k=4))
    return (
        f"RCP-{now:%Y%m%d}-{now:%H%M%S}{now.microsecond // 1000:03d}-{random_part}"
    )


class SettlementOrchestrator:
    def __init__(
        self,
        backend: FolioBackend,
        idempotency_store: IdempotencyStore,
        config: Optional[CheckoutConfig] = None,
    ):
        self._backend = backend
        self._store = idempotency_store
        self._config = config or CheckoutConfig()
        self._in_flight: Set[str] = set()
        self._attempts: Dict[str, CheckoutAttempt] = {}
        self._locks = KeyedLock()

    @property
    def config(self) -> CheckoutConfig:
        return self._config

    async def aclose(self) -> None:
        await self._backend.aclose()

    # -- backend access --------------------------------------------------------

    async def _call(self, operation: str, key: Optional[str], fn: Callable[[], Awaitable[Any]]) -> Any:
        """Run a backend call; anything but our own errors becomes CollaboratorError."""
        try:
            return await fn()
        except FolioError:
            raise
        except Exception as e:
            logger.error("Folio backend %s failed (key=%s): %s", operation, key, e)
            raise CollaboratorError(str(e), operation=operation, idempotency_key=key) from e

    def _reconciled(self, folio: Folio) -> Folio:
        result = reconcile(folio)
        if isinstance(result, ReconciliationError):
            logger.error("Folio %s failed reconciliation: %s", folio.id, result.message)
            raise result
        return result

    async def _apply(
        self,
        *,
        operation: str,
        folio_id: str,
        key: str,
        payload: Dict[str, Any],
        submit: Callable[[], Awaitable[Folio]],
        extra: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Dict[str, Any], bool]:
        async def compute() -> Dict[str, Any]:
            try:
                folio = await self._call(operation, key, submit)
            except CollaboratorError as e:
                if not e.already_applied:
                    raise
                logger.info("Folio %s: %s %s already applied by backend", folio_id, operation, key)
                folio = await self._call("snapshot", key, lambda: self._backend.get_folio_snapshot(folio_id))
            snapshot = {"folio": folio.model_dump(mode="json")}
            snapshot.update(extra or {})
            return snapshot

        snapshot, replayed = await self._store.store_or_replay(
            key=key,
            operation=operation,
            folio_id=folio_id,
            payload=payload,
            compute=compute,
        )
        if replayed:
            logger.info("Folio %s: %s %s answered from idempotency store", folio_id, operation, key)
        return snapshot, replayed

    def _require_mutable(self, folio: Folio, operation: str) -> None:
        if not folio.is_mutable:
            raise StateViolationError(folio.id, folio.status.value, operation)

    # -- queries ---------------------------------------------------------------

    async def get_folio(self, folio_id: str) -> Folio:
        """Fetch the snapshot and reconcile it. Raises ReconciliationError."""
        folio = await self._call("snapshot", None, lambda: self._backend.get_folio_snapshot(folio_id))
        return self._reconciled(folio)

    async def validate(self, folio_id: str, config: Optional[CheckoutConfig] = None) -> Tuple[Folio, CheckoutValidation]:
        folio = await self.get_folio(folio_id)
        return folio, validate_checkout(folio, config or self._config)

    async def get_history(
        self,
        folio_id: str,
        kind: Optional[LedgerEventKind] = None,
        page: int = 1,
        per_page: int = 50,
    ) -> HistoryPage:
        return await self._call(
            "history", None, lambda: self._backend.get_history(folio_id, kind, page, per_page)
        )

    def get_attempt(self, folio_id: str) -> Optional[CheckoutAttempt]:
        return self._attempts.get(folio_id)

    # -- mutations -------------------------------------------------------------

    async def distribute(
        self,
        folio_id: str,
        strategy: Strategy,
        idempotency_key: Optional[str] = None,
    ) -> DistributionApplied:
        """Assign the folio's unassigned charges. Raises DistributionError on bad input."""
        key = idempotency_key or generate_key("distribution")
        request = DistributionRequest(strategy=strategy, idempotency_key=key)

        async with self._locks.hold(folio_id):
            extra = None
            if await self._store.get(key) is None:
                folio = await self.get_folio(folio_id)
                self._require_mutable(folio, "distribution")
                unknown = validate_targets_against_folio(strategy, folio)
                if unknown is not None:
                    raise unknown
                plan = compute_distribution(folio.unassigned_amount, strategy, key)
                if isinstance(plan, DistributionError):
                    raise plan
                extra = {"plan": plan.model_dump(mode="json")}

            snapshot, replayed = await self._apply(
                operation="distribution",
                folio_id=folio_id,
                key=key,
                payload=request.model_dump(mode="json"),
                submit=lambda: self._backend.submit_distribution(folio_id, request),
                extra=extra,
            )

        plan = DistributionPlan.model_validate(snapshot["plan"])
        folio = self._reconciled(Folio.model_validate(snapshot["folio"]))
        logger.info(
            "Folio %s: %s distribution of %s applied (key=%s, replayed=%s)",
            folio_id, plan.strategy.value, format_amount(plan.total), key, replayed,
        )
        return DistributionApplied(plan=plan, folio=folio, replayed=replayed)

    async def register_payment(
        self,
        folio_id: str,
        amount,
        method: PaymentMethod,
        party_id: Optional[str] = None,
        note: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> PaymentApplied:
        """Register a party-scoped (party_id) or general payment."""
        key = idempotency_key or generate_key("payment")
        request = PaymentRequest(
            idempotency_key=key,
            amount=amount,
            method=method,
            party_id=party_id,
            note=note,
        )

        async with self._locks.hold(folio_id):
            if await self._store.get(key) is None:
                folio = await self.get_folio(folio_id)
                self._require_mutable(folio, "payment")

            snapshot, replayed = await self._apply(
                operation="payment",
                folio_id=folio_id,
                key=key,
                payload=request.model_dump(mode="json"),
                submit=lambda: self._backend.submit_payment(folio_id, request),
            )

        folio = self._reconciled(Folio.model_validate(snapshot["folio"]))
        payment = RegisteredPayment(
            idempotency_key=key,
            amount=request.amount,
            method=request.method,
            party_id=party_id,
            note=note,
            replayed=replayed,
        )
        logger.info(
            "Folio %s: payment of %s (%s) registered (key=%s, replayed=%s)",
            folio_id, format_amount(request.amount), request.method.value, key, replayed,
        )
        return PaymentApplied(payment=payment, folio=folio, replayed=replayed)

    async def close_folio(
        self,
        folio_id: str,
        titular_party_id: str,
        idempotency_key: Optional[str] = None,
        allow_outstanding_balance: Optional[bool] = None,
        resume: bool = False,
    ) -> Folio:
        """
        Close the folio. Refuses while a balance is outstanding unless allowed.

        resume re-sends a close under a key the backend may already have
        applied, skipping the status and balance checks.
        """
        key = idempotency_key or generate_key("close")
        if allow_outstanding_balance is None:
            allow_outstanding_balance = self._config.allow_outstanding_balance
        request = CloseRequest(idempotency_key=key, titular_party_id=titular_party_id)

        async with self._locks.hold(folio_id):
            if not resume and await self._store.get(key) is None:
                folio = await self.get_folio(folio_id)
                self._require_mutable(folio, "close")
                balance = folio.totals.global_balance
                if is_positive(balance) and not allow_outstanding_balance:
                    raise StateViolationError(
                        folio_id,
                        folio.status.value,
                        "close",
                        f"outstanding balance of {format_amount(balance)}",
                    )

            snapshot, replayed = await self._apply(
                operation="close",
                folio_id=folio_id,
                key=key,
                payload=request.model_dump(mode="json"),
                submit=lambda: self._backend.close_folio(folio_id, request),
            )

        folio = self._reconciled(Folio.model_validate(snapshot["folio"]))
        if folio.status != FolioStatus.CLOSED:
            raise CollaboratorError(
                f"Folio backend answered the close of folio {folio_id} with status {folio.status.value}",
                operation="close",
                idempotency_key=key,
            )
        logger.info("Folio %s closed to titular %s (key=%s, replayed=%s)", folio_id, titular_party_id, key, replayed)
        return folio

    # -- checkout state machine ------------------------------------------------

    def _transition(self, attempt: CheckoutAttempt, state: CheckoutState, description: str) -> None:
        if state not in ALLOWED_TRANSITIONS[attempt.state]:
            raise RuntimeError(f"Illegal checkout transition {attempt.state.value} -> {state.value}")
        attempt.state = state
        attempt.progress_percent = STATE_PROGRESS[state]
        attempt.description = description
        attempt.steps.append(
            CheckoutStep(state=state, progress_percent=attempt.progress_percent, description=description)
        )
        logger.info(
            "Checkout folio %s: %s (%s%%) %s",
            attempt.folio_id, state.value, attempt.progress_percent, description,
        )

    def _fail(self, attempt: CheckoutAttempt, message: str, kind: str) -> None:
        if attempt.is_terminal:
            return
        # Back to the progress of the last step that finished.
        last_good = attempt.steps[-2].progress_percent if len(attempt.steps) >= 2 else 0
        failed_in = attempt.state
        attempt.state = CheckoutState.FAILED
        attempt.progress_percent = last_good
        attempt.description = message
        attempt.error = message
        attempt.error_kind = kind
        attempt.diagnostics["failed_in"] = failed_in.value
        attempt.steps.append(
            CheckoutStep(state=CheckoutState.FAILED, progress_percent=last_good, description=message)
        )
        logger.error("Checkout folio %s failed in %s: %s", attempt.folio_id, failed_in.value, message)

    async def _collect_diagnostics(self, attempt: CheckoutAttempt, failed_in: CheckoutState) -> None:
        kind = FAILED_STEP_OPERATION.get(failed_in)
        try:
            page = await self._backend.get_history(attempt.folio_id, kind, 1, DIAGNOSTIC_EVENTS)
        except Exception as e:
            logger.warning("Could not fetch history for folio %s: %s", attempt.folio_id, e)
            attempt.diagnostics["history_error"] = str(e)
            return
        attempt.diagnostics["recent_events"] = [
            event.model_dump(mode="json") for event in page.events[:DIAGNOSTIC_EVENTS]
        ]

    def _remember(self, attempt: CheckoutAttempt) -> None:
        self._attempts.pop(attempt.folio_id, None)
        self._attempts[attempt.folio_id] = attempt
        if len(self._attempts) <= MAX_TRACKED_ATTEMPTS:
            return
        for folio_id, tracked in list(self._attempts.items()):
            if len(self._attempts) <= MAX_TRACKED_ATTEMPTS:
                break
            if tracked.is_terminal and folio_id not in self._in_flight:
                del self._attempts[folio_id]

    def _new_attempt(self, folio_id: str, titular_party_id: str) -> CheckoutAttempt:
        previous = self._attempts.get(folio_id)
        if previous and previous.state == CheckoutState.FAILED and previous.titular_party_id == titular_party_id:
            # Unconfirmed steps keep their keys so the retry replays them.
            payment_key = previous.payment_key if not previous.payments else generate_key("payment")
            return CheckoutAttempt(
                folio_id=folio_id,
                titular_party_id=titular_party_id,
                payment_key=payment_key,
                close_key=previous.close_key,
                payments=list(previous.payments),
                diagnostics={"resumed_from_failure": previous.error},
            )
        return CheckoutAttempt(
            folio_id=folio_id,
            titular_party_id=titular_party_id,
            payment_key=generate_key("payment"),
            close_key=generate_key("close"),
        )

    async def begin_checkout(
        self,
        folio_id: str,
        titular_party_id: str,
        config: Optional[CheckoutConfig] = None,
    ) -> CheckoutResult:
        """
        Run checkout for the folio.

        Blocking validation errors return an unsuccessful result. Any other
        error, including cancellation, leaves the attempt failed and is
        re-raised. A second attempt while one is in flight raises
        ConcurrentAttemptError.
        """
        if folio_id in self._in_flight:
            raise ConcurrentAttemptError(folio_id)
        self._in_flight.add(folio_id)
        try:
            attempt = self._new_attempt(folio_id, titular_party_id)
            self._remember(attempt)
            return await self._run_checkout(attempt, config or self._config)
        finally:
            self._in_flight.discard(folio_id)

    async def _run_checkout(self, attempt: CheckoutAttempt, config: CheckoutConfig) -> CheckoutResult:
        folio_id = attempt.folio_id
        messages = []
        folio: Optional[Folio] = None
        try:
            self._transition(attempt, CheckoutState.VALIDATING, "Validating folio")
            folio = await self.get_folio(folio_id)

            # A retry after a close whose answer was lost finds the folio closed.
            resuming_close = (
                folio.status == FolioStatus.CLOSED and "resumed_from_failure" in attempt.diagnostics
            )
            if not resuming_close:
                validation = validate_checkout(folio, config)
                messages.extend(validation.warnings)
                if not validation.can_checkout:
                    self._fail(attempt, "; ".join(validation.errors), kind="validation")
                    return self._result(attempt, folio, messages, validation.errors, success=False)

                balance = folio.totals.global_balance
                if is_positive(balance) and config.settle_outstanding_balance:
                    self._transition(
                        attempt,
                        CheckoutState.REGISTERING_PAYMENT,
                        f"Registering final payment of {format_amount(balance)}",
                    )
                    applied = await self.register_payment(
                        folio_id,
                        balance,
                        config.payment_method,
                        party_id=attempt.titular_party_id,
                        note="Final checkout payment",
                        idempotency_key=attempt.payment_key,
                    )
                    attempt.payments.append(applied.payment)
                    folio = applied.folio
                    messages.append(f"Payment of {format_amount(balance)} registered")

                    remaining = folio.totals.global_balance
                    if is_positive(remaining) and not config.allow_outstanding_balance:
                        raise StateViolationError(
                            folio_id,
                            folio.status.value,
                            "close",
                            f"balance of {format_amount(remaining)} remains after payment",
                        )

            self._transition(attempt, CheckoutState.CLOSING, "Closing folio")
            folio = await self.close_folio(
                folio_id,
                attempt.titular_party_id,
                idempotency_key=attempt.close_key,
                allow_outstanding_balance=config.allow_outstanding_balance,
                resume=resuming_close,
            )
            self._transition(attempt, CheckoutState.COMPLETED, "Checkout completed")
            return self._result(attempt, folio, messages, [], success=True)

        except FolioError as e:
            failed_in = attempt.state
            self._fail(attempt, e.message, kind=e.code)
            await self._collect_diagnostics(attempt, failed_in)
            raise
        except Exception as e:
            failed_in = attempt.state
            logger.exception("Checkout folio %s raised unexpectedly", folio_id)
            self._fail(attempt, str(e) or type(e).__name__, kind="internal_error")
            await self._collect_diagnostics(attempt, failed_in)
            raise
        except BaseException:
            # Cancelled: nothing can be awaited here.
            self._fail(attempt, "Checkout interrupted", kind="cancelled")
            raise

    def _result(self, attempt, folio, messages, errors, success: bool) -> CheckoutResult:
        final_balance: Decimal = folio.totals.global_balance if folio else to_money(0)
        return CheckoutResult(
            success=success,
            folio_id=attempt.folio_id,
            final_folio=folio,
            receipt_number=generate_receipt_number() if success else None,
            payments=list(attempt.payments),
            close_key=attempt.close_key if success else None,
            messages=messages,
            errors=list(errors),
            final_balance=final_balance,
            attempt=attempt,
        )
