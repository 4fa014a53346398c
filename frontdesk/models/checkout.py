"""
Checkout state machine records.

idle -> validating -> (registering_payment)? -> closing -> completed
Any non-terminal state may move to failed. A failed attempt can be retried;
its idempotency keys are carried into the retry.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import Field

from frontdesk.models.base import DomainModel, Money, _utcnow
from frontdesk.models.folio import Folio
from frontdesk.models.payment import PaymentMethod
from frontdesk.utils.money import ZERO


class CheckoutState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    REGISTERING_PAYMENT = "registering_payment"
    CLOSING = "closing"
    COMPLETED = "completed"
    FAILED = "failed"


STATE_PROGRESS = {
    CheckoutState.IDLE: 0,
    CheckoutState.VALIDATING: 20,
    CheckoutState.REGISTERING_PAYMENT: 50,
    CheckoutState.CLOSING: 80,
    CheckoutState.COMPLETED: 100,
}

ALLOWED_TRANSITIONS = {
    CheckoutState.IDLE: {CheckoutState.VALIDATING, CheckoutState.FAILED},
    CheckoutState.VALIDATING: {
        CheckoutState.REGISTERING_PAYMENT,
        CheckoutState.CLOSING,
        CheckoutState.FAILED,
    },
    CheckoutState.REGISTERING_PAYMENT: {CheckoutState.CLOSING, CheckoutState.FAILED},
    CheckoutState.CLOSING: {CheckoutState.COMPLETED, CheckoutState.FAILED},
    CheckoutState.COMPLETED: set(),
    CheckoutState.FAILED: set(),
}


class CheckoutConfig(DomainModel):
    allow_outstanding_balance: bool = False
    require_full_distribution: bool = False
    check_distribution: bool = True
    # With an allowed outstanding balance, False closes without paying it.
    settle_outstanding_balance: bool = True
    payment_method: PaymentMethod = PaymentMethod.CARD


class CheckoutValidation(DomainModel):
    can_checkout: bool
    has_outstanding_balance: bool
    outstanding_amount: Money = ZERO
    charges_distributed: bool
    parties_assigned: bool
    warnings: List[str] = []
    errors: List[str] = []


class CheckoutStep(DomainModel):
    state: CheckoutState
    progress_percent: int
    description: str
    at: datetime = Field(default_factory=_utcnow)


class RegisteredPayment(DomainModel):
    idempotency_key: str
    amount: Money
    method: PaymentMethod
    party_id: Optional[str] = None
    note: Optional[str] = None
    replayed: bool = False
    registered_at: datetime = Field(default_factory=_utcnow)


class CheckoutAttempt(DomainModel):
    folio_id: str
    titular_party_id: str
    state: CheckoutState = CheckoutState.IDLE
    progress_percent: int = 0
    description: str = "Waiting for checkout to start"
    steps: List[CheckoutStep] = []
    payment_key: str
    close_key: str
    payments: List[RegisteredPayment] = []
    error: Optional[str] = None
    error_kind: Optional[str] = None
    diagnostics: Dict[str, Any] = {}

    @property
    def is_terminal(self) -> bool:
        return self.state in (CheckoutState.COMPLETED, CheckoutState.FAILED)


class CheckoutResult(DomainModel):
    success: bool
    folio_id: str
    final_folio: Optional[Folio] = None
    receipt_number: Optional[str] = None
    payments: List[RegisteredPayment] = []
    close_key: Optional[str] = None
    messages: List[str] = []
    errors: List[str] = []
    final_balance: Money = ZERO
    attempt: CheckoutAttempt
