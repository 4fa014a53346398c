from typing import Optional

from pydantic import BaseModel, field_validator

from frontdesk.models.base import Money
from frontdesk.models.checkout import CheckoutConfig
from frontdesk.models.distribution import Strategy
from frontdesk.models.payment import PaymentMethod
from frontdesk.utils.money import MONEY_EPSILON


class DistributionCreate(BaseModel):
    strategy: Strategy
    idempotency_key: Optional[str] = None


class PaymentCreate(BaseModel):
    amount: Money
    method: PaymentMethod
    party_id: Optional[str] = None
    note: Optional[str] = None
    idempotency_key: Optional[str] = None

    @field_validator("amount")
    @classmethod
    def amount_at_least_one_cent(cls, value):
        if value < MONEY_EPSILON:
            raise ValueError(f"payment amount must be at least 0.01, got {value}")
        return value


class CloseCreate(BaseModel):
    titular_party_id: str
    idempotency_key: Optional[str] = None
    allow_outstanding_balance: Optional[bool] = None


class CheckoutCreate(BaseModel):
    titular_party_id: str
    allow_outstanding_balance: Optional[bool] = None
    require_full_distribution: Optional[bool] = None
    check_distribution: Optional[bool] = None
    settle_outstanding_balance: Optional[bool] = None
    payment_method: Optional[PaymentMethod] = None

    def config(self, defaults: CheckoutConfig) -> CheckoutConfig:
        """Desk defaults with this request's overrides applied."""
        overrides = self.model_dump(exclude={"titular_party_id"}, exclude_none=True)
        return defaults.model_copy(update=overrides)
