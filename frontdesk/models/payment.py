from enum import Enum
from typing import Optional

from pydantic import field_validator

from frontdesk.models.base import DomainModel, Money
from frontdesk.utils.money import MONEY_EPSILON


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    TRANSFER = "transfer"
    CHEQUE = "cheque"
    VOUCHER = "voucher"
    COURTESY = "courtesy"


class PaymentRequest(DomainModel):
    """Payment against the folio. Without party_id it is a general payment."""
    idempotency_key: str
    amount: Money
    method: PaymentMethod
    party_id: Optional[str] = None
    note: Optional[str] = None
    result: str = "OK"

    @field_validator("amount")
    @classmethod
    def amount_at_least_one_cent(cls, value):
        if value < MONEY_EPSILON:
            raise ValueError(f"payment amount must be at least 0.01, got {value}")
        return value


class CloseRequest(DomainModel):
    """Close the folio and reclassify what is left to the titular party."""
    idempotency_key: str
    titular_party_id: str
