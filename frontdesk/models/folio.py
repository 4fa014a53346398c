"""
Folio read-model.

The folio backend is authoritative; these models hold the snapshot it
returns so the engines can work on it without I/O.

Invariants of a reconciled folio (within one cent):
- unassigned_amount + totals.distributed_amount == total_charges
- totals.global_balance == totals.distributed_amount - totals.payments_total
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import Field, computed_field

from frontdesk.models.base import DomainModel, Money, _utcnow
from frontdesk.utils.money import ZERO


class FolioStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"
    CANCELLED = "cancelled"


class ResponsibleParty(DomainModel):
    """Guest, company or agency liable for part of the folio."""
    id: str
    display_name: str = ""  # label only, never used for identity
    assigned_amount: Money = ZERO
    paid_amount: Money = ZERO

    @computed_field
    @property
    def balance(self) -> Money:
        """Outstanding amount for display, floored at zero."""
        return max(self.signed_balance, ZERO)

    @property
    def signed_balance(self) -> Decimal:
        """Assigned minus paid, negative when the party overpaid."""
        return self.assigned_amount - self.paid_amount


class FolioTotals(DomainModel):
    distributed_amount: Money = ZERO
    party_payments: Money = ZERO
    general_payments: Money = ZERO  # payments not attached to a party
    payments_total: Money = ZERO
    global_balance: Money = ZERO
    control_diff: Money = ZERO


class Folio(DomainModel):
    id: str
    status: FolioStatus = FolioStatus.ACTIVE
    total_charges: Money = ZERO
    unassigned_amount: Money = ZERO
    parties: List[ResponsibleParty] = []
    totals: FolioTotals = Field(default_factory=FolioTotals)
    integrity_warnings: List[str] = []

    @property
    def is_mutable(self) -> bool:
        return self.status == FolioStatus.ACTIVE

    def party(self, party_id: str) -> Optional[ResponsibleParty]:
        for party in self.parties:
            if party.id == party_id:
                return party
        return None

    def party_ids(self) -> List[str]:
        return [party.id for party in self.parties]


class LedgerEventKind(str, Enum):
    PAYMENT = "payment"
    DISTRIBUTION = "distribution"
    CLOSE = "close"


class LedgerEvent(DomainModel):
    """One entry of the folio's append-only audit trail."""
    id: str
    kind: LedgerEventKind
    idempotency_key: str
    occurred_at: datetime = Field(default_factory=_utcnow)
    amount: Optional[Money] = None
    method: Optional[str] = None
    party_id: Optional[str] = None
    party_name: Optional[str] = None
    details: Dict[str, Any] = {}


class HistoryPage(DomainModel):
    events: List[LedgerEvent] = []
    page: int = 1
    last_page: int = 1
    per_page: int = 50
    total: int = 0
