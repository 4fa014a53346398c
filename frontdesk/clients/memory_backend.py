"""
In-process folio backend.

Behaves like the real backend where the engine can observe it:
- each idempotency key is applied at most once; a replay returns the
  snapshot produced by the first application
- closed or cancelled folios reject every mutation
- closing reclassifies undistributed charges and other parties' outstanding
  balances to the titular party
- every applied operation is appended to the folio history

Used for local development and tests. fail_next() injects failures.
"""

import asyncio
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from frontdesk.clients.base import FolioBackend
from frontdesk.core.errors import CollaboratorError, DistributionError
from frontdesk.models.distribution import DistributionRequest
from frontdesk.models.folio import (
    Folio,
    FolioStatus,
    FolioTotals,
    HistoryPage,
    LedgerEvent,
    LedgerEventKind,
    ResponsibleParty,
)
from frontdesk.models.payment import CloseRequest, PaymentRequest
from frontdesk.services.distribution_service import compute_distribution
from frontdesk.utils.money import ZERO, money_sum, to_money


@dataclass
class _PartyState:
    id: str
    name: str
    assigned: Decimal = ZERO
    paid: Decimal = ZERO


@dataclass
class _FolioState:
    id: str
    total_charges: Decimal
    parties: Dict[str, _PartyState]
    status: FolioStatus = FolioStatus.ACTIVE
    general_payments: Decimal = ZERO
    applied: Dict[str, Folio] = field(default_factory=dict)
    events: List[LedgerEvent] = field(default_factory=list)


@dataclass
class _Fault:
    error: Exception
    after_apply: bool


class InMemoryFolioBackend(FolioBackend):

    def __init__(self, latency: float = 0.0):
        self._folios: Dict[str, _FolioState] = {}
        self._faults: Dict[str, List[_Fault]] = {}
        self.latency = latency
        self.calls: Dict[str, int] = {"snapshot": 0, "distribution": 0, "payment": 0, "close": 0, "history": 0}

    # -- seeding ------------------------------------------------------------

    def add_folio(
        self,
        folio_id: str,
        total_charges,
        parties: List[Tuple[str, str]],
        status: FolioStatus = FolioStatus.ACTIVE,
    ) -> None:
        """Register a folio opened at check-in. parties: (id, display name)."""
        self._folios[folio_id] = _FolioState(
            id=folio_id,
            total_charges=to_money(total_charges),
            parties={pid: _PartyState(id=pid, name=name) for pid, name in parties},
            status=status,
        )

    def post_charge(self, folio_id: str, amount) -> None:
        """New charge, unassigned until distributed."""
        self._state(folio_id).total_charges += to_money(amount)

    def fail_next(self, operation: str, error: Exception, *, after_apply: bool = False) -> None:
        """Make the next call of `operation` raise `error`.

        With after_apply the operation is applied first, as when the response
        is lost on the way back.
        """
        self._faults.setdefault(operation, []).append(_Fault(error, after_apply))

    # -- helpers -------------------------------------------------------------

    def _state(self, folio_id: str) -> _FolioState:
        state = self._folios.get(folio_id)
        if state is None:
            raise CollaboratorError(
                f"Folio {folio_id} not found", operation="snapshot", status_code=404
            )
        return state

    def _take_fault(self, operation: str) -> Optional[_Fault]:
        pending = self._faults.get(operation)
        if pending:
            return pending.pop(0)
        return None

    def _snapshot(self, state: _FolioState) -> Folio:
        distributed = money_sum(p.assigned for p in state.parties.values())
        party_payments = money_sum(p.paid for p in state.parties.values())
        payments_total = party_payments + state.general_payments
        return Folio(
            id=state.id,
            status=state.status,
            total_charges=state.total_charges,
            unassigned_amount=state.total_charges - distributed,
            parties=[
                ResponsibleParty(
                    id=p.id, display_name=p.name, assigned_amount=p.assigned, paid_amount=p.paid
                )
                for p in state.parties.values()
            ],
            totals=FolioTotals(
                distributed_amount=distributed,
                party_payments=party_payments,
                general_payments=state.general_payments,
                payments_total=payments_total,
                global_balance=distributed - payments_total,
                control_diff=ZERO,
            ),
        )

    def _record(self, state: _FolioState, kind: LedgerEventKind, key: str, **fields) -> None:
        state.events.append(
            LedgerEvent(id=str(len(state.events) + 1), kind=kind, idempotency_key=key, **fields)
        )

    async def _mutate(self, folio_id: str, operation: str, key: str, apply) -> Folio:
        self.calls[operation] += 1
        if self.latency:
            await asyncio.sleep(self.latency)
        state = self._state(folio_id)

        if key in state.applied:
            return state.applied[key]

        fault = self._take_fault(operation)
        if fault and not fault.after_apply:
            raise fault.error

        if state.status != FolioStatus.ACTIVE:
            raise CollaboratorError(
                f"Folio {folio_id} is {state.status.value}",
                operation=operation,
                idempotency_key=key,
                status_code=409,
            )
        apply(state)
        snapshot = self._snapshot(state)
        state.applied[key] = snapshot

        if fault:
            raise fault.error
        return snapshot

    # -- FolioBackend ----------------------------------------------------------

    async def get_folio_snapshot(self, folio_id: str) -> Folio:
        self.calls["snapshot"] += 1
        if self.latency:
            await asyncio.sleep(self.latency)
        fault = self._take_fault("snapshot")
        if fault:
            raise fault.error
        return self._snapshot(self._state(folio_id))

    async def submit_distribution(self, folio_id: str, request: DistributionRequest) -> Folio:
        def apply(state: _FolioState):
            unassigned = state.total_charges - money_sum(p.assigned for p in state.parties.values())
            plan = compute_distribution(unassigned, request.strategy, request.idempotency_key)
            if isinstance(plan, DistributionError):
                raise CollaboratorError(
                    plan.message,
                    operation="distribution",
                    idempotency_key=request.idempotency_key,
                    status_code=422,
                )
            for share in plan.shares:
                party = state.parties.get(share.party_id)
                if party is None:
                    raise CollaboratorError(
                        f"Client {share.party_id} is not on folio {folio_id}",
                        operation="distribution",
                        idempotency_key=request.idempotency_key,
                        status_code=422,
                    )
            for share in plan.shares:
                state.parties[share.party_id].assigned += share.amount
            self._record(
                state,
                LedgerEventKind.DISTRIBUTION,
                request.idempotency_key,
                amount=plan.total,
                details={"strategy": plan.strategy.value,
                         "shares": {s.party_id: str(s.amount) for s in plan.shares}},
            )

        return await self._mutate(folio_id, "distribution", request.idempotency_key, apply)

    async def submit_payment(self, folio_id: str, request: PaymentRequest) -> Folio:
        def apply(state: _FolioState):
            if request.party_id is None:
                state.general_payments += request.amount
                party_name = None
            else:
                party = state.parties.get(request.party_id)
                if party is None:
                    raise CollaboratorError(
                        f"Client {request.party_id} is not on folio {folio_id}",
                        operation="payment",
                        idempotency_key=request.idempotency_key,
                        status_code=422,
                    )
                party.paid += request.amount
                party_name = party.name
            self._record(
                state,
                LedgerEventKind.PAYMENT,
                request.idempotency_key,
                amount=request.amount,
                method=request.method.value,
                party_id=request.party_id,
                party_name=party_name,
                details={"note": request.note} if request.note else {},
            )

        return await self._mutate(folio_id, "payment", request.idempotency_key, apply)

    async def close_folio(self, folio_id: str, request: CloseRequest) -> Folio:
        def apply(state: _FolioState):
            titular = state.parties.get(request.titular_party_id)
            if titular is None:
                raise CollaboratorError(
                    f"Titular client {request.titular_party_id} is not on folio {folio_id}",
                    operation="close",
                    idempotency_key=request.idempotency_key,
                    status_code=422,
                )
            unassigned = state.total_charges - money_sum(p.assigned for p in state.parties.values())
            titular.assigned += unassigned
            moved = unassigned
            for party in state.parties.values():
                if party is titular:
                    continue
                outstanding = party.assigned - party.paid
                if outstanding > ZERO:
                    party.assigned -= outstanding
                    titular.assigned += outstanding
                    moved += outstanding
            state.status = FolioStatus.CLOSED
            self._record(
                state,
                LedgerEventKind.CLOSE,
                request.idempotency_key,
                amount=moved,
                party_id=titular.id,
                party_name=titular.name,
            )

        return await self._mutate(folio_id, "close", request.idempotency_key, apply)

    async def get_history(self, folio_id, kind=None, page=1, per_page=50) -> HistoryPage:
        self.calls["history"] += 1
        fault = self._take_fault("history")
        if fault:
            raise fault.error
        events = self._state(folio_id).events
        if kind is not None:
            events = [e for e in events if e.kind == LedgerEventKind(kind)]
        events = list(reversed(events))
        last_page = max(1, -(-len(events) // per_page))
        start = (page - 1) * per_page
        return HistoryPage(
            events=events[start:start + per_page],
            page=page,
            last_page=last_page,
            per_page=per_page,
            total=len(events),
        )
