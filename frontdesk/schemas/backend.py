"""
Wire format of the folio backend.

The backend speaks its own JSON dialect (field names from the property
management system). These schemas parse it and build request bodies; the
rest of the package only sees the domain models.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from frontdesk.models.distribution import DistributionRequest, StrategyKind
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
from frontdesk.utils.money import to_money

STATUS_FROM_BACKEND = {
    "abierto": FolioStatus.ACTIVE,
    "activo": FolioStatus.ACTIVE,
    "active": FolioStatus.ACTIVE,
    "open": FolioStatus.ACTIVE,
    "cerrado": FolioStatus.CLOSED,
    "closed": FolioStatus.CLOSED,
    "cancelado": FolioStatus.CANCELLED,
    "cancelled": FolioStatus.CANCELLED,
}

STRATEGY_TO_BACKEND = {
    StrategyKind.SINGLE: "single",
    StrategyKind.EQUAL: "equal",
    StrategyKind.PERCENTAGE: "percent",
    StrategyKind.FIXED: "fixed",
}

EVENT_KIND_TO_BACKEND = {
    LedgerEventKind.PAYMENT: "pago",
    LedgerEventKind.DISTRIBUTION: "distribucion",
    LedgerEventKind.CLOSE: "cierre",
}
EVENT_KIND_FROM_BACKEND = {v: k for k, v in EVENT_KIND_TO_BACKEND.items()}


class BackendSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    folio_id: Any = Field(validation_alias="id_folio")
    pending: Any = Field(default=0, validation_alias="a_distribuir")
    distributed: Any = Field(default=0, validation_alias="distribuido")
    charges_without_party: Any = Field(default=0, validation_alias="cargos_sin_persona")
    general_payments: Any = Field(default=0, validation_alias="pagos_generales")
    status: Optional[str] = Field(default=None, validation_alias="estado")


class BackendPerson(BaseModel):
    client_id: Any = Field(validation_alias="id_cliente")
    name: Optional[str] = Field(default=None, validation_alias="nombre")
    assigned: Any = Field(default=0, validation_alias="asignado")
    payments: Any = Field(default=0, validation_alias="pagos")
    balance: Any = Field(default=0, validation_alias="saldo")


class BackendTotals(BaseModel):
    party_payments: Any = Field(default=0, validation_alias="pagos_por_persona_total")
    general_payments: Any = Field(default=0, validation_alias="pagos_generales")
    payments_total: Any = Field(default=0, validation_alias="pagos_totales")
    global_balance: Any = Field(default=0, validation_alias="saldo_global")
    control_diff: Any = Field(default=0, validation_alias="control_diff")


class BackendFolioSummary(BaseModel):
    """Response of resumen / distribuir / pagos / cerrar."""
    folio: Any
    summary: BackendSummary = Field(validation_alias="resumen")
    persons: List[BackendPerson] = Field(default=[], validation_alias="personas")
    totals: BackendTotals = Field(validation_alias="totales")

    def to_folio(self) -> Folio:
        status = STATUS_FROM_BACKEND.get((self.summary.status or "abierto").lower(), FolioStatus.ACTIVE)
        pending = to_money(self.summary.pending)
        distributed = to_money(self.summary.distributed)
        return Folio(
            id=str(self.folio),
            status=status,
            total_charges=pending + distributed,
            unassigned_amount=pending,
            parties=[
                ResponsibleParty(
                    id=str(p.client_id),
                    display_name=p.name or f"Client {p.client_id}",
                    assigned_amount=p.assigned,
                    paid_amount=p.payments,
                )
                for p in self.persons
            ],
            totals=FolioTotals(
                distributed_amount=distributed,
                party_payments=self.totals.party_payments,
                general_payments=self.totals.general_payments,
                payments_total=self.totals.payments_total,
                global_balance=self.totals.global_balance,
                control_diff=self.totals.control_diff,
            ),
        )


class BackendHistoryItem(BaseModel):
    id: Any
    kind: str = Field(validation_alias="tipo")
    operation_uid: str = Field(validation_alias="operacion_uid")
    occurred_at: str = Field(validation_alias="fecha")
    amount: Optional[Any] = Field(default=None, validation_alias="monto")
    method: Optional[str] = Field(default=None, validation_alias="metodo")
    client_id: Optional[Any] = Field(default=None, validation_alias="id_cliente")
    client_name: Optional[str] = Field(default=None, validation_alias="nombre_cliente")
    details: Optional[Dict[str, Any]] = Field(default=None, validation_alias="detalles")

    def to_event(self) -> LedgerEvent:
        return LedgerEvent(
            id=str(self.id),
            kind=EVENT_KIND_FROM_BACKEND.get(self.kind, self.kind),
            idempotency_key=self.operation_uid,
            occurred_at=self.occurred_at,
            amount=self.amount,
            method=self.method,
            party_id=str(self.client_id) if self.client_id is not None else None,
            party_name=self.client_name,
            details=self.details or {},
        )


class BackendHistoryPage(BaseModel):
    data: List[BackendHistoryItem] = []
    current_page: int = 1
    last_page: int = 1
    per_page: int = 50
    total: int = 0

    def to_page(self) -> HistoryPage:
        return HistoryPage(
            events=[item.to_event() for item in self.data],
            page=self.current_page,
            last_page=self.last_page,
            per_page=self.per_page,
            total=self.total,
        )


def _client_id(party_id: str):
    return int(party_id) if party_id.isdigit() else party_id


def distribution_body(request: DistributionRequest) -> Dict[str, Any]:
    responsables = []
    for target in request.strategy.targets():
        entry: Dict[str, Any] = {"id_cliente": _client_id(target.party_id)}
        if target.percentage is not None:
            entry["percent"] = float(target.percentage)
        if target.amount is not None:
            entry["amount"] = float(target.amount)
        responsables.append(entry)
    return {
        "operacion_uid": request.idempotency_key,
        "strategy": STRATEGY_TO_BACKEND[StrategyKind(request.strategy.kind)],
        "responsables": responsables,
    }


def payment_body(request: PaymentRequest) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "operacion_uid": request.idempotency_key,
        "monto": float(request.amount),
        "metodo": request.method.value,
        "resultado": request.result,
    }
    if request.party_id is not None:
        body["id_cliente"] = _client_id(request.party_id)
    if request.note:
        body["nota"] = request.note
    return body


def close_body(request: CloseRequest) -> Dict[str, Any]:
    return {
        "operacion_uid": request.idempotency_key,
        "id_cliente_titular": _client_id(request.titular_party_id),
    }
