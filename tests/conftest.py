import pytest
from unittest.mock import AsyncMock, MagicMock
from fastapi.testclient import TestClient

from frontdesk.api.deps import get_orchestrator
from frontdesk.clients.memory_backend import InMemoryFolioBackend
from frontdesk.main import app
from frontdesk.models.checkout import CheckoutConfig
from frontdesk.models.folio import Folio, FolioTotals, ResponsibleParty
from frontdesk.services.idempotency import InMemoryIdempotencyStore
from frontdesk.services.settlement_service import SettlementOrchestrator
from frontdesk.utils.money import money_sum, to_money

FOLIO_ID = "1001"
PARTIES = [("1", "Ana Torres"), ("2", "Luis Gomez"), ("3", "Acme Travel")]


def _make_folio(parties=(), total_charges="0", general_payments="0", folio_id=FOLIO_ID, **kwargs) -> Folio:
    members = [
        ResponsibleParty(id=pid, display_name=f"Guest {pid}", assigned_amount=assigned, paid_amount=paid)
        for pid, assigned, paid in parties
    ]
    total_charges = to_money(total_charges)
    general_payments = to_money(general_payments)
    distributed = money_sum(p.assigned_amount for p in members)
    party_payments = money_sum(p.paid_amount for p in members)
    payments_total = party_payments + general_payments
    return Folio(
        id=folio_id,
        total_charges=total_charges,
        unassigned_amount=total_charges - distributed,
        parties=members,
        totals=FolioTotals(
            distributed_amount=distributed,
            party_payments=party_payments,
            general_payments=general_payments,
            payments_total=payments_total,
            global_balance=distributed - payments_total,
        ),
        **kwargs,
    )


@pytest.fixture
def make_folio():
    """Build a consistent folio snapshot from (id, assigned, paid) tuples."""
    return _make_folio


@pytest.fixture
def backend():
    """In-memory backend with one active folio and no charges assigned."""
    backend = InMemoryFolioBackend()
    backend.add_folio(FOLIO_ID, "300.00", PARTIES)
    return backend


@pytest.fixture
def store():
    return InMemoryIdempotencyStore()


@pytest.fixture
def checkout_config():
    return CheckoutConfig()


@pytest.fixture
def orchestrator(backend, store, checkout_config):
    return SettlementOrchestrator(backend, store, checkout_config)


@pytest.fixture
def client(orchestrator):
    """FastAPI test client wired to the in-memory orchestrator."""
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def mock_db():
    """Motor database double; every collection lookup returns mock_db.collection."""
    collection = MagicMock()
    collection.find_one = AsyncMock(return_value=None)
    collection.insert_one = AsyncMock()
    collection.create_index = AsyncMock()
    db = MagicMock()
    db.__getitem__.return_value = collection
    db.collection = collection
    return db
