from fastapi import Request

from frontdesk.services.settlement_service import SettlementOrchestrator


def get_orchestrator(request: Request) -> SettlementOrchestrator:
    """The orchestrator built at startup."""
    return request.app.state.orchestrator
