from __future__ import annotations

import abc
from typing import Optional

from frontdesk.models.distribution import DistributionRequest
from frontdesk.models.folio import Folio, HistoryPage, LedgerEventKind
from frontdesk.models.payment import CloseRequest, PaymentRequest


class FolioBackend(abc.ABC):
    """Folio backend contract.

    - get_folio_snapshot(): current state, read-only
    - submit_distribution(), submit_payment(), close_folio(): mutating, applied
      at most once per idempotency key
    - get_history(): paginated audit trail, read-only

    Failures surface as CollaboratorError.
    """

    @abc.abstractmethod
    async def get_folio_snapshot(self, folio_id: str) -> Folio:
        raise NotImplementedError

    @abc.abstractmethod
    async def submit_distribution(self, folio_id: str, request: DistributionRequest) -> Folio:
        raise NotImplementedError

    @abc.abstractmethod
    async def submit_payment(self, folio_id: str, request: PaymentRequest) -> Folio:
        raise NotImplementedError

    @abc.abstractmethod
    async def close_folio(self, folio_id: str, request: CloseRequest) -> Folio:
        raise NotImplementedError

    @abc.abstractmethod
    async def get_history(
        self,
        folio_id: str,
        kind: Optional[LedgerEventKind] = None,
        page: int = 1,
        per_page: int = 50,
    ) -> HistoryPage:
        raise NotImplementedError

    async def aclose(self) -> None:
        """Release transport resources, if any."""
        return None
