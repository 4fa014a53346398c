"""HTTP adapter for the folio backend REST API."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError

from frontdesk.clients.base import FolioBackend
from frontdesk.core.errors import CollaboratorError
from frontdesk.models.distribution import DistributionRequest
from frontdesk.models.folio import Folio, HistoryPage, LedgerEventKind
from frontdesk.models.payment import CloseRequest, PaymentRequest
from frontdesk.schemas.backend import (
    EVENT_KIND_TO_BACKEND,
    BackendFolioSummary,
    BackendHistoryPage,
    close_body,
    distribution_body,
    payment_body,
)

logger = logging.getLogger(__name__)

ALREADY_APPLIED_CODES = {"operation_already_applied", "operacion_duplicada", "already_applied"}


def _backend_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text or f"HTTP {resp.status_code}"
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body)
    return str(body)


def _backend_code(resp: httpx.Response) -> Optional[str]:
    try:
        body = resp.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        code = body.get("code")
        return str(code) if code is not None else None
    return None


class HttpFolioBackend(FolioBackend):
    """Folio backend over HTTP.

    Endpoints:
      GET  /folios/{id}/resumen
      POST /folios/{id}/distribuir
      POST /folios/{id}/pagos
      POST /folios/{id}/cerrar
      GET  /folios/{id}/historial
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str = "",
        timeout_s: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(timeout_s),
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        idempotency_key: Optional[str] = None,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        try:
            resp = await self._client.request(method, path, json=json, params=params, headers=headers)
        except httpx.TimeoutException as e:
            raise CollaboratorError(
                f"Folio backend timed out during {operation}: {e}",
                operation=operation,
                idempotency_key=idempotency_key,
            ) from e
        except httpx.RequestError as e:
            raise CollaboratorError(
                f"Folio backend unreachable during {operation}: {e}",
                operation=operation,
                idempotency_key=idempotency_key,
            ) from e

        if resp.status_code >= 400:
            message = _backend_message(resp)
            already_applied = resp.status_code == 409 and _backend_code(resp) in ALREADY_APPLIED_CODES
            logger.error(
                "Folio backend %s %s failed with %s: %s", method, path, resp.status_code, message
            )
            raise CollaboratorError(
                message,
                operation=operation,
                idempotency_key=idempotency_key,
                status_code=resp.status_code,
                already_applied=already_applied,
            )
        try:
            return resp.json()
        except ValueError as e:
            raise CollaboratorError(
                f"Folio backend returned invalid JSON during {operation}",
                operation=operation,
                idempotency_key=idempotency_key,
                status_code=resp.status_code,
            ) from e

    def _folio(self, body: Any, operation: str, idempotency_key: Optional[str] = None) -> Folio:
        try:
            return BackendFolioSummary.model_validate(body).to_folio()
        except ValidationError as e:
            raise CollaboratorError(
                f"Folio backend returned an unexpected {operation} payload: {e}",
                operation=operation,
                idempotency_key=idempotency_key,
            ) from e

    async def get_folio_snapshot(self, folio_id: str) -> Folio:
        body = await self._request("GET", f"/folios/{folio_id}/resumen", operation="snapshot")
        return self._folio(body, "snapshot")

    async def submit_distribution(self, folio_id: str, request: DistributionRequest) -> Folio:
        body = await self._request(
            "POST",
            f"/folios/{folio_id}/distribuir",
            operation="distribution",
            idempotency_key=request.idempotency_key,
            json=distribution_body(request),
        )
        return self._folio(body, "distribution", request.idempotency_key)

    async def submit_payment(self, folio_id: str, request: PaymentRequest) -> Folio:
        body = await self._request(
            "POST",
            f"/folios/{folio_id}/pagos",
            operation="payment",
            idempotency_key=request.idempotency_key,
            json=payment_body(request),
        )
        return self._folio(body, "payment", request.idempotency_key)

    async def close_folio(self, folio_id: str, request: CloseRequest) -> Folio:
        body = await self._request(
            "POST",
            f"/folios/{folio_id}/cerrar",
            operation="close",
            idempotency_key=request.idempotency_key,
            json=close_body(request),
        )
        return self._folio(body, "close", request.idempotency_key)

    async def get_history(self, folio_id, kind=None, page=1, per_page=50) -> HistoryPage:
        params: Dict[str, Any] = {"page": page, "per_page": per_page}
        if kind is not None:
            params["tipo"] = EVENT_KIND_TO_BACKEND[LedgerEventKind(kind)]
        body = await self._request("GET", f"/folios/{folio_id}/historial", operation="history", params=params)
        try:
            return BackendHistoryPage.model_validate(body).to_page()
        except ValidationError as e:
            raise CollaboratorError(
                f"Folio backend returned an unexpected history payload: {e}",
                operation="history",
            ) from e
