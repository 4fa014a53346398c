import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from frontdesk.core.errors import (
    CollaboratorError,
    ConcurrentAttemptError,
    DistributionError,
    FolioError,
    IdempotencyConflictError,
    ReconciliationError,
    StateViolationError,
)

logger = logging.getLogger(__name__)

STATUS_CODES = {
    DistributionError: 422,
    StateViolationError: 409,
    ConcurrentAttemptError: 409,
    IdempotencyConflictError: 409,
    ReconciliationError: 500,
    CollaboratorError: 502,
}


def status_for(exc: FolioError) -> int:
    for cls, status in STATUS_CODES.items():
        if isinstance(exc, cls):
            return status
    return 500


async def folio_error_handler(request: Request, exc: FolioError) -> JSONResponse:
    status = status_for(exc)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status, content=jsonable_encoder(exc.to_dict()))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(FolioError, folio_error_handler)
