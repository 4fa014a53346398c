import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from frontdesk.api.errors import register_exception_handlers
from frontdesk.api.v1.api import api_router
from frontdesk.clients.http_backend import HttpFolioBackend
from frontdesk.clients.memory_backend import InMemoryFolioBackend
from frontdesk.core.config import settings
from frontdesk.core.logging import setup_logging
from frontdesk.db.mongo import connect_to_mongo, disconnect_from_mongo
from frontdesk.repositories.idempotency_repo import MongoIdempotencyRepository
from frontdesk.services.idempotency import InMemoryIdempotencyStore
from frontdesk.services.settlement_service import SettlementOrchestrator

logger = logging.getLogger(__name__)


async def startup(app: FastAPI):
    setup_logging(settings.LOG_LEVEL)
    db = await connect_to_mongo()
    if db is not None:
        store = MongoIdempotencyRepository(db, settings.IDEMPOTENCY_TTL_HOURS)
    else:
        store = InMemoryIdempotencyStore(settings.IDEMPOTENCY_TTL_HOURS)

    if settings.FOLIO_BACKEND == "memory":
        backend = InMemoryFolioBackend()
        logger.warning("Using the in-memory folio backend; nothing is persisted")
    else:
        backend = HttpFolioBackend(
            settings.BACKEND_API_URL,
            token=settings.BACKEND_API_TOKEN,
            timeout_s=settings.BACKEND_TIMEOUT_SECONDS,
        )
        logger.info("Folio backend: %s", settings.BACKEND_API_URL)
    app.state.orchestrator = SettlementOrchestrator(backend, store, settings.checkout_config())


async def shutdown(app: FastAPI):
    orchestrator = getattr(app.state, "orchestrator", None)
    if orchestrator is not None:
        await orchestrator.aclose()
    await disconnect_from_mongo()


@asynccontextmanager
async def lifespan(app: FastAPI):
    await startup(app)
    try:
        yield
    finally:
        await shutdown(app)


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.PROJECT_VERSION,
    description=settings.DESCRIPTION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)


@app.get("/")
async def root():
    return {"message": "Welcome to Frontdesk Folio API"}


app.include_router(api_router, prefix=settings.API_V1_STR)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("frontdesk.main:app", host=settings.HOST, port=settings.PORT)
