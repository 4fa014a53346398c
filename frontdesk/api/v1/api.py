from fastapi import APIRouter
from frontdesk.api.v1.endpoints import folios

api_router = APIRouter()

api_router.include_router(folios.router, prefix="/folios", tags=["folios"])
