"""Main API router."""

from fastapi import APIRouter
from conveyor.api.definitions import router as definitions_router
from conveyor.api.runs import router as runs_router

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(runs_router)
api_router.include_router(definitions_router)
