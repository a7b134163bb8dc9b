"""Health check endpoints."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app import __version__
from app.dependencies import get_store
from src.reassignment_engine import DocumentStore

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str


class HealthDetailResponse(HealthResponse):
    """Detailed health check response with document store status."""

    database: str


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Basic health check."""
    return HealthResponse(status="ok", version=__version__)


@router.get("/health/ready", response_model=HealthDetailResponse)
async def readiness_check(store: DocumentStore = Depends(get_store)) -> HealthDetailResponse:
    """Readiness check including document store connectivity."""
    db_status = "connected" if await store.ping() else "disconnected"

    return HealthDetailResponse(
        status="ok" if db_status == "connected" else "degraded",
        version=__version__,
        database=db_status,
    )
