"""Health check endpoints."""

import logging
from typing import Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import Settings, get_settings
from db.session import get_session

router = APIRouter()
logger = logging.getLogger(__name__)


class HealthStatus(BaseModel):
    """Health check response model."""

    status: Literal["healthy", "unhealthy", "degraded"]
    database: Literal["connected", "disconnected"]
    filesystem: Literal["accessible", "inaccessible"]
    metadata_sources: list[str]
    active_sessions: int
    version: str
    environment: str


class LivenessResponse(BaseModel):
    """Liveness probe response."""

    status: Literal["ok"]


@router.get("/health", response_model=HealthStatus)
async def health_check(
    request: Request,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> HealthStatus:
    """Full health check endpoint."""
    db_status: Literal["connected", "disconnected"] = "disconnected"
    try:
        await session.execute(text("SELECT 1"))
        db_status = "connected"
    except Exception as e:
        logger.warning("Health check database probe failed: %s", e)

    fs_status: Literal["accessible", "inaccessible"] = "inaccessible"
    try:
        if settings.data_dir.exists() or settings.data_dir.parent.exists():
            fs_status = "accessible"
    except OSError as e:
        logger.warning("Health check filesystem probe failed: %s", e)

    sources: list[str] = []
    active_sessions = 0
    service = getattr(request.app.state, "approval_service", None)
    if service is not None:
        sources = service.file_review.provider.source_names
        active_sessions = len(service.store)

    overall: Literal["healthy", "unhealthy", "degraded"]
    if db_status == "connected" and fs_status == "accessible" and sources:
        overall = "healthy"
    elif db_status == "connected":
        overall = "degraded"
    else:
        overall = "unhealthy"

    return HealthStatus(
        status=overall,
        database=db_status,
        filesystem=fs_status,
        metadata_sources=sources,
        active_sessions=active_sessions,
        version=settings.app_version,
        environment=settings.environment,
    )


@router.get("/health/live", response_model=LivenessResponse)
async def liveness_probe() -> LivenessResponse:
    """Liveness probe - checks if app is running."""
    return LivenessResponse(status="ok")
