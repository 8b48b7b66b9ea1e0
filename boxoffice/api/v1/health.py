"""
Health check endpoints for monitoring application status
"""
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from boxoffice.db.session import get_db
from boxoffice.models.common import HealthResponse

router = APIRouter(prefix="/health")


@router.get("", response_model=HealthResponse)
async def health_check():
    """
    Health check endpoint to verify the API is running
    """
    return HealthResponse(
        status="healthy",
        message="Box Office API is running",
        timestamp=datetime.now(timezone.utc),
        version="1.0.0",
    )


@router.get("/ready", response_model=HealthResponse)
async def readiness_check(db: AsyncSession = Depends(get_db)):
    """
    Readiness check: the datastore must answer before we take webhooks
    """
    try:
        await db.execute(text("SELECT 1"))
        database = "ok"
        status = "ready"
    except Exception:
        database = "unavailable"
        status = "not_ready"
    return HealthResponse(
        status=status,
        message="Box Office API readiness",
        timestamp=datetime.now(timezone.utc),
        version="1.0.0",
        database=database,
    )
