"""Health check endpoints.

Provides:
- Basic liveness check (/health/)
- Database check plus execution counts (/health/status)
"""

import time
from datetime import datetime, timezone
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.dependencies import get_db
from services.execution_service import ExecutionService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/health", tags=["health"])

_start_time = time.monotonic()
_start_datetime = datetime.now(timezone.utc).isoformat()


@router.get("/", response_model=dict[str, Any])
async def root() -> dict[str, Any]:
    """
    Liveness check.
    """
    settings = get_settings()
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "ok",
    }


@router.get("/status", response_model=dict[str, Any])
async def system_status(db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    """
    Database connectivity, uptime and execution counts by status.
    Returns 503 if the database is unreachable.
    """
    try:
        await db.execute(text("SELECT 1"))
        executions = await ExecutionService(db).count_by_status()
    except Exception as e:
        logger.error("database_health_check_failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "unhealthy", "database": "unavailable"},
        )

    settings = get_settings()
    uptime_seconds = time.monotonic() - _start_time
    return {
        "status": "healthy",
        "database": "ok",
        "environment": settings.ENVIRONMENT,
        "started_at": _start_datetime,
        "uptime_seconds": round(uptime_seconds, 1),
        "executions": executions,
    }
