"""Tick endpoint: lets an external cron or scheduler drive the engine over HTTP."""

from typing import Any

from fastapi import APIRouter, Depends, Query

from app.dependencies import get_orchestrator
from worker.tick import TickOrchestrator

router = APIRouter(tags=["tick"])


@router.post("/", response_model=dict[str, Any])
async def run_tick(
    force_maintenance: bool = Query(default=False, description="Run retention maintenance on this tick"),
    orchestrator: TickOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """
    Run one tick: fire due schedules, resume due retries and waits.
    """
    return await orchestrator.run_tick(force_maintenance=force_maintenance)
