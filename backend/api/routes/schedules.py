"""Schedule endpoints: create, get, deactivate."""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from api.schemas.schedule import ScheduleCreate, ScheduleResponse
from app.dependencies import get_db, get_scheduler
from services.schedule_service import ScheduleService
from workflow.scheduler import Scheduler

router = APIRouter(tags=["schedules"])


@router.post("/", response_model=ScheduleResponse, status_code=status.HTTP_201_CREATED)
async def create_schedule(
    request: ScheduleCreate,
    scheduler: Scheduler = Depends(get_scheduler),
) -> ScheduleResponse:
    """
    Schedule a workflow. The first fire time is computed from the config.
    """
    schedule = await scheduler.create_schedule(
        workflow_id=request.workflow_id,
        schedule_type=request.schedule_type,
        schedule_config=request.schedule_config,
        timezone=request.timezone,
        name=request.name,
        max_executions=request.max_executions,
    )
    return ScheduleResponse.model_validate(schedule)


@router.get("/{schedule_id}", response_model=ScheduleResponse)
async def get_schedule(
    schedule_id: str,
    db: AsyncSession = Depends(get_db),
) -> ScheduleResponse:
    schedule = await ScheduleService(db).get_or_404(schedule_id)
    return ScheduleResponse.model_validate(schedule)


@router.post("/{schedule_id}/deactivate", response_model=ScheduleResponse)
async def deactivate_schedule(
    schedule_id: str,
    scheduler: Scheduler = Depends(get_scheduler),
) -> ScheduleResponse:
    schedule = await scheduler.deactivate_schedule(schedule_id)
    return ScheduleResponse.model_validate(schedule)
