"""Scheduler: fires due WorkflowSchedules and computes their next run.

Schedule types and their ``schedule_config``:

    once       {"fireAt": "2026-03-08T09:00:00"}            (legacy key: scheduledAt)
    recurring  {"interval": 1, "unit": "days",              (legacy: {"intervalMinutes": 30})
                "startAt": "...", "endAt": "..."}
    cron       {"cronExpression": "0 9 * * 1-5"}

Naive datetimes in the config are read in the schedule's ``timezone``.
Recurring day/week intervals advance in local wall-clock time, so a daily
09:00 schedule stays at 09:00 local across DST transitions. Cron
expressions are matched in the schedule's timezone via croniter.

Each due schedule is claimed with a conditional update keyed on the
``next_execution_at`` and ``executions_count`` read by this tick; the
executions are inserted in the same transaction. Overlapping ticks
therefore never fire one schedule occurrence twice. Contacts the workflow's
re-entry rules refuse are skipped and counted, not failed.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import structlog
from croniter import croniter
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.constants import ScheduleType, TriggerType, WorkflowStatus
from core.exceptions import ConflictError, ScheduleConfigError
from core.utils import add_interval, ensure_utc, get_zone, parse_datetime, utcnow
from db.models.schedule import WorkflowSchedule
from services.execution_service import ExecutionService
from services.schedule_service import ScheduleService
from services.workflow_service import WorkflowService
from workflow.collaborators import AudienceResolver, ScheduleConfigAudience
from workflow.definition import WorkflowGraph

logger = structlog.get_logger(__name__)

INTERVAL_UNITS = ("minutes", "hours", "days", "weeks")


@dataclass
class ScheduleRunResult:
    """Outcome of one scheduler sweep."""
    started: int = 0
    skipped: int = 0
    execution_ids: list[str] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"started": self.started, "skipped": self.skipped, "errors": self.errors}


# ─── Config parsing ────────────────────────────────────────────

def _first(config: dict, *keys: str) -> Any:
    for key in keys:
        if config.get(key) not in (None, ""):
            return config[key]
    return None


def parse_interval(config: dict) -> tuple[int, str]:
    """Return ``(amount, unit)`` of a recurring schedule config."""
    if _first(config, "interval") is not None:
        amount, unit = config["interval"], config.get("unit", "days")
    elif _first(config, "intervalMinutes", "interval_minutes") is not None:
        amount, unit = _first(config, "intervalMinutes", "interval_minutes"), "minutes"
    else:
        raise ScheduleConfigError("Recurring schedule requires interval and unit")

    try:
        amount = int(amount)
    except (TypeError, ValueError) as e:
        raise ScheduleConfigError(f"Invalid interval: {amount!r}") from e
    if amount <= 0:
        raise ScheduleConfigError("Interval must be positive")
    if unit not in INTERVAL_UNITS:
        raise ScheduleConfigError(f"Invalid interval unit {unit!r}; expected one of {INTERVAL_UNITS}")
    return amount, unit


def cron_expression(config: dict) -> str:
    expression = _first(config, "cronExpression", "cron_expression", "expression")
    if not expression or not croniter.is_valid(expression):
        raise ScheduleConfigError(f"Invalid cron expression: {expression!r}")
    return expression


def next_cron_run(expression: str, tz: str, after: datetime) -> datetime:
    """Next cron match strictly after ``after``, evaluated in ``tz``; aware UTC."""
    local_start = ensure_utc(after).astimezone(get_zone(tz))
    return ensure_utc(croniter(expression, local_start).get_next(datetime))


def next_recurring_run(previous: datetime, amount: int, unit: str, tz: str, now: datetime) -> datetime:
    """First occurrence after ``now`` on the grid ``previous + k * interval``.

    Missed occurrences (downtime, paused workflow) are skipped, not replayed.
    """
    if unit in ("minutes", "hours"):
        step = timedelta(minutes=amount) if unit == "minutes" else timedelta(hours=amount)
        if previous > now:
            return previous + step
        missed = (now - previous) // step
        return previous + step * (missed + 1)

    upcoming = add_interval(previous, amount, unit, tz)
    while upcoming <= now:
        upcoming = add_interval(upcoming, amount, unit, tz)
    return upcoming


# ─── Scheduler ─────────────────────────────────────────────────

class Scheduler:
    """Finds due schedules, starts their executions, and reschedules them."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        audience: Optional[AudienceResolver] = None,
        batch_size: int = 100,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.audience = audience or ScheduleConfigAudience()
        self.batch_size = batch_size
        self.clock = clock

    async def process_due_schedules(self, now: Optional[datetime] = None) -> ScheduleRunResult:
        """Fire every due schedule. One schedule's error never stops the batch."""
        now = now or self.clock()
        result = ScheduleRunResult()

        async with self.session_factory() as session:
            due = await ScheduleService(session).list_due(now, self.batch_size)

        if due:
            logger.info("schedules_due", count=len(due))

        for schedule in due:
            try:
                execution_ids, skipped = await self._fire(schedule, now)
            except Exception as e:
                logger.error("schedule_fire_failed", schedule_id=schedule.id, error=str(e), exc_info=True)
                result.errors.append({"schedule_id": schedule.id, "error": str(e)})
                await self._record_failure(schedule.id, str(e), deactivate=isinstance(e, ScheduleConfigError))
                continue
            result.execution_ids.extend(execution_ids)
            result.started += len(execution_ids)
            result.skipped += skipped

        return result

    async def _fire(self, schedule: WorkflowSchedule, now: datetime) -> tuple[list[str], int]:
        contact_ids = await self.audience.resolve(schedule)

        async with self.session_factory() as session, session.begin():
            schedules = ScheduleService(session)
            workflow = await WorkflowService(session).get_by_id(schedule.workflow_id)

            if workflow is None or workflow.status == WorkflowStatus.ARCHIVED.value:
                await schedules.deactivate(schedule.id)
                logger.info("schedule_deactivated", schedule_id=schedule.id, reason="workflow archived or missing")
                return [], 0
            if workflow.status != WorkflowStatus.ACTIVE.value:
                logger.debug("schedule_skipped", schedule_id=schedule.id, workflow_status=workflow.status)
                return [], 0

            trigger = WorkflowGraph.from_workflow(workflow).trigger_node()

            executions_count = schedule.executions_count + 1
            next_run = self.compute_next_run(schedule, now)
            is_active = next_run is not None
            if schedule.max_executions is not None and executions_count >= schedule.max_executions:
                is_active = False

            claimed = await schedules.claim(schedule, {
                "executions_count": executions_count,
                "last_execution_at": now,
                "last_execution_status": "success",
                "last_error": None,
                "next_execution_at": next_run if is_active else None,
                "is_active": is_active,
            })
            if not claimed:
                logger.info("schedule_already_claimed", schedule_id=schedule.id)
                return [], 0

            executions = ExecutionService(session)
            execution_ids = []
            skipped = 0
            for contact_id in contact_ids:
                refusal = await executions.entry_refusal(workflow, contact_id)
                if refusal is not None:
                    logger.info(
                        "schedule_contact_skipped", schedule_id=schedule.id, contact_id=contact_id, reason=refusal,
                    )
                    skipped += 1
                    continue
                execution = await executions.create_execution(
                    workflow_id=workflow.id,
                    workflow_version=workflow.version,
                    organization_id=workflow.organization_id,
                    contact_id=contact_id,
                    trigger_node_id=trigger.id,
                    trigger_type=TriggerType.SCHEDULE.value,
                    schedule_id=schedule.id,
                    context={"trigger": {"scheduleId": schedule.id, "firedAt": now.isoformat()}},
                )
                execution_ids.append(execution.id)

        if not contact_ids:
            logger.warning("schedule_fired_without_audience", schedule_id=schedule.id)
        logger.info(
            "schedule_fired",
            schedule_id=schedule.id,
            workflow_id=schedule.workflow_id,
            executions_started=len(execution_ids),
            contacts_skipped=skipped,
            executions_count=executions_count,
            next_execution_at=next_run.isoformat() if is_active and next_run else None,
            is_active=is_active,
        )
        return execution_ids, skipped

    async def _record_failure(self, schedule_id: str, error: str, deactivate: bool) -> None:
        try:
            async with self.session_factory() as session, session.begin():
                await ScheduleService(session).record_failure(schedule_id, error, deactivate=deactivate)
        except Exception as e:
            logger.error("schedule_failure_not_recorded", schedule_id=schedule_id, error=str(e))

    # ─── Fire-time arithmetic ──────────────────────────────

    def compute_next_run(self, schedule: WorkflowSchedule, now: datetime) -> Optional[datetime]:
        """Next fire time after ``now``, or None when the schedule is exhausted."""
        config = schedule.schedule_config or {}
        tz = schedule.timezone or "UTC"

        if schedule.schedule_type == ScheduleType.ONCE.value:
            return None

        if schedule.schedule_type == ScheduleType.RECURRING.value:
            amount, unit = parse_interval(config)
            upcoming = next_recurring_run(schedule.next_execution_at or now, amount, unit, tz, now)
            end_at = parse_datetime(_first(config, "endAt", "end_at"), tz)
            if end_at is not None and upcoming > end_at:
                return None
            return upcoming

        if schedule.schedule_type == ScheduleType.CRON.value:
            return next_cron_run(cron_expression(config), tz, now)

        raise ScheduleConfigError(f"Unknown schedule type: {schedule.schedule_type!r}")

    def first_run(self, schedule_type: str, config: dict, tz: str, now: datetime) -> datetime:
        """Initial ``next_execution_at`` for a new schedule."""
        if schedule_type == ScheduleType.ONCE.value:
            fire_at = parse_datetime(_first(config, "fireAt", "fire_at", "scheduledAt", "scheduled_at"), tz)
            if fire_at is None:
                raise ScheduleConfigError("Once schedule requires fireAt")
            return fire_at

        if schedule_type == ScheduleType.RECURRING.value:
            parse_interval(config)
            start_at = parse_datetime(_first(config, "startAt", "start_at"), tz)
            return start_at or now

        if schedule_type == ScheduleType.CRON.value:
            return next_cron_run(cron_expression(config), tz, now)

        raise ScheduleConfigError(f"Unknown schedule type: {schedule_type!r}")

    # ─── Management ────────────────────────────────────────

    async def create_schedule(
        self,
        workflow_id: str,
        schedule_type: str,
        schedule_config: dict[str, Any],
        timezone: str = "UTC",
        name: str = "",
        max_executions: Optional[int] = None,
    ) -> WorkflowSchedule:
        """Create an active schedule with its first fire time computed.

        Raises:
            NotFoundError: unknown workflow
            ConflictError: workflow is archived
            ScheduleConfigError / ValidationError: unusable config or timezone
        """
        get_zone(timezone)
        if max_executions is not None and max_executions < 1:
            raise ScheduleConfigError("max_executions must be at least 1")
        next_run = self.first_run(schedule_type, schedule_config, timezone, self.clock())

        async with self.session_factory() as session, session.begin():
            workflow = await WorkflowService(session).get_or_404(workflow_id)
            if workflow.status == WorkflowStatus.ARCHIVED.value:
                raise ConflictError(f"Workflow {workflow_id} is archived")
            schedule = await ScheduleService(session).create({
                "workflow_id": workflow.id,
                "organization_id": workflow.organization_id,
                "name": name,
                "schedule_type": schedule_type,
                "schedule_config": schedule_config,
                "timezone": timezone,
                "next_execution_at": next_run,
                "max_executions": max_executions,
                "executions_count": 0,
                "is_active": True,
            })

        logger.info(
            "schedule_created",
            schedule_id=schedule.id,
            workflow_id=workflow_id,
            schedule_type=schedule_type,
            next_execution_at=next_run.isoformat(),
        )
        return schedule

    async def deactivate_schedule(self, schedule_id: str) -> WorkflowSchedule:
        async with self.session_factory() as session, session.begin():
            schedules = ScheduleService(session)
            await schedules.get_or_404(schedule_id)
            schedule = await schedules.deactivate(schedule_id)
        logger.info("schedule_deactivated", schedule_id=schedule_id, reason="requested")
        return schedule
