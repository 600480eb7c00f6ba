"""Tests for schedule fire-time arithmetic and the due-schedule sweep."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from core.constants import ExecutionStatus, ScheduleType, TriggerType, WorkflowStatus
from core.exceptions import ScheduleConfigError, ValidationError
from db.models.schedule import WorkflowSchedule
from services.execution_service import ExecutionService
from services.schedule_service import ScheduleService
from services.workflow_service import WorkflowService
from workflow.scheduler import Scheduler, next_cron_run, next_recurring_run, parse_interval
from tests.builders import START, action, chain, trigger


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


async def _load_schedule(session_factory, schedule_id):
    async with session_factory() as session:
        return await ScheduleService(session).get_by_id(schedule_id)


async def _executions_for(session_factory, schedule_id):
    async with session_factory() as session:
        items, _ = await ExecutionService(session).list(filters={"schedule_id": schedule_id})
        return list(items)


async def _finish_executions(session_factory, schedule_id):
    async with session_factory() as session, session.begin():
        executions = ExecutionService(session)
        items, _ = await executions.list(filters={"schedule_id": schedule_id})
        for execution in items:
            await executions.update(execution.id, {"status": ExecutionStatus.COMPLETED.value})


@pytest_asyncio.fixture
async def workflow(make_workflow):
    return await make_workflow(
        [trigger(), action("a1")], chain("t1", "a1"),
        settings={"allowReentry": True, "maxExecutionsPerContact": 10},
    )


# ─── Fire-time arithmetic ───

@pytest.mark.unit
class TestIntervalParsing:
    def test_interval_and_unit(self):
        assert parse_interval({"interval": 2, "unit": "weeks"}) == (2, "weeks")

    def test_legacy_minutes(self):
        assert parse_interval({"intervalMinutes": 30}) == (30, "minutes")

    @pytest.mark.parametrize("config", [
        {},
        {"interval": 0, "unit": "days"},
        {"interval": "soon", "unit": "days"},
        {"interval": 1, "unit": "fortnights"},
    ])
    def test_invalid(self, config):
        with pytest.raises(ScheduleConfigError):
            parse_interval(config)


@pytest.mark.unit
class TestNextRun:
    def test_daily_schedule_keeps_local_time_across_dst(self):
        schedule = WorkflowSchedule(
            schedule_type=ScheduleType.RECURRING.value,
            schedule_config={"interval": 1, "unit": "days"},
            timezone="America/New_York",
            next_execution_at=_utc(2026, 3, 7, 14, 0),
        )
        scheduler = Scheduler(None)

        # 09:00 EST on the 7th, 09:00 EDT on the 8th
        after_first = scheduler.compute_next_run(schedule, _utc(2026, 3, 7, 14, 0))
        assert after_first == _utc(2026, 3, 8, 13, 0)

        schedule.next_execution_at = after_first
        assert scheduler.compute_next_run(schedule, after_first) == _utc(2026, 3, 9, 13, 0)

    def test_missed_occurrences_are_skipped(self):
        assert next_recurring_run(START, 1, "hours", "UTC", START + timedelta(hours=5, minutes=30)) == \
            START + timedelta(hours=6)
        assert next_recurring_run(START, 1, "days", "UTC", START + timedelta(days=3, hours=1)) == \
            START + timedelta(days=4)

    def test_future_previous_advances_one_step(self):
        assert next_recurring_run(START, 15, "minutes", "UTC", START - timedelta(hours=1)) == \
            START + timedelta(minutes=15)

    def test_cron_in_timezone(self):
        assert next_cron_run("0 9 * * *", "America/New_York", _utc(2026, 3, 8, 12, 0)) == _utc(2026, 3, 8, 13, 0)
        assert next_cron_run("0 9 * * *", "America/New_York", _utc(2026, 1, 15, 15, 0)) == _utc(2026, 1, 16, 14, 0)

    def test_once_has_no_next_run(self):
        schedule = WorkflowSchedule(
            schedule_type=ScheduleType.ONCE.value,
            schedule_config={"fireAt": "2026-03-02T09:00:00"},
            timezone="UTC",
            next_execution_at=START,
        )
        assert Scheduler(None).compute_next_run(schedule, START) is None

    def test_recurring_past_end_has_no_next_run(self):
        schedule = WorkflowSchedule(
            schedule_type=ScheduleType.RECURRING.value,
            schedule_config={"interval": 1, "unit": "days", "endAt": "2026-03-03T00:00:00"},
            timezone="UTC",
            next_execution_at=START,
        )
        assert Scheduler(None).compute_next_run(schedule, START) is None

    def test_first_run(self):
        scheduler = Scheduler(None)
        assert scheduler.first_run("once", {"fireAt": "2026-03-10T09:00:00"}, "America/New_York", START) == \
            _utc(2026, 3, 10, 13, 0)
        assert scheduler.first_run("once", {"scheduledAt": "2026-03-10T09:00:00Z"}, "UTC", START) == \
            _utc(2026, 3, 10, 9, 0)
        assert scheduler.first_run("recurring", {"interval": 1, "unit": "hours"}, "UTC", START) == START
        assert scheduler.first_run("cron", {"cronExpression": "30 12 * * *"}, "UTC", START) == \
            _utc(2026, 3, 2, 12, 30)

    def test_first_run_errors(self):
        scheduler = Scheduler(None)
        with pytest.raises(ScheduleConfigError):
            scheduler.first_run("once", {}, "UTC", START)
        with pytest.raises(ScheduleConfigError):
            scheduler.first_run("cron", {"cronExpression": "every day"}, "UTC", START)
        with pytest.raises(ScheduleConfigError):
            scheduler.first_run("hourly", {}, "UTC", START)


# ─── Schedule management ───

@pytest.mark.integration
class TestCreateSchedule:
    async def test_create_computes_first_run(self, scheduler, workflow):
        schedule = await scheduler.create_schedule(
            workflow.id, "cron", {"cronExpression": "0 9 * * *"}, timezone="America/New_York", name="Morning",
        )
        assert schedule.is_active is True
        assert schedule.executions_count == 0
        assert schedule.organization_id == workflow.organization_id
        assert schedule.next_execution_at == _utc(2026, 3, 2, 14, 0)

    async def test_unknown_timezone_rejected(self, scheduler, workflow):
        with pytest.raises(ValidationError):
            await scheduler.create_schedule(workflow.id, "recurring", {"interval": 1, "unit": "days"}, timezone="Mars/Base")

    async def test_invalid_max_executions_rejected(self, scheduler, workflow):
        with pytest.raises(ScheduleConfigError):
            await scheduler.create_schedule(
                workflow.id, "recurring", {"interval": 1, "unit": "days"}, max_executions=0,
            )

    async def test_deactivate(self, scheduler, workflow, session_factory):
        schedule = await scheduler.create_schedule(workflow.id, "recurring", {"interval": 1, "unit": "days"})
        await scheduler.deactivate_schedule(schedule.id)
        assert (await _load_schedule(session_factory, schedule.id)).is_active is False


# ─── Firing ───

@pytest.mark.integration
class TestProcessDueSchedules:
    async def test_once_schedule_fires_and_deactivates(self, scheduler, workflow, session_factory):
        schedule = await scheduler.create_schedule(
            workflow.id, "once", {"fireAt": "2026-03-02T11:00:00", "contactIds": ["c1", "c2", "c1"]},
        )

        first = await scheduler.process_due_schedules()

        assert first.started == 2
        assert first.errors == []
        row = await _load_schedule(session_factory, schedule.id)
        assert row.is_active is False
        assert row.next_execution_at is None
        assert row.executions_count == 1
        assert row.last_execution_status == "success"
        executions = await _executions_for(session_factory, schedule.id)
        assert sorted(e.contact_id for e in executions) == ["c1", "c2"]
        for execution in executions:
            assert execution.status == ExecutionStatus.PENDING.value
            assert execution.trigger_type == TriggerType.SCHEDULE.value
            assert execution.context["trigger"]["scheduleId"] == schedule.id

        second = await scheduler.process_due_schedules()
        assert second.started == 0

    async def test_future_schedule_not_due(self, scheduler, workflow):
        await scheduler.create_schedule(workflow.id, "once", {"fireAt": "2026-03-02T13:00:00", "contactIds": ["c1"]})
        assert (await scheduler.process_due_schedules()).started == 0

    async def test_recurring_schedule_reschedules(self, scheduler, workflow, session_factory, clock):
        schedule = await scheduler.create_schedule(
            workflow.id, "recurring", {"interval": 1, "unit": "hours", "contactIds": ["c1"]},
        )

        assert (await scheduler.process_due_schedules()).started == 1
        row = await _load_schedule(session_factory, schedule.id)
        assert row.is_active is True
        assert row.next_execution_at == START + timedelta(hours=1)

        clock.advance(minutes=30)
        assert (await scheduler.process_due_schedules()).started == 0
        await _finish_executions(session_factory, schedule.id)
        clock.advance(minutes=30)
        assert (await scheduler.process_due_schedules()).started == 1

    async def test_max_executions(self, scheduler, workflow, session_factory, clock):
        schedule = await scheduler.create_schedule(
            workflow.id,
            "recurring",
            {"interval": 1, "unit": "hours", "startAt": "2026-03-02T10:00:00", "contactIds": ["c1"]},
            max_executions=2,
        )

        assert (await scheduler.process_due_schedules()).started == 1
        assert (await _load_schedule(session_factory, schedule.id)).next_execution_at == START + timedelta(hours=1)

        clock.advance(hours=1)
        await _finish_executions(session_factory, schedule.id)
        assert (await scheduler.process_due_schedules()).started == 1
        row = await _load_schedule(session_factory, schedule.id)
        assert row.executions_count == 2
        assert row.is_active is False
        assert row.next_execution_at is None

        clock.advance(hours=1)
        assert (await scheduler.process_due_schedules()).started == 0

    async def test_end_at_deactivates(self, scheduler, workflow, session_factory):
        schedule = await scheduler.create_schedule(
            workflow.id,
            "recurring",
            {"interval": 1, "unit": "days", "endAt": "2026-03-03T06:00:00", "contactIds": ["c1"]},
        )

        assert (await scheduler.process_due_schedules()).started == 1
        row = await _load_schedule(session_factory, schedule.id)
        assert row.is_active is False
        assert row.next_execution_at is None

    async def test_overlapping_sweeps_fire_once(self, scheduler, workflow, session_factory):
        schedule = await scheduler.create_schedule(
            workflow.id, "once", {"fireAt": "2026-03-02T11:00:00", "contactIds": ["c1"]},
        )
        other = Scheduler(session_factory, clock=scheduler.clock)

        results = await asyncio.gather(scheduler.process_due_schedules(), other.process_due_schedules())

        assert sum(r.started for r in results) == 1
        assert len(await _executions_for(session_factory, schedule.id)) == 1

    async def test_invalid_config_deactivates(self, scheduler, workflow, session_factory):
        async with session_factory() as session, session.begin():
            schedule = await ScheduleService(session).create({
                "workflow_id": workflow.id,
                "organization_id": workflow.organization_id,
                "schedule_type": "cron",
                "schedule_config": {"cronExpression": "whenever", "contactIds": ["c1"]},
                "timezone": "UTC",
                "next_execution_at": START - timedelta(minutes=1),
            })

        result = await scheduler.process_due_schedules()

        assert result.started == 0
        assert result.errors[0]["schedule_id"] == schedule.id
        row = await _load_schedule(session_factory, schedule.id)
        assert row.is_active is False
        assert row.last_execution_status == "failed"
        assert "Invalid cron expression" in row.last_error
        assert await _executions_for(session_factory, schedule.id) == []

    async def test_paused_workflow_does_not_fire(self, scheduler, workflow, session_factory):
        schedule = await scheduler.create_schedule(workflow.id, "once", {"fireAt": "2026-03-02T11:00:00", "contactIds": ["c1"]})
        async with session_factory() as session, session.begin():
            await WorkflowService(session).pause(workflow.id)

        assert (await scheduler.process_due_schedules()).started == 0
        assert (await _load_schedule(session_factory, schedule.id)).is_active is True

    async def test_archived_workflow_deactivates_schedule(self, scheduler, workflow, session_factory):
        schedule = await scheduler.create_schedule(workflow.id, "once", {"fireAt": "2026-03-02T11:00:00", "contactIds": ["c1"]})
        async with session_factory() as session, session.begin():
            await WorkflowService(session).update(workflow.id, {"status": WorkflowStatus.ARCHIVED.value})

        assert (await scheduler.process_due_schedules()).started == 0
        assert (await _load_schedule(session_factory, schedule.id)).is_active is False


@pytest.mark.integration
class TestContactReentry:
    async def test_contact_with_active_execution_is_skipped(self, scheduler, workflow, session_factory, clock):
        schedule = await scheduler.create_schedule(
            workflow.id, "recurring", {"interval": 1, "unit": "hours", "contactIds": ["c1", "c2"]},
        )
        assert (await scheduler.process_due_schedules()).started == 2
        async with session_factory() as session, session.begin():
            executions = ExecutionService(session)
            items, _ = await executions.list(filters={"schedule_id": schedule.id, "contact_id": "c2"})
            await executions.update(items[0].id, {"status": ExecutionStatus.COMPLETED.value})

        clock.advance(hours=1)
        result = await scheduler.process_due_schedules()

        assert result.started == 1
        assert result.skipped == 1
        assert result.to_dict() == {"started": 1, "skipped": 1, "errors": []}
        row = await _load_schedule(session_factory, schedule.id)
        assert row.executions_count == 2
        assert row.is_active is True
        contacts = sorted(e.contact_id for e in await _executions_for(session_factory, schedule.id))
        assert contacts == ["c1", "c2", "c2"]

    async def test_reentry_disabled_by_default(self, scheduler, make_workflow, session_factory, clock):
        wf = await make_workflow([trigger(), action("a1")], chain("t1", "a1"))
        schedule = await scheduler.create_schedule(
            wf.id, "recurring", {"interval": 1, "unit": "hours", "contactIds": ["c1"]},
        )
        assert (await scheduler.process_due_schedules()).started == 1
        await _finish_executions(session_factory, schedule.id)

        clock.advance(hours=1)
        result = await scheduler.process_due_schedules()

        assert result.started == 0
        assert result.skipped == 1
        assert len(await _executions_for(session_factory, schedule.id)) == 1

    async def test_max_executions_per_contact(self, scheduler, make_workflow, session_factory, clock):
        wf = await make_workflow(
            [trigger(), action("a1")], chain("t1", "a1"),
            settings={"allowReentry": True, "maxExecutionsPerContact": 2},
        )
        schedule = await scheduler.create_schedule(
            wf.id, "recurring", {"interval": 1, "unit": "hours", "contactIds": ["c1"]},
        )

        started = []
        for _ in range(3):
            started.append((await scheduler.process_due_schedules()).started)
            await _finish_executions(session_factory, schedule.id)
            clock.advance(hours=1)

        assert started == [1, 1, 0]
        assert len(await _executions_for(session_factory, schedule.id)) == 2
