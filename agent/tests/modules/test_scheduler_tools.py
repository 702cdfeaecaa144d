"""Tests for the scheduler authoring tools."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from modules.scheduler.errors import (
    ConflictingScheduleFieldsError,
    InvalidScheduleError,
    InvalidTransitionError,
    NotFoundError,
    PastRunTimeError,
    TaskNotFoundError,
)
from modules.scheduler.tools import SchedulerTools, format_local, parse_instant

UTC = timezone.utc


@pytest.fixture
def tools(store, settings, task_store, clock):
    return SchedulerTools(store, settings, task_store=task_store, clock=clock)


class TestParseInstant:
    def test_z_suffix(self):
        assert parse_instant("2026-01-31T20:00:00Z") == datetime(2026, 1, 31, 20, 0, tzinfo=UTC)

    def test_offset_is_converted_to_utc(self):
        assert parse_instant("2026-01-31T15:00:00-05:00") == datetime(2026, 1, 31, 20, 0, tzinfo=UTC)

    def test_naive_is_utc(self):
        assert parse_instant("2026-01-31T20:00:00") == datetime(2026, 1, 31, 20, 0, tzinfo=UTC)

    def test_garbage(self):
        with pytest.raises(InvalidScheduleError, match="Use UTC ISO format"):
            parse_instant("tomorrow at noon")


class TestFormatLocal:
    def test_renders_in_named_zone(self):
        value = datetime(2026, 1, 31, 20, 0, tzinfo=UTC)
        assert format_local(value, "America/New_York") == "Sat, Jan 31, 03:00 PM EST"

    def test_none(self):
        assert format_local(None, "UTC") is None


class TestCreateReminder:
    @pytest.mark.asyncio
    async def test_one_time_reminder(self, tools, owner_id):
        result = await tools.create_reminder(
            title="call mom", run_at="2026-01-31T20:00:00Z", owner_id=owner_id
        )

        assert result["job_kind"] == "reminder"
        assert result["schedule_type"] == "once"
        assert result["next_run_at"] == "2026-01-31T20:00:00+00:00"
        assert result["timezone"] == "America/New_York"
        assert result["action_payload"] == {"message": "call mom", "preferred_channel": "app"}
        assert result["message"] == 'Reminder set for Sat, Jan 31, 03:00 PM EST (America/New_York): "call mom"'

    @pytest.mark.asyncio
    async def test_daily_reminder_in_new_york(self, tools, owner_id, clock):
        clock.set(datetime(2026, 3, 5, 12, 0, tzinfo=UTC))

        result = await tools.create_reminder(
            title="standup",
            cron_expression="0 8 * * *",
            timezone="America/New_York",
            owner_id=owner_id,
        )

        assert result["job_kind"] == "recurring"
        assert result["next_run_at"] == "2026-03-05T13:00:00+00:00"
        assert result["next_run_local"] == "Thu, Mar 05, 08:00 AM EST"
        assert result["message"].startswith('Recurring reminder created: "standup"')

    @pytest.mark.asyncio
    async def test_custom_message_and_channel(self, tools, owner_id):
        result = await tools.create_reminder(
            title="rent",
            message="Pay the rent today",
            run_at="2026-02-01T14:00:00Z",
            preferred_channel="telegram",
            owner_id=owner_id,
        )
        assert result["action_payload"] == {"message": "Pay the rent today", "preferred_channel": "telegram"}

    @pytest.mark.asyncio
    async def test_cron_whitespace_is_normalised(self, tools, owner_id):
        result = await tools.create_reminder(
            title="water plants", cron_expression="  0  9 * *   1 ", owner_id=owner_id
        )
        assert result["cron_expression"] == "0 9 * * 1"

    @pytest.mark.asyncio
    async def test_both_schedule_fields(self, tools, owner_id):
        with pytest.raises(ConflictingScheduleFieldsError):
            await tools.create_reminder(
                title="x", run_at="2026-02-01T00:00:00Z", cron_expression="0 8 * * *", owner_id=owner_id
            )

    @pytest.mark.asyncio
    async def test_no_schedule_fields(self, tools, owner_id):
        with pytest.raises(InvalidScheduleError, match="Must provide either"):
            await tools.create_reminder(title="x", owner_id=owner_id)

    @pytest.mark.asyncio
    async def test_past_run_at(self, tools, owner_id):
        with pytest.raises(PastRunTimeError):
            await tools.create_reminder(title="x", run_at="2026-01-31T18:59:59Z", owner_id=owner_id)

    @pytest.mark.asyncio
    async def test_run_at_equal_to_now_is_past(self, tools, owner_id, clock):
        with pytest.raises(PastRunTimeError):
            await tools.create_reminder(title="x", run_at=clock.now().isoformat(), owner_id=owner_id)

    @pytest.mark.asyncio
    async def test_bad_cron(self, tools, owner_id):
        with pytest.raises(InvalidScheduleError):
            await tools.create_reminder(title="x", cron_expression="every day", owner_id=owner_id)

    @pytest.mark.asyncio
    async def test_unknown_timezone(self, tools, owner_id):
        with pytest.raises(InvalidScheduleError, match="Unknown timezone"):
            await tools.create_reminder(
                title="x", cron_expression="0 8 * * *", timezone="Atlantis/Lost", owner_id=owner_id
            )

    @pytest.mark.asyncio
    async def test_requires_owner(self, tools):
        with pytest.raises(ValueError, match="owner_id is required"):
            await tools.create_reminder(title="x", run_at="2026-02-01T00:00:00Z")

    @pytest.mark.asyncio
    async def test_rejected_input_creates_nothing(self, tools, owner_id, store):
        with pytest.raises(PastRunTimeError):
            await tools.create_reminder(title="x", run_at="2020-01-01T00:00:00Z", owner_id=owner_id)
        assert await store.list_by_owner(owner_id) == []

    @pytest.mark.asyncio
    async def test_foreign_task_is_not_found(self, tools, owner_id, task_store, store):
        task_store.get_task.side_effect = TaskNotFoundError("Task not found")
        foreign = str(uuid.uuid4())

        with pytest.raises(TaskNotFoundError):
            await tools.create_reminder(
                title="x", run_at="2026-02-01T00:00:00Z", task_id=foreign, owner_id=owner_id
            )
        task_store.get_task.assert_awaited_once_with(owner_id, foreign)
        assert await store.list_by_owner(owner_id) == []


class TestCreateAgentTask:
    @pytest.mark.asyncio
    async def test_one_time_task(self, tools, owner_id):
        task_id = str(uuid.uuid4())
        result = await tools.create_agent_task(
            title="Summarise inbox",
            instruction="Summarise unread email and send me the highlights",
            run_at="2026-02-01T13:00:00Z",
            task_id=task_id,
            owner_id=owner_id,
        )

        assert result["job_kind"] == "one_time"
        assert result["action_type"] == "agent_task"
        assert result["task_id"] == task_id
        assert result["action_payload"] == {
            "instruction": "Summarise unread email and send me the highlights",
            "task_id": task_id,
            "preferred_channel": "app",
        }
        assert result["message"].startswith("Agent task scheduled for")

    @pytest.mark.asyncio
    async def test_recurring_task(self, tools, owner_id):
        result = await tools.create_agent_task(
            title="Weekly review",
            instruction="Review open tasks",
            cron_expression="0 17 * * 5",
            owner_id=owner_id,
        )
        assert result["job_kind"] == "recurring"
        assert result["message"].startswith('Recurring agent task created: "Weekly review"')

    @pytest.mark.asyncio
    async def test_empty_instruction_is_rejected(self, tools, owner_id):
        with pytest.raises(ValueError):
            await tools.create_agent_task(
                title="nothing", instruction="", run_at="2026-02-01T13:00:00Z", owner_id=owner_id
            )

    @pytest.mark.asyncio
    async def test_linked_task_is_checked_in_owner_scope(self, tools, owner_id, task_store):
        await tools.create_agent_task(
            title="Check build",
            instruction="Check the build",
            run_at="2026-02-01T13:00:00Z",
            task_id=task_store.task_id,
            owner_id=owner_id,
        )
        task_store.get_task.assert_awaited_once_with(owner_id, task_store.task_id)

    @pytest.mark.asyncio
    async def test_foreign_task_is_not_found(self, tools, owner_id, task_store, store):
        task_store.get_task.side_effect = TaskNotFoundError("Task not found")

        with pytest.raises(NotFoundError):
            await tools.create_agent_task(
                title="Check build",
                instruction="Check the build",
                run_at="2026-02-01T13:00:00Z",
                task_id=str(uuid.uuid4()),
                owner_id=owner_id,
            )
        assert await store.list_by_owner(owner_id) == []

    @pytest.mark.asyncio
    async def test_unlinked_task_skips_lookup(self, tools, owner_id, task_store):
        await tools.create_agent_task(
            title="Check build", instruction="Check the build", run_at="2026-02-01T13:00:00Z", owner_id=owner_id
        )
        task_store.get_task.assert_not_awaited()


class TestCreateFollowUp:
    @pytest.mark.asyncio
    async def test_follow_up_in_two_hours(self, tools, owner_id, task_store, clock):
        check_at = (clock.now() + timedelta(hours=2)).isoformat()

        result = await tools.create_follow_up(
            task_id=task_store.task_id,
            reason="waiting on signature",
            check_at=check_at,
            owner_id=owner_id,
        )

        assert result["job_kind"] == "follow_up"
        assert result["action_type"] == "agent_task"
        assert result["title"] == "Follow-up: Send the contract"
        assert result["task_id"] == task_store.task_id
        assert result["action_payload"]["task_id"] == task_store.task_id
        assert result["scheduled_for"] == "2026-01-31T21:00:00+00:00"
        assert result["task_title"] == "Send the contract"
        assert result["comment_added"] is True

        task_store.get_task.assert_awaited_once_with(owner_id, task_store.task_id)
        task_store.append_comment.assert_awaited_once_with(
            owner_id,
            task_store.task_id,
            "Scheduled follow-up for 2026-01-31T21:00:00+00:00: waiting on signature",
        )

    @pytest.mark.asyncio
    async def test_custom_instruction(self, tools, owner_id, task_store):
        result = await tools.create_follow_up(
            task_id=task_store.task_id,
            reason="check status",
            check_at="2026-02-02T09:00:00Z",
            instruction="Ask the client whether they signed",
            owner_id=owner_id,
        )
        assert result["action_payload"]["instruction"] == "Ask the client whether they signed"

    @pytest.mark.asyncio
    async def test_unknown_task(self, tools, owner_id, task_store, store):
        task_store.get_task.side_effect = TaskNotFoundError("Task not found")

        with pytest.raises(TaskNotFoundError):
            await tools.create_follow_up(
                task_id=task_store.task_id, reason="r", check_at="2026-02-02T09:00:00Z", owner_id=owner_id
            )
        task_store.append_comment.assert_not_awaited()
        assert await store.list_by_owner(owner_id) == []

    @pytest.mark.asyncio
    async def test_comment_failure_keeps_job(self, tools, owner_id, task_store, store):
        task_store.append_comment.side_effect = RuntimeError("Failed to add task comment: database is locked")

        result = await tools.create_follow_up(
            task_id=task_store.task_id, reason="r", check_at="2026-02-02T09:00:00Z", owner_id=owner_id
        )

        assert result["comment_added"] is False
        jobs = await store.list_by_owner(owner_id)
        assert [str(j.id) for j in jobs] == [result["job_id"]]

    @pytest.mark.asyncio
    async def test_empty_lookup_is_not_found(self, tools, owner_id, task_store):
        task_store.get_task.return_value = None
        with pytest.raises(TaskNotFoundError):
            await tools.create_follow_up(
                task_id=task_store.task_id, reason="r", check_at="2026-02-02T09:00:00Z", owner_id=owner_id
            )

    @pytest.mark.asyncio
    async def test_past_check_at_skips_task_lookup(self, tools, owner_id, task_store):
        with pytest.raises(PastRunTimeError):
            await tools.create_follow_up(
                task_id=task_store.task_id, reason="r", check_at="2026-01-01T00:00:00Z", owner_id=owner_id
            )
        task_store.get_task.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_requires_task_store(self, store, settings, clock, owner_id):
        tools = SchedulerTools(store, settings, clock=clock)
        with pytest.raises(RuntimeError):
            await tools.create_follow_up(
                task_id=str(uuid.uuid4()), reason="r", check_at="2026-02-02T09:00:00Z", owner_id=owner_id
            )


class TestQueries:
    @pytest.mark.asyncio
    async def test_list_jobs_status_filter(self, tools, owner_id):
        keep = await tools.create_reminder(title="keep", run_at="2026-02-01T10:00:00Z", owner_id=owner_id)
        drop = await tools.create_reminder(title="drop", run_at="2026-02-01T09:00:00Z", owner_id=owner_id)
        await tools.cancel_job(drop["job_id"], owner_id=owner_id)

        active = await tools.list_jobs(owner_id=owner_id)
        assert [j["job_id"] for j in active] == [keep["job_id"]]

        everything = await tools.list_jobs(status="all", owner_id=owner_id)
        assert [j["title"] for j in everything] == ["drop", "keep"]

        cancelled = await tools.list_jobs(status="cancelled", owner_id=owner_id)
        assert [j["job_id"] for j in cancelled] == [drop["job_id"]]

    @pytest.mark.asyncio
    async def test_list_jobs_rejects_unknown_filter(self, tools, owner_id):
        with pytest.raises(ValueError):
            await tools.list_jobs(status="sleeping", owner_id=owner_id)

    @pytest.mark.asyncio
    async def test_list_jobs_is_owner_scoped(self, tools, owner_id):
        await tools.create_reminder(title="mine", run_at="2026-02-01T10:00:00Z", owner_id=owner_id)
        assert await tools.list_jobs(owner_id=str(uuid.uuid4())) == []

    @pytest.mark.asyncio
    async def test_get_job_includes_executions(self, tools, owner_id, store, clock):
        created = await tools.create_reminder(title="call mom", run_at="2026-01-31T20:00:00Z", owner_id=owner_id)
        job = await store.get_by_id(owner_id, created["job_id"])
        await store.record_execution(job, status="succeeded", attempts=1, started_at=clock.now())

        result = await tools.get_job(created["job_id"], owner_id=owner_id)
        assert result["title"] == "call mom"
        assert len(result["recent_executions"]) == 1
        assert result["recent_executions"][0]["status"] == "succeeded"
        assert result["recent_executions"][0]["scheduled_for"] == "2026-01-31T20:00:00+00:00"

    @pytest.mark.asyncio
    async def test_get_job_of_other_owner(self, tools, owner_id):
        created = await tools.create_reminder(title="x", run_at="2026-02-01T10:00:00Z", owner_id=owner_id)
        with pytest.raises(NotFoundError):
            await tools.get_job(created["job_id"], owner_id=str(uuid.uuid4()))


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_cancel_job(self, tools, owner_id):
        created = await tools.create_reminder(title="call mom", run_at="2026-01-31T20:00:00Z", owner_id=owner_id)

        result = await tools.cancel_job(created["job_id"], owner_id=owner_id)
        assert result["status"] == "cancelled"
        assert result["message"] == 'Cancelled: "call mom"'

        again = await tools.cancel_job(created["job_id"], owner_id=owner_id)
        assert again["message"] == "Job is already cancelled."

    @pytest.mark.asyncio
    async def test_cancel_unknown_job(self, tools, owner_id):
        with pytest.raises(NotFoundError):
            await tools.cancel_job(str(uuid.uuid4()), owner_id=owner_id)

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, tools, owner_id, clock):
        created = await tools.create_reminder(title="standup", cron_expression="0 8 * * *", owner_id=owner_id)

        paused = await tools.pause_or_resume(created["job_id"], "paused", owner_id=owner_id)
        assert paused["status"] == "paused"
        assert paused["message"] == 'Paused: "standup"'

        clock.advance(days=2)
        resumed = await tools.pause_or_resume(created["job_id"], "active", owner_id=owner_id)
        assert resumed["status"] == "active"
        assert resumed["message"].startswith('Resumed: "standup" - next:')
        assert datetime.fromisoformat(resumed["next_run_at"]) > clock.now()

    @pytest.mark.asyncio
    async def test_pause_rejects_other_statuses(self, tools, owner_id):
        created = await tools.create_reminder(title="x", run_at="2026-02-01T10:00:00Z", owner_id=owner_id)
        with pytest.raises(ValueError):
            await tools.pause_or_resume(created["job_id"], "cancelled", owner_id=owner_id)

    @pytest.mark.asyncio
    async def test_resume_cancelled_job(self, tools, owner_id):
        created = await tools.create_reminder(title="x", run_at="2026-02-01T10:00:00Z", owner_id=owner_id)
        await tools.cancel_job(created["job_id"], owner_id=owner_id)
        with pytest.raises(InvalidTransitionError):
            await tools.pause_or_resume(created["job_id"], "active", owner_id=owner_id)

    @pytest.mark.asyncio
    async def test_update_schedule_moves_run_time(self, tools, owner_id):
        created = await tools.create_reminder(title="x", run_at="2026-02-01T10:00:00Z", owner_id=owner_id)

        result = await tools.update_schedule(created["job_id"], run_at="2026-02-03T10:00:00Z", owner_id=owner_id)
        assert result["next_run_at"] == "2026-02-03T10:00:00+00:00"
        assert result["message"].startswith('Updated scheduled job: "x" - next:')

    @pytest.mark.asyncio
    async def test_update_schedule_to_cron(self, tools, owner_id, clock):
        clock.set(datetime(2026, 3, 5, 12, 0, tzinfo=UTC))
        created = await tools.create_reminder(title="x", run_at="2026-03-06T10:00:00Z", owner_id=owner_id)

        result = await tools.update_schedule(
            created["job_id"], cron_expression="0 8 * * *", timezone="America/New_York", owner_id=owner_id
        )
        assert result["schedule_type"] == "cron"
        assert result["next_run_at"] == "2026-03-05T13:00:00+00:00"

    @pytest.mark.asyncio
    async def test_update_schedule_validation(self, tools, owner_id):
        created = await tools.create_reminder(title="x", run_at="2026-02-01T10:00:00Z", owner_id=owner_id)
        with pytest.raises(InvalidScheduleError):
            await tools.update_schedule(created["job_id"], owner_id=owner_id)
        with pytest.raises(PastRunTimeError):
            await tools.update_schedule(created["job_id"], run_at="2026-01-01T00:00:00Z", owner_id=owner_id)
        with pytest.raises(InvalidScheduleError):
            await tools.update_schedule(created["job_id"], cron_expression="0 99 * * *", owner_id=owner_id)

    @pytest.mark.asyncio
    async def test_update_job_display_fields(self, tools, owner_id):
        created = await tools.create_reminder(title="x", run_at="2026-02-01T10:00:00Z", owner_id=owner_id)

        result = await tools.update_job(
            created["job_id"], title="call dad", description="Birthday", owner_id=owner_id
        )
        assert result["title"] == "call dad"
        assert result["description"] == "Birthday"
        assert result["next_run_at"] == created["next_run_at"]

        with pytest.raises(ValueError, match="Nothing to update"):
            await tools.update_job(created["job_id"], owner_id=owner_id)
