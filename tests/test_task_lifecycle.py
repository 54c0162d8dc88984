"""
Tests for the agent task lifecycle - checkpoints, owner decisions, pause and
resume, and agent progress updates.
"""
import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import update

from app.core.database import get_db_session
from app.core.errors import FailureReason, NotAuthenticatedError, StoreFailureError
from app.core.event_bus import EventType, event_bus
from app.core.utc import utc_now
from app.models.models import AgentPendingAction, TaskStatus
from app.services.autonomy import AutonomyService
from app.services.autonomy_graduation import GraduationService
from app.services.task_lifecycle import TaskLifecycleService, task_to_dict


@pytest.fixture
def service() -> TaskLifecycleService:
    autonomy = AutonomyService()
    return TaskLifecycleService(autonomy=autonomy, graduation=GraduationService(autonomy))


# ============================================================================
# CREATION
# ============================================================================

class TestCreateTask:

    @pytest.mark.asyncio
    async def test_checkpoint_when_owner_level_is_too_low(self, service, user_id):
        # balanced insurance is L1
        result = await service.create_task(
            user_id, "Switch insurer", "insurance", required_level="L3",
            recommendation="Cheaper policy found", tool_name="switch_policy", tool_params={"policy": "p-1"},
        )
        assert result.ok
        task = result.value
        assert task.status == TaskStatus.pending_input.value
        assert task.required_level == "L3"

        [action] = await service.pending_actions(user_id, task.id)
        assert action.status == "pending"
        assert action.tool_name == "switch_policy"
        assert action.autonomy_level == 3

    @pytest.mark.asyncio
    async def test_no_checkpoint_when_owner_level_suffices(self, service, user_id):
        result = await service.create_task(user_id, "Chase plumber", "maintenance", required_level="L2")
        assert result.value.status == TaskStatus.in_progress.value
        assert await service.pending_actions(user_id, result.value.id) == []

    @pytest.mark.asyncio
    async def test_scheduled_when_start_time_given(self, service, user_id):
        result = await service.create_task(
            user_id, "Routine inspection", "inspections", scheduled_at=utc_now() + timedelta(days=3)
        )
        assert result.value.status == TaskStatus.scheduled.value

    @pytest.mark.asyncio
    async def test_owner_edit_changes_checkpoint_decision(self, service, user_id):
        await AutonomyService().set_category_level(user_id, "insurance", "L4")
        result = await service.create_task(user_id, "Switch insurer", "insurance", required_level="L3")
        assert result.value.status == TaskStatus.in_progress.value

    @pytest.mark.asyncio
    async def test_planned_steps_start_the_timeline(self, service, user_id):
        result = await service.create_task(user_id, "Fill vacancy", "tenant_finding", steps=["List", "Screen"])
        data = task_to_dict(result.value)
        assert [e["status"] for e in data["timeline"]] == ["current", "pending"]
        assert data["current_step"] == "List"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs,reason", [
        ({"category": "rockets"}, FailureReason.INVALID_CATEGORY),
        ({"category": "general", "priority": "asap"}, FailureReason.INVALID_PRIORITY),
        ({"category": "general", "required_level": "L9"}, FailureReason.INVALID_LEVEL),
    ])
    async def test_invalid_input(self, service, user_id, kwargs, reason):
        result = await service.create_task(user_id, "Task", **kwargs)
        assert result.reason == reason
        assert await service.list_tasks(user_id) == []

    @pytest.mark.asyncio
    async def test_requires_identity(self, service):
        with pytest.raises(NotAuthenticatedError):
            await service.create_task("", "Task", "general")


# ============================================================================
# OWNER DECISIONS
# ============================================================================

class TestApproveReject:

    @pytest.mark.asyncio
    async def test_approve_moves_to_in_progress(self, service, user_id, make_task):
        task = await make_task(category="maintenance")
        result = await service.approve(user_id, task.id)
        assert result.ok
        assert result.value.status == TaskStatus.in_progress.value
        assert event_bus.get_history(EventType.TASK_APPROVED, user_id=user_id)

        [progress] = await service.graduation.progress(user_id)
        assert progress.category == "maintenance"
        assert progress.consecutive_approvals == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["in_progress", "scheduled", "completed", "cancelled"])
    async def test_approve_outside_pending_input_fails_without_mutation(self, service, user_id, make_task, status):
        task = await make_task(status=status)
        result = await service.approve(user_id, task.id)
        assert result.reason == FailureReason.ILLEGAL_TRANSITION

        stored = await service.get_task(user_id, task.id)
        assert stored.status == status
        assert stored.timeline == []
        assert await service.graduation.progress(user_id) == []

    @pytest.mark.asyncio
    async def test_approve_resolves_pending_action(self, service, user_id):
        created = await service.create_task(
            user_id, "Pay invoice", "financial", required_level="L2", tool_name="pay_invoice"
        )
        [action] = await service.pending_actions(user_id, created.value.id)

        result = await service.approve(user_id, created.value.id, action_id=action.id)
        assert result.ok
        [resolved] = await service.pending_actions(user_id, created.value.id)
        assert resolved.status == "approved"
        assert resolved.resolved_by == user_id

    @pytest.mark.asyncio
    async def test_unknown_pending_action_fails(self, service, user_id, make_task):
        task = await make_task()
        result = await service.approve(user_id, task.id, action_id="nope")
        assert result.reason == FailureReason.PENDING_ACTION_NOT_FOUND
        assert (await service.get_task(user_id, task.id)).status == TaskStatus.pending_input.value

    @pytest.mark.asyncio
    async def test_reject_cancels_and_keeps_reason(self, service, user_id):
        created = await service.create_task(
            user_id, "Raise rent", "lease_management", required_level="L3",
            recommendation="Raise by 3% at renewal", tool_name="send_notice",
        )
        [action] = await service.pending_actions(user_id, created.value.id)

        result = await service.reject(user_id, created.value.id, action_id=action.id, reason="Not this year")
        assert result.ok
        task = result.value
        assert task.status == TaskStatus.cancelled.value
        assert task.recommendation == "Raise by 3% at renewal"
        assert task.completed_at is not None
        assert task_to_dict(task)["timeline"][-1]["reasoning"] == "Not this year"
        [resolved] = await service.pending_actions(user_id, task.id)
        assert resolved.status == "rejected"
        assert resolved.rejection_reason == "Not this year"

        [progress] = await service.graduation.progress(user_id)
        assert progress.consecutive_approvals == 0

    @pytest.mark.asyncio
    async def test_reject_twice_fails(self, service, user_id, make_task):
        task = await make_task()
        assert (await service.reject(user_id, task.id)).ok
        result = await service.reject(user_id, task.id)
        assert result.reason == FailureReason.ILLEGAL_TRANSITION

    @pytest.mark.asyncio
    async def test_other_owners_task_is_not_found(self, service, make_task):
        task = await make_task(user_id="someone-else")
        result = await service.approve("owner-0001", task.id)
        assert result.reason == FailureReason.TASK_NOT_FOUND


class TestTakeControlResume:

    @pytest.mark.asyncio
    async def test_take_control_then_resume_keeps_status(self, service, user_id, make_task):
        task = await make_task(status="in_progress")

        paused = await service.take_control(user_id, task.id)
        assert paused.ok
        assert paused.value.manual_override is True
        assert paused.value.status == "in_progress"

        resumed = await service.resume(user_id, task.id)
        assert resumed.ok
        assert resumed.value.manual_override is False
        assert resumed.value.status == "in_progress"

    @pytest.mark.asyncio
    async def test_resume_requires_manual_override(self, service, user_id, make_task):
        task = await make_task(status="in_progress")
        result = await service.resume(user_id, task.id)
        assert result.reason == FailureReason.ILLEGAL_TRANSITION

    @pytest.mark.asyncio
    async def test_take_control_twice_fails(self, service, user_id, make_task):
        task = await make_task(status="scheduled")
        assert (await service.take_control(user_id, task.id)).ok
        result = await service.take_control(user_id, task.id)
        assert result.reason == FailureReason.ILLEGAL_TRANSITION

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["pending_input", "completed", "cancelled"])
    async def test_take_control_needs_active_task(self, service, user_id, make_task, status):
        task = await make_task(status=status)
        result = await service.take_control(user_id, task.id)
        assert result.reason == FailureReason.ILLEGAL_TRANSITION
        assert (await service.get_task(user_id, task.id)).manual_override is False

    @pytest.mark.asyncio
    async def test_missing_task(self, service, user_id):
        assert (await service.take_control(user_id, "missing")).reason == FailureReason.TASK_NOT_FOUND
        assert (await service.resume(user_id, "missing")).reason == FailureReason.TASK_NOT_FOUND


# ============================================================================
# AGENT UPDATES
# ============================================================================

class TestAgentUpdates:

    @pytest.mark.asyncio
    async def test_record_progress_logs_and_advances(self, service, user_id):
        created = await service.create_task(user_id, "Fill vacancy", "tenant_finding", steps=["List", "Screen"])
        result = await service.record_progress(
            user_id, created.value.id, "Posted listing", tool_name="publish_listing", advance=True
        )
        assert result.ok
        data = task_to_dict(result.value)
        assert [(e["action"], e["status"]) for e in data["timeline"]] == [
            ("Posted listing", "completed"),
            ("List", "completed"),
            ("Screen", "current"),
        ]

    @pytest.mark.asyncio
    async def test_record_progress_appends_next_steps(self, service, user_id, make_task):
        task = await make_task(status="in_progress")
        result = await service.record_progress(user_id, task.id, "Called tenant", next_steps=["Send summary"])
        data = task_to_dict(result.value)
        assert [e["status"] for e in data["timeline"]] == ["completed", "current"]

    @pytest.mark.asyncio
    async def test_paused_task_rejects_agent_updates(self, service, user_id, make_task):
        task = await make_task(status="in_progress", manual_override=True)
        progress = await service.record_progress(user_id, task.id, "Tried anyway")
        status = await service.update_status(user_id, task.id, "completed")
        assert progress.reason == FailureReason.TASK_PAUSED
        assert status.reason == FailureReason.TASK_PAUSED
        stored = await service.get_task(user_id, task.id)
        assert stored.status == "in_progress"
        assert stored.timeline == []

    @pytest.mark.asyncio
    async def test_progress_on_pending_task_is_illegal(self, service, user_id, make_task):
        task = await make_task(status="pending_input")
        result = await service.record_progress(user_id, task.id, "Jumped the gun")
        assert result.reason == FailureReason.ILLEGAL_TRANSITION

    @pytest.mark.asyncio
    async def test_complete_task(self, service, user_id):
        created = await service.create_task(user_id, "Send reminder", "rent_collection", steps=["Draft", "Send"])
        result = await service.update_status(user_id, created.value.id, "completed")
        assert result.ok
        task = result.value
        assert task.status == "completed"
        assert task.completed_at is not None
        assert all(e["status"] == "completed" for e in task_to_dict(task)["timeline"])

        again = await service.update_status(user_id, task.id, "in_progress")
        assert again.reason == FailureReason.ILLEGAL_TRANSITION

    @pytest.mark.asyncio
    async def test_move_between_active_states(self, service, user_id, make_task):
        task = await make_task(status="in_progress")
        result = await service.update_status(user_id, task.id, "scheduled")
        assert result.value.status == "scheduled"
        history = event_bus.get_history(EventType.TASK_STATUS_CHANGED, user_id=user_id)
        assert history[-1].data == {"task_id": task.id, "from": "in_progress", "to": "scheduled"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["pending_input", "cancelled", "paused", "done"])
    async def test_agent_cannot_set_other_statuses(self, service, user_id, make_task, status):
        task = await make_task(status="in_progress")
        result = await service.update_status(user_id, task.id, status)
        assert result.reason == FailureReason.INVALID_STATUS


# ============================================================================
# READS
# ============================================================================

class TestTaskReads:

    @pytest.mark.asyncio
    async def test_sections_group_by_status(self, service, user_id, make_task):
        await make_task(title="a", status="pending_input")
        await make_task(title="b", status="pending_input")
        await make_task(title="c", status="in_progress")
        await make_task(title="d", status="scheduled")
        await make_task(title="e", status="completed")
        await make_task(title="f", status="cancelled")
        await make_task(title="other", status="pending_input", user_id="someone-else")

        sections = await service.task_sections(user_id)
        assert sections["pending_count"] == 2
        assert {t["title"] for t in sections["needs_input"]} == {"a", "b"}
        assert [t["title"] for t in sections["in_progress"]] == ["c"]
        assert [t["title"] for t in sections["scheduled"]] == ["d"]
        assert {t["title"] for t in sections["recent"]} == {"e", "f"}

    @pytest.mark.asyncio
    async def test_list_tasks_by_status(self, service, user_id, make_task):
        await make_task(status="pending_input")
        await make_task(status="in_progress")
        pending = await service.list_tasks(user_id, TaskStatus.pending_input)
        assert [t.status for t in pending] == ["pending_input"]
        assert len(await service.list_tasks(user_id)) == 2

    @pytest.mark.asyncio
    async def test_pending_tasks_ordered_by_priority_then_age(self, service, user_id, make_task):
        base = utc_now() - timedelta(hours=1)
        for i, priority in enumerate(["low", "urgent", "normal", "high", "normal", "urgent"]):
            await make_task(title=f"t{i}", priority=priority, created_at=base + timedelta(minutes=i))
        tasks = await service.pending_tasks(user_id, 5)
        assert [t.title for t in tasks] == ["t1", "t5", "t3", "t2", "t4"]


# ============================================================================
# EXPIRY, STORE FAILURES AND RACES
# ============================================================================

class TestPendingActionExpiry:

    @pytest.mark.asyncio
    async def test_expired_pending_action_cannot_be_approved(self, service, user_id):
        created = await service.create_task(
            user_id, "Pay invoice", "financial", required_level="L2", tool_name="pay_invoice"
        )
        [action] = await service.pending_actions(user_id, created.value.id)
        async with get_db_session() as session:
            await session.execute(
                update(AgentPendingAction)
                .where(AgentPendingAction.id == action.id)
                .values(expires_at=utc_now() - timedelta(minutes=1))
            )

        result = await service.approve(user_id, created.value.id, action_id=action.id)
        assert result.reason == FailureReason.PENDING_ACTION_NOT_FOUND

        task = await service.get_task(user_id, created.value.id)
        assert task.status == TaskStatus.pending_input.value
        [untouched] = await service.pending_actions(user_id, task.id)
        assert untouched.status == "pending"
        assert await service.graduation.progress(user_id) == []


class TestStoreFailures:

    @pytest.mark.asyncio
    async def test_create_task_reports_store_failure(self, service, user_id, drop_table):
        await drop_table("agent_tasks")
        result = await service.create_task(user_id, "Book inspection", "inspections")
        assert result.reason == FailureReason.STORE_FAILURE
        assert "agent_tasks" in result.message

    @pytest.mark.asyncio
    async def test_transitions_report_store_failure(self, service, user_id, make_task, drop_table):
        task = await make_task(status="in_progress")
        await drop_table("agent_tasks")

        outcomes = [
            await service.approve(user_id, task.id),
            await service.reject(user_id, task.id, reason="no"),
            await service.take_control(user_id, task.id),
            await service.resume(user_id, task.id),
            await service.record_progress(user_id, task.id, "Called the plumber"),
            await service.update_status(user_id, task.id, "completed"),
        ]
        assert [r.reason for r in outcomes] == [FailureReason.STORE_FAILURE] * len(outcomes)
        assert all(r.message for r in outcomes)
        assert not event_bus.get_history(user_id=user_id)

    @pytest.mark.asyncio
    async def test_reads_raise_store_failure(self, service, user_id, drop_table):
        await drop_table("agent_tasks")
        with pytest.raises(StoreFailureError) as exc_info:
            await service.list_tasks(user_id)
        assert "agent_tasks" in exc_info.value.message

        with pytest.raises(StoreFailureError):
            await service.get_task(user_id, "any")
        with pytest.raises(StoreFailureError):
            await service.task_sections(user_id)
        with pytest.raises(StoreFailureError):
            await service.pending_tasks(user_id, 5)
        with pytest.raises(StoreFailureError):
            await service.active_tasks(user_id, 5)

    @pytest.mark.asyncio
    async def test_pending_actions_read_raises_store_failure(self, service, user_id, drop_table):
        await drop_table("agent_pending_actions")
        with pytest.raises(StoreFailureError):
            await service.pending_actions(user_id, "any")


class TestConcurrentDecisions:
    """Two callers on one task: the store picks one and the other writes nothing."""

    @pytest.mark.asyncio
    async def test_concurrent_take_control(self, service, user_id, make_task):
        task = await make_task(status="in_progress")
        results = await asyncio.gather(
            service.take_control(user_id, task.id),
            service.take_control(user_id, task.id),
        )
        assert sorted(r.ok for r in results) == [False, True]
        [loser] = [r for r in results if not r.ok]
        assert loser.reason == FailureReason.ILLEGAL_TRANSITION

        stored = await service.get_task(user_id, task.id)
        assert stored.manual_override is True
        assert stored.status == "in_progress"
        assert len(event_bus.get_history(EventType.TASK_PAUSED, user_id=user_id)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_approvals(self, service, user_id, make_task):
        task = await make_task(category="maintenance")
        results = await asyncio.gather(
            service.approve(user_id, task.id),
            service.approve(user_id, task.id),
        )
        assert sorted(r.ok for r in results) == [False, True]
        [loser] = [r for r in results if not r.ok]
        assert loser.reason == FailureReason.ILLEGAL_TRANSITION

        stored = await service.get_task(user_id, task.id)
        assert stored.status == TaskStatus.in_progress.value
        assert [e["action"] for e in stored.timeline] == ["Approved by owner"]
        [progress] = await service.graduation.progress(user_id)
        assert progress.consecutive_approvals == 1
