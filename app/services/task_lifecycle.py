"""
Task Lifecycle

Owns the state machine of agent tasks:

    create -> pending_input --approve--> in_progress
                            --reject---> cancelled
              in_progress / scheduled --update_status--> in_progress / scheduled / completed

take_control / resume only flip manual_override; status is left alone.
While manual_override is set the agent may not record progress or change
status.

Every state change is a conditional UPDATE guarded on the prior state the
operation was validated against, so when two callers race the store picks
one and the other gets ILLEGAL_TRANSITION. Failed operations write nothing.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.database import get_db_session
from app.core.errors import FailureReason, OperationResult, require_user_id, store_read
from app.core.event_bus import EventType, event_bus
from app.core.utc import to_iso, to_utc, utc_now
from app.models.models import (
    AgentPendingAction,
    AgentTask,
    PendingActionStatus,
    TaskPriority,
    TaskStatus,
)
from app.services.autonomy import (
    AutonomyService,
    get_autonomy_service,
    parse_category,
    parse_level,
    requires_checkpoint,
    resolve_effective_levels,
)
from app.services.autonomy_graduation import GraduationService, get_graduation_service
from app.services.task_timeline import TaskTimeline

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (TaskStatus.in_progress.value, TaskStatus.scheduled.value)
AGENT_SETTABLE_STATUSES = (TaskStatus.in_progress, TaskStatus.scheduled, TaskStatus.completed)


# =============================================================================
# Serialization
# =============================================================================

def _iso(value: Optional[datetime]) -> Optional[str]:
    return to_iso(value) if value else None


def timeline_of(task: AgentTask) -> TaskTimeline:
    return TaskTimeline.from_storage(task.timeline, task.timeline_cursor)


def pending_action_to_dict(action: AgentPendingAction) -> dict[str, Any]:
    return {
        "id": action.id,
        "task_id": action.task_id,
        "action_type": action.action_type,
        "title": action.title,
        "description": action.description,
        "tool_name": action.tool_name,
        "tool_params": action.tool_params or {},
        "autonomy_level": action.autonomy_level,
        "status": action.status,
        "expires_at": _iso(action.expires_at),
        "resolved_at": _iso(action.resolved_at),
        "rejection_reason": action.rejection_reason,
        "created_at": _iso(action.created_at),
    }


def task_to_dict(task: AgentTask, pending_actions: Optional[Iterable[AgentPendingAction]] = None) -> dict[str, Any]:
    timeline = timeline_of(task)
    current = timeline.current
    data = {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "category": task.category,
        "priority": task.priority,
        "status": task.status,
        "manual_override": bool(task.manual_override),
        "timeline": timeline.entries_with_status(),
        "current_step": current.action if current else None,
        "recommendation": task.recommendation,
        "deep_link": task.deep_link,
        "related_entity_type": task.related_entity_type,
        "related_entity_id": task.related_entity_id,
        "required_level": task.required_level,
        "scheduled_at": _iso(task.scheduled_at),
        "completed_at": _iso(task.completed_at),
        "created_at": _iso(task.created_at),
        "updated_at": _iso(task.updated_at),
    }
    if pending_actions is not None:
        data["pending_actions"] = [pending_action_to_dict(a) for a in pending_actions]
    return data


# =============================================================================
# Task Lifecycle Service
# =============================================================================

class TaskLifecycleService:
    """Creates agent tasks and applies owner and agent transitions."""

    def __init__(
        self,
        autonomy: Optional[AutonomyService] = None,
        graduation: Optional[GraduationService] = None,
    ):
        self.autonomy = autonomy or get_autonomy_service()
        self.graduation = graduation or get_graduation_service()

    # -------------------------------------------------------------------------
    # Store helpers
    # -------------------------------------------------------------------------

    async def _fetch(self, session: AsyncSession, user_id: str, task_id: str) -> Optional[AgentTask]:
        result = await session.execute(
            select(AgentTask).where(AgentTask.id == task_id, AgentTask.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def _guarded_update(self, session: AsyncSession, task: AgentTask, conditions: list, values: dict) -> bool:
        """
        UPDATE the task only if `conditions` still hold in the store.
        Returns False (and writes nothing) when another caller got there first.
        """
        values.setdefault("updated_at", utc_now())
        result = await session.execute(
            update(AgentTask)
            .where(AgentTask.id == task.id, AgentTask.user_id == task.user_id, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        await session.refresh(task)
        return True

    async def _open_pending_action(
        self, session: AsyncSession, user_id: str, task_id: str, action_id: str
    ) -> Optional[AgentPendingAction]:
        result = await session.execute(
            select(AgentPendingAction).where(
                AgentPendingAction.id == action_id,
                AgentPendingAction.user_id == user_id,
                AgentPendingAction.task_id == task_id,
                AgentPendingAction.status == PendingActionStatus.pending.value,
            )
        )
        action = result.scalar_one_or_none()
        if action is not None and action.expires_at is not None and to_utc(action.expires_at) <= utc_now():
            return None
        return action

    async def _resolve_pending_action(
        self,
        session: AsyncSession,
        action: AgentPendingAction,
        status: PendingActionStatus,
        user_id: str,
        reason: Optional[str] = None,
    ) -> bool:
        result = await session.execute(
            update(AgentPendingAction)
            .where(
                AgentPendingAction.id == action.id,
                AgentPendingAction.status == PendingActionStatus.pending.value,
            )
            .values(status=status.value, resolved_at=utc_now(), resolved_by=user_id, rejection_reason=reason)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    def _not_found(task_id: str) -> OperationResult:
        return OperationResult.failure(FailureReason.TASK_NOT_FOUND, f"Task {task_id} not found")

    @staticmethod
    def _illegal(task: AgentTask, operation: str) -> OperationResult:
        return OperationResult.failure(
            FailureReason.ILLEGAL_TRANSITION,
            f"Cannot {operation} a task that is {task.status}",
        )

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    async def create_task(
        self,
        user_id: str,
        title: str,
        category: str,
        description: Optional[str] = None,
        priority: str = TaskPriority.normal.value,
        required_level: Optional[str] = None,
        recommendation: Optional[str] = None,
        deep_link: Optional[str] = None,
        related_entity_type: Optional[str] = None,
        related_entity_id: Optional[str] = None,
        scheduled_at: Optional[datetime] = None,
        steps: Optional[list[str]] = None,
        action_type: Optional[str] = None,
        tool_name: Optional[str] = None,
        tool_params: Optional[dict] = None,
    ) -> OperationResult[AgentTask]:
        """
        Create a task for the agent.

        The owner's effective level for the category decides where it starts:
        below `required_level` it waits for approval (pending_input),
        otherwise it goes straight to scheduled or in_progress. When it waits
        and a tool is named, a pending action is stored alongside it.
        """
        require_user_id(user_id)
        parsed_category = parse_category(category)
        if parsed_category is None:
            return OperationResult.failure(FailureReason.INVALID_CATEGORY, f"Invalid category: {category}")
        try:
            parsed_priority = TaskPriority(priority)
        except ValueError:
            return OperationResult.failure(FailureReason.INVALID_PRIORITY, f"Invalid priority: {priority}")
        parsed_required = None
        if required_level is not None:
            parsed_required = parse_level(required_level)
            if parsed_required is None:
                return OperationResult.failure(FailureReason.INVALID_LEVEL, f"Invalid autonomy level: {required_level}")

        timeline = TaskTimeline()
        for step in steps or []:
            timeline.plan(step)
        entries, cursor = timeline.to_storage()

        try:
            async with get_db_session() as session:
                settings_row = await self.autonomy.load_settings(session, user_id)
                effective = resolve_effective_levels(settings_row)[parsed_category]
                if requires_checkpoint(effective, parsed_required):
                    status = TaskStatus.pending_input
                elif scheduled_at is not None:
                    status = TaskStatus.scheduled
                else:
                    status = TaskStatus.in_progress

                task = AgentTask(
                    user_id=user_id,
                    title=title,
                    description=description,
                    category=parsed_category.value,
                    priority=parsed_priority.value,
                    priority_rank=parsed_priority.rank,
                    status=status.value,
                    manual_override=False,
                    timeline=entries,
                    timeline_cursor=cursor,
                    recommendation=recommendation,
                    deep_link=deep_link,
                    related_entity_type=related_entity_type,
                    related_entity_id=related_entity_id,
                    required_level=parsed_required.value if parsed_required else None,
                    scheduled_at=scheduled_at,
                )
                session.add(task)
                await session.flush()

                if status == TaskStatus.pending_input and tool_name:
                    session.add(AgentPendingAction(
                        user_id=user_id,
                        task_id=task.id,
                        action_type=action_type or "tool_call",
                        title=title,
                        description=recommendation or description,
                        tool_name=tool_name,
                        tool_params=tool_params or {},
                        autonomy_level=parsed_required.rank if parsed_required else effective.rank,
                        status=PendingActionStatus.pending.value,
                        expires_at=utc_now() + timedelta(hours=get_settings().pending_action_ttl_hours),
                    ))
                    await session.flush()
        except SQLAlchemyError as e:
            logger.warning("Failed to create task for %s: %s", user_id, e)
            return OperationResult.failure(FailureReason.STORE_FAILURE, str(e))

        logger.info(
            "Created task %s for %s (%s, %s, owner level %s)",
            task.id, user_id, parsed_category.value, status.value, effective.value,
        )
        await event_bus.publish(
            EventType.TASK_CREATED,
            {"task_id": task.id, "category": task.category, "status": task.status},
            source="task_lifecycle",
            user_id=user_id,
        )
        return OperationResult.success(task)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_task(self, user_id: str, task_id: str) -> Optional[AgentTask]:
        require_user_id(user_id)
        with store_read("get_task"):
            async with get_db_session() as session:
                return await self._fetch(session, user_id, task_id)

    async def pending_actions(self, user_id: str, task_id: str) -> list[AgentPendingAction]:
        require_user_id(user_id)
        with store_read("pending_actions"):
            async with get_db_session() as session:
                result = await session.execute(
                    select(AgentPendingAction)
                    .where(AgentPendingAction.user_id == user_id, AgentPendingAction.task_id == task_id)
                    .order_by(AgentPendingAction.created_at.asc())
                )
                return list(result.scalars().all())

    async def list_tasks(self, user_id: str, status: Optional[TaskStatus] = None, limit: int = 100) -> list[AgentTask]:
        """Tasks newest activity first, optionally for one status."""
        require_user_id(user_id)
        query = select(AgentTask).where(AgentTask.user_id == user_id)
        if status is not None:
            query = query.where(AgentTask.status == status.value)
        with store_read("list_tasks"):
            async with get_db_session() as session:
                result = await session.execute(query.order_by(AgentTask.updated_at.desc()).limit(limit))
                return list(result.scalars().all())

    async def pending_tasks(self, user_id: str, limit: int) -> list[AgentTask]:
        """Tasks waiting on the owner, urgent first, oldest first within a priority."""
        require_user_id(user_id)
        with store_read("pending_tasks"):
            async with get_db_session() as session:
                result = await session.execute(
                    select(AgentTask)
                    .where(AgentTask.user_id == user_id, AgentTask.status == TaskStatus.pending_input.value)
                    .order_by(AgentTask.priority_rank.asc(), AgentTask.created_at.asc())
                    .limit(limit)
                )
                return list(result.scalars().all())

    async def active_tasks(self, user_id: str, limit: int) -> list[AgentTask]:
        require_user_id(user_id)
        with store_read("active_tasks"):
            async with get_db_session() as session:
                result = await session.execute(
                    select(AgentTask)
                    .where(AgentTask.user_id == user_id, AgentTask.status == TaskStatus.in_progress.value)
                    .order_by(AgentTask.updated_at.desc())
                    .limit(limit)
                )
                return list(result.scalars().all())

    async def task_sections(self, user_id: str, recent_limit: int = 20) -> dict[str, Any]:
        """Tasks grouped the way the tasks screen shows them."""
        require_user_id(user_id)
        with store_read("task_sections"):
            async with get_db_session() as session:
                result = await session.execute(
                    select(AgentTask)
                    .where(AgentTask.user_id == user_id)
                    .order_by(AgentTask.priority_rank.asc(), AgentTask.created_at.asc())
                )
                tasks = list(result.scalars().all())

        sections: dict[str, list[AgentTask]] = {
            "needs_input": [],
            "in_progress": [],
            "scheduled": [],
            "recent": [],
        }
        for task in tasks:
            if task.status == TaskStatus.pending_input.value:
                sections["needs_input"].append(task)
            elif task.status == TaskStatus.in_progress.value:
                sections["in_progress"].append(task)
            elif task.status == TaskStatus.scheduled.value:
                sections["scheduled"].append(task)
            else:
                sections["recent"].append(task)

        sections["recent"].sort(key=lambda t: to_utc(t.completed_at or t.updated_at), reverse=True)
        sections["recent"] = sections["recent"][:recent_limit]

        data: dict[str, Any] = {name: [task_to_dict(t) for t in items] for name, items in sections.items()}
        data["pending_count"] = len(sections["needs_input"])
        return data

    # -------------------------------------------------------------------------
    # Owner decisions
    # -------------------------------------------------------------------------

    async def approve(self, user_id: str, task_id: str, action_id: Optional[str] = None) -> OperationResult[AgentTask]:
        """Owner approves a task waiting on them; the agent carries on."""
        return await self._decide(user_id, task_id, approved=True, action_id=action_id)

    async def reject(
        self,
        user_id: str,
        task_id: str,
        action_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> OperationResult[AgentTask]:
        """
        Owner turns a task down and it is cancelled.

        The reason goes into the timeline entry and, when an action is named,
        onto that pending action. The agent's recommendation is left as it was.
        """
        return await self._decide(user_id, task_id, approved=False, action_id=action_id, reason=reason)

    async def _decide(
        self,
        user_id: str,
        task_id: str,
        approved: bool,
        action_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> OperationResult[AgentTask]:
        require_user_id(user_id)
        verb = "approve" if approved else "reject"
        try:
            async with get_db_session() as session:
                task = await self._fetch(session, user_id, task_id)
                if task is None:
                    return self._not_found(task_id)
                if task.status != TaskStatus.pending_input.value:
                    logger.info("Rejected %s of task %s: status is %s", verb, task_id, task.status)
                    return self._illegal(task, verb)

                action = None
                if action_id is not None:
                    action = await self._open_pending_action(session, user_id, task_id, action_id)
                    if action is None:
                        return OperationResult.failure(
                            FailureReason.PENDING_ACTION_NOT_FOUND,
                            f"No open pending action {action_id} on task {task_id}",
                        )

                timeline = timeline_of(task)
                if approved:
                    timeline.log("Approved by owner")
                    values = {"status": TaskStatus.in_progress.value}
                else:
                    timeline.log("Declined by owner", reasoning=reason)
                    timeline.complete_all()
                    values = {"status": TaskStatus.cancelled.value, "completed_at": utc_now()}
                values["timeline"], values["timeline_cursor"] = timeline.to_storage()

                if not await self._guarded_update(
                    session, task, [AgentTask.status == TaskStatus.pending_input.value], values
                ):
                    return OperationResult.failure(
                        FailureReason.ILLEGAL_TRANSITION, f"Task {task_id} was changed by another request"
                    )

                if action is not None:
                    new_status = PendingActionStatus.approved if approved else PendingActionStatus.rejected
                    if not await self._resolve_pending_action(
                        session, action, new_status, user_id, reason=None if approved else reason
                    ):
                        # Roll back the task update along with it
                        raise _ConcurrentDecision()

                category = parse_category(task.category)
                if category is not None:
                    await self.graduation.record_feedback(session, user_id, category, approved)
        except _ConcurrentDecision:
            return OperationResult.failure(
                FailureReason.PENDING_ACTION_NOT_FOUND, f"Pending action {action_id} was already resolved"
            )
        except SQLAlchemyError as e:
            logger.warning("Failed to %s task %s: %s", verb, task_id, e)
            return OperationResult.failure(FailureReason.STORE_FAILURE, str(e))

        logger.info("Task %s %s by %s", task_id, "approved" if approved else "rejected", user_id)
        await event_bus.publish(
            EventType.TASK_APPROVED if approved else EventType.TASK_REJECTED,
            {"task_id": task_id, "action_id": action_id, "status": task.status},
            source="task_lifecycle",
            user_id=user_id,
        )
        return OperationResult.success(task)

    async def take_control(self, user_id: str, task_id: str) -> OperationResult[AgentTask]:
        """Pause the agent on an active task. Status does not change."""
        require_user_id(user_id)
        try:
            async with get_db_session() as session:
                task = await self._fetch(session, user_id, task_id)
                if task is None:
                    return self._not_found(task_id)
                if task.manual_override:
                    return OperationResult.failure(
                        FailureReason.ILLEGAL_TRANSITION, f"Task {task_id} is already under manual control"
                    )
                if task.status not in ACTIVE_STATUSES:
                    return self._illegal(task, "take control of")

                if not await self._guarded_update(
                    session,
                    task,
                    [AgentTask.status == task.status, AgentTask.manual_override.is_(False)],
                    {"manual_override": True},
                ):
                    return OperationResult.failure(
                        FailureReason.ILLEGAL_TRANSITION, f"Task {task_id} was changed by another request"
                    )
        except SQLAlchemyError as e:
            logger.warning("Failed to take control of task %s: %s", task_id, e)
            return OperationResult.failure(FailureReason.STORE_FAILURE, str(e))

        logger.info("Owner %s took control of task %s", user_id, task_id)
        await event_bus.publish(
            EventType.TASK_PAUSED, {"task_id": task_id, "status": task.status},
            source="task_lifecycle", user_id=user_id,
        )
        return OperationResult.success(task)

    async def resume(self, user_id: str, task_id: str) -> OperationResult[AgentTask]:
        """Hand a paused task back to the agent."""
        require_user_id(user_id)
        try:
            async with get_db_session() as session:
                task = await self._fetch(session, user_id, task_id)
                if task is None:
                    return self._not_found(task_id)
                if not task.manual_override:
                    return OperationResult.failure(
                        FailureReason.ILLEGAL_TRANSITION, f"Task {task_id} is not under manual control"
                    )

                if not await self._guarded_update(
                    session, task, [AgentTask.manual_override.is_(True)], {"manual_override": False}
                ):
                    return OperationResult.failure(
                        FailureReason.ILLEGAL_TRANSITION, f"Task {task_id} was changed by another request"
                    )
        except SQLAlchemyError as e:
            logger.warning("Failed to resume task %s: %s", task_id, e)
            return OperationResult.failure(FailureReason.STORE_FAILURE, str(e))

        logger.info("Owner %s resumed task %s", user_id, task_id)
        await event_bus.publish(
            EventType.TASK_RESUMED, {"task_id": task_id, "status": task.status},
            source="task_lifecycle", user_id=user_id,
        )
        return OperationResult.success(task)

    # -------------------------------------------------------------------------
    # Agent updates
    # -------------------------------------------------------------------------

    def _check_agent_may_act(self, task: Optional[AgentTask], task_id: str, operation: str) -> Optional[OperationResult]:
        if task is None:
            return self._not_found(task_id)
        if task.manual_override:
            return OperationResult.failure(
                FailureReason.TASK_PAUSED, f"Task {task_id} is paused while the owner has control"
            )
        if task.status not in ACTIVE_STATUSES:
            return self._illegal(task, operation)
        return None

    async def record_progress(
        self,
        user_id: str,
        task_id: str,
        action: str,
        reasoning: Optional[str] = None,
        tool_name: Optional[str] = None,
        advance: bool = False,
        next_steps: Optional[list[str]] = None,
    ) -> OperationResult[AgentTask]:
        """
        Log a step the agent has taken.

        advance=True also completes the current planned step; next_steps are
        appended as pending steps.
        """
        require_user_id(user_id)
        try:
            async with get_db_session() as session:
                task = await self._fetch(session, user_id, task_id)
                refusal = self._check_agent_may_act(task, task_id, "record progress on")
                if refusal is not None:
                    return refusal

                timeline = timeline_of(task)
                previous_cursor = task.timeline_cursor
                timeline.log(action, reasoning=reasoning, tool_name=tool_name)
                if advance:
                    timeline.advance()
                for step in next_steps or []:
                    timeline.plan(step)
                entries, cursor = timeline.to_storage()

                # The cursor moves on every log, so it doubles as a version check
                if not await self._guarded_update(
                    session,
                    task,
                    [
                        AgentTask.status == task.status,
                        AgentTask.manual_override.is_(False),
                        AgentTask.timeline_cursor == previous_cursor,
                    ],
                    {"timeline": entries, "timeline_cursor": cursor},
                ):
                    return OperationResult.failure(
                        FailureReason.ILLEGAL_TRANSITION, f"Task {task_id} was changed by another request"
                    )
        except SQLAlchemyError as e:
            logger.warning("Failed to record progress on task %s: %s", task_id, e)
            return OperationResult.failure(FailureReason.STORE_FAILURE, str(e))

        logger.debug("Progress on task %s: %s", task_id, action)
        await event_bus.publish(
            EventType.TASK_PROGRESS, {"task_id": task_id, "action": action},
            source="task_lifecycle", user_id=user_id,
        )
        return OperationResult.success(task)

    async def update_status(self, user_id: str, task_id: str, status: str) -> OperationResult[AgentTask]:
        """Agent moves an active task between in_progress and scheduled, or completes it."""
        require_user_id(user_id)
        try:
            new_status = TaskStatus(status)
        except ValueError:
            new_status = None
        if new_status not in AGENT_SETTABLE_STATUSES:
            return OperationResult.failure(FailureReason.INVALID_STATUS, f"Agent cannot set status {status}")

        try:
            async with get_db_session() as session:
                task = await self._fetch(session, user_id, task_id)
                refusal = self._check_agent_may_act(task, task_id, "change the status of")
                if refusal is not None:
                    return refusal

                previous = task.status
                values: dict[str, Any] = {"status": new_status.value}
                if new_status == TaskStatus.completed:
                    timeline = timeline_of(task)
                    timeline.complete_all()
                    values["timeline"], values["timeline_cursor"] = timeline.to_storage()
                    values["completed_at"] = utc_now()

                if not await self._guarded_update(
                    session,
                    task,
                    [AgentTask.status == previous, AgentTask.manual_override.is_(False)],
                    values,
                ):
                    return OperationResult.failure(
                        FailureReason.ILLEGAL_TRANSITION, f"Task {task_id} was changed by another request"
                    )
        except SQLAlchemyError as e:
            logger.warning("Failed to update status of task %s: %s", task_id, e)
            return OperationResult.failure(FailureReason.STORE_FAILURE, str(e))

        logger.info("Task %s status %s -> %s", task_id, previous, new_status.value)
        await event_bus.publish(
            EventType.TASK_STATUS_CHANGED,
            {"task_id": task_id, "from": previous, "to": new_status.value},
            source="task_lifecycle",
            user_id=user_id,
        )
        return OperationResult.success(task)


class _ConcurrentDecision(Exception):
    """A pending action was resolved by someone else mid-transaction."""


_task_lifecycle_service: Optional[TaskLifecycleService] = None


def get_task_lifecycle_service() -> TaskLifecycleService:
    global _task_lifecycle_service
    if _task_lifecycle_service is None:
        _task_lifecycle_service = TaskLifecycleService()
    return _task_lifecycle_service
