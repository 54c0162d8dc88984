"""
Proactive Action Recorder

Append-only audit log of what the agent did on its own. The executor writes
one row per action; the insights feed reads the recent ones back. Rows are
never updated or deleted, and identical actions are recorded twice if they
happen twice.
"""

import logging
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from app.core.database import get_db_session
from app.core.errors import FailureReason, OperationResult, require_user_id, store_read
from app.core.event_bus import EventType, event_bus
from app.core.utc import days_ago, to_iso
from app.models.models import AgentProactiveAction

logger = logging.getLogger(__name__)


def proactive_action_to_dict(action: AgentProactiveAction) -> dict[str, Any]:
    return {
        "id": action.id,
        "task_id": action.task_id,
        "trigger_type": action.trigger_type,
        "trigger_source": action.trigger_source,
        "action_taken": action.action_taken,
        "tool_name": action.tool_name,
        "tool_params": action.tool_params,
        "result": action.result,
        "was_auto_executed": bool(action.was_auto_executed),
        "created_at": to_iso(action.created_at) if action.created_at else None,
    }


class ProactiveActionRecorder:

    async def record(
        self,
        user_id: str,
        trigger_type: str,
        action_taken: str,
        task_id: Optional[str] = None,
        was_auto_executed: bool = True,
        trigger_source: Optional[str] = None,
        tool_name: Optional[str] = None,
        tool_params: Optional[dict] = None,
        result: Optional[dict] = None,
    ) -> OperationResult[AgentProactiveAction]:
        require_user_id(user_id)
        try:
            async with get_db_session() as session:
                action = AgentProactiveAction(
                    user_id=user_id,
                    task_id=task_id,
                    trigger_type=trigger_type,
                    trigger_source=trigger_source,
                    action_taken=action_taken,
                    tool_name=tool_name,
                    tool_params=tool_params,
                    result=result,
                    was_auto_executed=was_auto_executed,
                )
                session.add(action)
                await session.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to record proactive action for %s: %s", user_id, e)
            return OperationResult.failure(FailureReason.STORE_FAILURE, str(e))

        logger.info("Recorded proactive action %s for %s (%s)", action.id, user_id, trigger_type)
        await event_bus.publish(
            EventType.PROACTIVE_ACTION_RECORDED,
            {"action_id": action.id, "task_id": task_id, "trigger_type": trigger_type},
            source="proactive_actions",
            user_id=user_id,
        )
        return OperationResult.success(action)

    async def recent(
        self,
        user_id: str,
        within_days: int = 7,
        only_auto_executed: bool = True,
        limit: int = 3,
    ) -> list[AgentProactiveAction]:
        """Newest first, no older than `within_days`."""
        require_user_id(user_id)
        query = select(AgentProactiveAction).where(
            AgentProactiveAction.user_id == user_id,
            AgentProactiveAction.created_at >= days_ago(within_days),
        )
        if only_auto_executed:
            query = query.where(AgentProactiveAction.was_auto_executed.is_(True))
        with store_read("recent_proactive_actions"):
            async with get_db_session() as session:
                result = await session.execute(
                    query.order_by(AgentProactiveAction.created_at.desc()).limit(limit)
                )
                return list(result.scalars().all())


_recorder: Optional[ProactiveActionRecorder] = None


def get_proactive_action_recorder() -> ProactiveActionRecorder:
    global _recorder
    if _recorder is None:
        _recorder = ProactiveActionRecorder()
    return _recorder
