"""
Proactive Actions Router
========================
Audit log of actions the agent took without a checkpoint.
Written by the executor, read by the owner.
"""

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from app.core.errors import raise_for_failure
from app.core.security import OwnerContext, require_user
from app.services.proactive_actions import get_proactive_action_recorder, proactive_action_to_dict


router = APIRouter(prefix="/api/agent/proactive-actions", tags=["Proactive Actions"])


class ProactiveActionCreate(BaseModel):
    trigger_type: str = Field(..., min_length=1)
    action_taken: str = Field(..., min_length=1)
    task_id: Optional[str] = None
    was_auto_executed: bool = True
    trigger_source: Optional[str] = None
    tool_name: Optional[str] = None
    tool_params: Optional[dict[str, Any]] = None
    result: Optional[dict[str, Any]] = None


@router.post("", status_code=status.HTTP_201_CREATED)
async def record_action(body: ProactiveActionCreate, user: OwnerContext = Depends(require_user)):
    result = await get_proactive_action_recorder().record(user.user_id, **body.model_dump())
    raise_for_failure(result)
    return proactive_action_to_dict(result.value)


@router.get("")
async def recent_actions(
    within_days: int = Query(7, ge=1, le=365),
    only_auto_executed: bool = Query(True),
    limit: int = Query(3, ge=1, le=100),
    user: OwnerContext = Depends(require_user),
):
    actions = await get_proactive_action_recorder().recent(
        user.user_id, within_days=within_days, only_auto_executed=only_auto_executed, limit=limit
    )
    return {"actions": [proactive_action_to_dict(a) for a in actions]}
