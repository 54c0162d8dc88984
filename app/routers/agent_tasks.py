"""
Agent Tasks Router
==================
Task endpoints for the owner and for the agent executor.

Owner decisions: approve, reject, take-control, resume.
Agent updates: create, progress, status.
"""

from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from app.core.errors import raise_for_failure
from app.core.security import OwnerContext, require_user
from app.models.models import TaskPriority, TaskStatus
from app.services.task_lifecycle import get_task_lifecycle_service, task_to_dict


router = APIRouter(prefix="/api/agent/tasks", tags=["Agent Tasks"])


# =============================================================================
# Request Models
# =============================================================================

class TaskCreate(BaseModel):
    """New task proposed by the agent."""
    title: str = Field(..., min_length=1, max_length=255)
    category: str
    description: Optional[str] = None
    priority: str = TaskPriority.normal.value
    required_level: Optional[str] = None  # L0..L4
    recommendation: Optional[str] = None
    deep_link: Optional[str] = None
    related_entity_type: Optional[str] = None
    related_entity_id: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    steps: list[str] = Field(default_factory=list)
    action_type: Optional[str] = None
    tool_name: Optional[str] = None
    tool_params: Optional[dict[str, Any]] = None


class ApproveRequest(BaseModel):
    action_id: Optional[str] = None


class RejectRequest(BaseModel):
    action_id: Optional[str] = None
    reason: Optional[str] = None


class ProgressRequest(BaseModel):
    action: str = Field(..., min_length=1)
    reasoning: Optional[str] = None
    tool_name: Optional[str] = None
    advance: bool = False
    next_steps: list[str] = Field(default_factory=list)


class StatusRequest(BaseModel):
    status: str


# =============================================================================
# Reads
# =============================================================================

@router.get("")
async def list_tasks(
    status_filter: Optional[TaskStatus] = Query(None, alias="status", description="Filter by status"),
    user: OwnerContext = Depends(require_user),
):
    tasks = await get_task_lifecycle_service().list_tasks(user.user_id, status_filter)
    return {"tasks": [task_to_dict(t) for t in tasks], "total": len(tasks)}


@router.get("/sections")
async def task_sections(user: OwnerContext = Depends(require_user)):
    """Tasks grouped as the tasks screen shows them."""
    return await get_task_lifecycle_service().task_sections(user.user_id)


@router.get("/{task_id}")
async def get_task(task_id: str, user: OwnerContext = Depends(require_user)):
    service = get_task_lifecycle_service()
    task = await service.get_task(user.user_id, task_id)
    if not task:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"ok": False, "error": "task_not_found", "message": f"Task {task_id} not found"},
        )
    return task_to_dict(task, await service.pending_actions(user.user_id, task_id))


# =============================================================================
# Agent
# =============================================================================

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_task(body: TaskCreate, user: OwnerContext = Depends(require_user)):
    result = await get_task_lifecycle_service().create_task(user.user_id, **body.model_dump())
    raise_for_failure(result)
    return task_to_dict(result.value)


@router.post("/{task_id}/progress")
async def record_progress(task_id: str, body: ProgressRequest, user: OwnerContext = Depends(require_user)):
    result = await get_task_lifecycle_service().record_progress(
        user.user_id,
        task_id,
        body.action,
        reasoning=body.reasoning,
        tool_name=body.tool_name,
        advance=body.advance,
        next_steps=body.next_steps,
    )
    raise_for_failure(result)
    return task_to_dict(result.value)


@router.post("/{task_id}/status")
async def update_status(task_id: str, body: StatusRequest, user: OwnerContext = Depends(require_user)):
    result = await get_task_lifecycle_service().update_status(user.user_id, task_id, body.status)
    raise_for_failure(result)
    return task_to_dict(result.value)


# =============================================================================
# Owner Decisions
# =============================================================================

@router.post("/{task_id}/approve")
async def approve_task(
    task_id: str,
    body: Optional[ApproveRequest] = None,
    user: OwnerContext = Depends(require_user),
):
    action_id = body.action_id if body else None
    result = await get_task_lifecycle_service().approve(user.user_id, task_id, action_id=action_id)
    raise_for_failure(result)
    return task_to_dict(result.value)


@router.post("/{task_id}/reject")
async def reject_task(
    task_id: str,
    body: Optional[RejectRequest] = None,
    user: OwnerContext = Depends(require_user),
):
    body = body or RejectRequest()
    result = await get_task_lifecycle_service().reject(
        user.user_id, task_id, action_id=body.action_id, reason=body.reason
    )
    raise_for_failure(result)
    return task_to_dict(result.value)


@router.post("/{task_id}/take-control")
async def take_control(task_id: str, user: OwnerContext = Depends(require_user)):
    """Pause the agent on this task. Status is unchanged."""
    result = await get_task_lifecycle_service().take_control(user.user_id, task_id)
    raise_for_failure(result)
    return task_to_dict(result.value)


@router.post("/{task_id}/resume")
async def resume_task(task_id: str, user: OwnerContext = Depends(require_user)):
    result = await get_task_lifecycle_service().resume(user.user_id, task_id)
    raise_for_failure(result)
    return task_to_dict(result.value)
