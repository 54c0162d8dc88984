"""
Insight Aggregator

Builds the small, ranked feed on the owner's home screen from five sources:

1. tasks waiting on the owner
2. things the agent did on its own this week
3. unpaid rent
4. leases ending soon
5. what the agent is working on right now

All sources are queried concurrently. If any of them fails the whole feed
comes back empty with degraded=True; a partial feed is never shown.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Sequence

from app.core.config import get_settings
from app.core.errors import require_user_id
from app.core.utc import days_until
from app.models.models import AgentTask, TaskPriority
from app.services.portfolio_signals import arrears_summary, upcoming_lease_expiries
from app.services.proactive_actions import get_proactive_action_recorder
from app.services.task_lifecycle import get_task_lifecycle_service

logger = logging.getLogger(__name__)

TASKS_LINK = "/(app)/(tabs)/tasks"
ARREARS_LINK = "/(app)/arrears"


class InsightType(str, Enum):
    action_needed = "action_needed"
    warning = "warning"
    info = "info"
    success = "success"

    @property
    def priority(self) -> int:
        return INSIGHT_TYPE_PRIORITY[self]


INSIGHT_TYPE_PRIORITY: dict[InsightType, int] = {
    InsightType.action_needed: 0,
    InsightType.warning: 1,
    InsightType.info: 2,
    InsightType.success: 3,
}


@dataclass
class Insight:
    id: str
    title: str
    description: str
    type: InsightType
    deep_link: Optional[str] = None
    task_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "type": self.type.value,
            "deep_link": self.deep_link,
            "task_id": self.task_id,
        }


@dataclass
class InsightFeed:
    insights: list[Insight] = field(default_factory=list)
    degraded: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "insights": [i.to_dict() for i in self.insights],
            "degraded": self.degraded,
        }


InsightSource = Callable[[str], Awaitable[list[Insight]]]


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


# =============================================================================
# Sources
# =============================================================================

async def pending_task_insights(user_id: str) -> list[Insight]:
    tasks = await get_task_lifecycle_service().pending_tasks(user_id, get_settings().insight_pending_limit)
    return [
        Insight(
            id=f"task-{task.id}",
            title=task.title,
            description=task.recommendation or task.description or "Needs your input",
            type=InsightType.warning if task.priority == TaskPriority.urgent.value else InsightType.action_needed,
            deep_link=task.deep_link or TASKS_LINK,
            task_id=task.id,
        )
        for task in tasks
    ]


async def proactive_action_insights(user_id: str) -> list[Insight]:
    settings = get_settings()
    actions = await get_proactive_action_recorder().recent(
        user_id,
        within_days=settings.insight_recent_action_days,
        only_auto_executed=True,
        limit=settings.insight_recent_action_limit,
    )
    return [
        Insight(
            id=f"proactive-{action.id}",
            title=f"{settings.agent_name} handled: {action.action_taken}",
            description=f"Triggered by {action.trigger_type}",
            type=InsightType.success,
            deep_link=TASKS_LINK if action.task_id else None,
            task_id=action.task_id,
        )
        for action in actions
    ]


async def arrears_insights(user_id: str) -> list[Insight]:
    summary = await arrears_summary(user_id)
    if summary is None:
        return []
    return [
        Insight(
            id="arrears-summary",
            title=_plural(summary.count, "overdue payment"),
            description=f"${summary.total_overdue:,.2f} total outstanding",
            type=InsightType.warning,
            deep_link=ARREARS_LINK,
        )
    ]


async def lease_expiry_insights(user_id: str) -> list[Insight]:
    settings = get_settings()
    expiries = await upcoming_lease_expiries(
        user_id, within_days=settings.lease_expiry_window_days, limit=settings.lease_expiry_limit
    )
    insights = []
    for expiry in expiries:
        days = days_until(expiry.lease_end_date)
        insights.append(Insight(
            id=f"lease-expiry-{expiry.tenancy_id}",
            title="Lease expiring soon",
            description=f"{_plural(days, 'day')} until lease ends",
            type=InsightType.warning if days <= settings.lease_expiry_warning_days else InsightType.info,
            deep_link=f"/(app)/tenancy/{expiry.tenancy_id}",
        ))
    return insights


async def active_task_insights(user_id: str) -> list[Insight]:
    tasks: list[AgentTask] = await get_task_lifecycle_service().active_tasks(
        user_id, get_settings().insight_active_limit
    )
    return [
        Insight(
            id=f"active-task-{task.id}",
            title=f"Working on: {task.title}",
            description=task.description or "In progress",
            type=InsightType.info,
            deep_link=task.deep_link or TASKS_LINK,
            task_id=task.id,
        )
        for task in tasks
    ]


DEFAULT_SOURCES: tuple[InsightSource, ...] = (
    pending_task_insights,
    proactive_action_insights,
    arrears_insights,
    lease_expiry_insights,
    active_task_insights,
)


# =============================================================================
# Aggregation
# =============================================================================

def rank_insights(insights: Sequence[Insight], limit: int) -> list[Insight]:
    """Stable sort by type priority, then keep the first `limit`."""
    return sorted(insights, key=lambda i: i.type.priority)[:limit]


class InsightAggregator:
    """Merges all insight sources into one ranked feed."""

    def __init__(self, sources: Optional[Sequence[InsightSource]] = None, max_insights: Optional[int] = None):
        self.sources = tuple(sources) if sources is not None else DEFAULT_SOURCES
        self.max_insights = max_insights if max_insights is not None else get_settings().max_insights

    async def build_feed(self, user_id: str) -> InsightFeed:
        require_user_id(user_id)
        results = await asyncio.gather(
            *(source(user_id) for source in self.sources),
            return_exceptions=True,
        )

        merged: list[Insight] = []
        for source, result in zip(self.sources, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "Insight source %s failed for %s: %s",
                    getattr(source, "__name__", source), user_id, result,
                )
                return InsightFeed(insights=[], degraded=True)
            merged.extend(result)

        return InsightFeed(insights=rank_insights(merged, self.max_insights))


_aggregator: Optional[InsightAggregator] = None


def get_insight_aggregator() -> InsightAggregator:
    global _aggregator
    if _aggregator is None:
        _aggregator = InsightAggregator()
    return _aggregator
