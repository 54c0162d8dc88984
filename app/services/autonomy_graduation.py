"""
Autonomy Graduation

Tracks how often the owner approves the agent's proposals in each category.
After enough consecutive approvals the owner is offered one more level of
autonomy for that category. Declining doubles the streak needed before the
next offer; any rejection starts the streak over.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.database import get_db_session
from app.core.errors import FailureReason, OperationResult, require_user_id, store_read
from app.core.event_bus import EventType, event_bus
from app.core.utc import utc_now
from app.models.models import AutonomyGraduationTracking, AutonomyLevel, TaskCategory
from app.services.autonomy import AutonomyService, get_autonomy_service, parse_category, resolve_effective_levels

logger = logging.getLogger(__name__)

MAX_LEVEL = max(level.rank for level in AutonomyLevel)


@dataclass
class GraduationProgress:
    category: str
    current_level: int
    consecutive_approvals: int
    threshold: int
    eligible: bool
    progress_pct: int

    def to_dict(self) -> dict:
        return {
            "category": self.category,
            "current_level": self.current_level,
            "consecutive_approvals": self.consecutive_approvals,
            "threshold": self.threshold,
            "eligible": self.eligible,
            "progress_pct": self.progress_pct,
        }


def progress_for(tracking: AutonomyGraduationTracking) -> GraduationProgress:
    threshold = max(tracking.graduation_threshold * tracking.backoff_multiplier, 1)
    return GraduationProgress(
        category=tracking.category,
        current_level=tracking.current_level,
        consecutive_approvals=tracking.consecutive_approvals,
        threshold=threshold,
        eligible=tracking.consecutive_approvals >= threshold and tracking.current_level < MAX_LEVEL,
        progress_pct=min(100, round(tracking.consecutive_approvals / threshold * 100)),
    )


class GraduationService:
    """Approval streaks and level graduation per owner and category."""

    def __init__(self, autonomy: Optional[AutonomyService] = None):
        self.autonomy = autonomy or get_autonomy_service()

    async def _load(
        self, session: AsyncSession, user_id: str, category: str
    ) -> Optional[AutonomyGraduationTracking]:
        result = await session.execute(
            select(AutonomyGraduationTracking).where(
                AutonomyGraduationTracking.user_id == user_id,
                AutonomyGraduationTracking.category == category,
            )
        )
        return result.scalar_one_or_none()

    async def record_feedback(
        self,
        session: AsyncSession,
        user_id: str,
        category: TaskCategory,
        approved: bool,
    ) -> AutonomyGraduationTracking:
        """
        Count one owner decision inside the caller's transaction.

        The tracking row starts at the owner's current effective level for
        the category.
        """
        tracking = await self._load(session, user_id, category.value)
        if tracking is None:
            settings_row = await self.autonomy.load_settings(session, user_id)
            tracking = AutonomyGraduationTracking(
                user_id=user_id,
                category=category.value,
                consecutive_approvals=0,
                total_approvals=0,
                total_rejections=0,
                current_level=resolve_effective_levels(settings_row)[category].rank,
                graduation_threshold=get_settings().graduation_threshold,
                backoff_multiplier=1,
            )
            session.add(tracking)

        now = utc_now()
        if approved:
            tracking.consecutive_approvals = (tracking.consecutive_approvals or 0) + 1
            tracking.total_approvals = (tracking.total_approvals or 0) + 1
            tracking.last_approval_at = now
        else:
            tracking.consecutive_approvals = 0
            tracking.total_rejections = (tracking.total_rejections or 0) + 1
            tracking.last_rejection_at = now
        await session.flush()
        return tracking

    async def progress(self, user_id: str) -> list[GraduationProgress]:
        require_user_id(user_id)
        with store_read("graduation_progress"):
            async with get_db_session() as session:
                result = await session.execute(
                    select(AutonomyGraduationTracking)
                    .where(AutonomyGraduationTracking.user_id == user_id)
                    .order_by(AutonomyGraduationTracking.category.asc())
                )
                return [progress_for(t) for t in result.scalars().all()]

    async def accept_graduation(self, user_id: str, category: str) -> OperationResult[GraduationProgress]:
        """Raise the category one level and restart the streak."""
        require_user_id(user_id)
        parsed = parse_category(category)
        if parsed is None:
            return OperationResult.failure(FailureReason.INVALID_CATEGORY, f"Invalid category: {category}")

        try:
            async with get_db_session() as session:
                tracking = await self._load(session, user_id, parsed.value)
                if tracking is None or not progress_for(tracking).eligible:
                    return OperationResult.failure(
                        FailureReason.NOT_ELIGIBLE, f"{parsed.value} is not eligible for graduation"
                    )
                new_level = AutonomyLevel.from_rank(min(tracking.current_level + 1, MAX_LEVEL))
                tracking.current_level = new_level.rank
                tracking.consecutive_approvals = 0
                tracking.backoff_multiplier = 1
                tracking.last_suggestion_at = utc_now()
                await session.flush()
                # Same transaction as the tracking row: both land or neither does
                await self.autonomy.apply_category_level(session, user_id, parsed, new_level)
                progress = progress_for(tracking)
        except SQLAlchemyError as e:
            logger.warning("Failed to accept graduation for %s/%s: %s", user_id, parsed.value, e)
            return OperationResult.failure(FailureReason.STORE_FAILURE, str(e))

        logger.info("Graduated %s/%s to %s", user_id, parsed.value, new_level.value)
        await event_bus.publish(
            EventType.AUTONOMY_GRADUATED,
            {"category": parsed.value, "level": new_level.value},
            source="graduation",
            user_id=user_id,
        )
        return OperationResult.success(progress)

    async def decline_graduation(self, user_id: str, category: str) -> OperationResult[GraduationProgress]:
        """Keep the current level and double the streak needed for the next offer."""
        require_user_id(user_id)
        parsed = parse_category(category)
        if parsed is None:
            return OperationResult.failure(FailureReason.INVALID_CATEGORY, f"Invalid category: {category}")

        try:
            async with get_db_session() as session:
                tracking = await self._load(session, user_id, parsed.value)
                if tracking is None:
                    return OperationResult.failure(
                        FailureReason.NOT_ELIGIBLE, f"No graduation history for {parsed.value}"
                    )
                tracking.consecutive_approvals = 0
                tracking.backoff_multiplier = min(
                    tracking.backoff_multiplier * 2, get_settings().max_backoff_multiplier
                )
                tracking.last_suggestion_at = utc_now()
                await session.flush()
                progress = progress_for(tracking)
        except SQLAlchemyError as e:
            logger.warning("Failed to decline graduation for %s/%s: %s", user_id, parsed.value, e)
            return OperationResult.failure(FailureReason.STORE_FAILURE, str(e))

        logger.info("Graduation declined for %s/%s, next offer after %s approvals", user_id, parsed.value, progress.threshold)
        return OperationResult.success(progress)


_graduation_service: Optional[GraduationService] = None


def get_graduation_service() -> GraduationService:
    global _graduation_service
    if _graduation_service is None:
        _graduation_service = GraduationService()
    return _graduation_service
