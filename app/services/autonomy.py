"""
Autonomy Resolver

Decides how much the agent may do on its own, per task category.

Two layers are kept apart on purpose:
1. PRESET_DEFAULTS - the built-in table for each named preset (total)
2. category_overrides - sparse per-owner edits stored on the settings row

resolve_effective_levels() merges them without touching either, so the
"what would the preset alone give" view stays available for display and
diffing.

Known race: set_category_level() reads the overrides map, merges one key
and writes the whole map back. Two concurrent edits for the same owner are
last-writer-wins; the losing key is dropped. Callers that edit several
categories at once should serialize their calls.
"""

import logging
from typing import Mapping, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db_session
from app.core.errors import FailureReason, OperationResult, require_user_id, store_read
from app.core.event_bus import EventType, event_bus
from app.core.utc import utc_now
from app.models.models import (
    AgentAutonomySettings,
    AutonomyLevel,
    AutonomyPreset,
    TaskCategory,
)

logger = logging.getLogger(__name__)

L0, L1, L2, L3 = AutonomyLevel.L0, AutonomyLevel.L1, AutonomyLevel.L2, AutonomyLevel.L3

LevelMap = dict[TaskCategory, AutonomyLevel]


# =============================================================================
# Preset Tables
# =============================================================================

_BALANCED: LevelMap = {
    TaskCategory.tenant_finding: L2,
    TaskCategory.lease_management: L1,
    TaskCategory.rent_collection: L2,
    TaskCategory.maintenance: L2,
    TaskCategory.compliance: L1,
    TaskCategory.general: L2,
    TaskCategory.inspections: L2,
    TaskCategory.listings: L2,
    TaskCategory.financial: L1,
    TaskCategory.insurance: L1,
    TaskCategory.communication: L2,
}

PRESET_DEFAULTS: dict[AutonomyPreset, LevelMap] = {
    AutonomyPreset.cautious: {
        TaskCategory.tenant_finding: L1,
        TaskCategory.lease_management: L0,
        TaskCategory.rent_collection: L1,
        TaskCategory.maintenance: L1,
        TaskCategory.compliance: L0,
        TaskCategory.general: L1,
        TaskCategory.inspections: L1,
        TaskCategory.listings: L1,
        TaskCategory.financial: L0,
        TaskCategory.insurance: L0,
        TaskCategory.communication: L1,
    },
    AutonomyPreset.balanced: _BALANCED,
    AutonomyPreset.hands_off: {
        TaskCategory.tenant_finding: L3,
        TaskCategory.lease_management: L2,
        TaskCategory.rent_collection: L3,
        TaskCategory.maintenance: L3,
        TaskCategory.compliance: L2,
        TaskCategory.general: L3,
        TaskCategory.inspections: L3,
        TaskCategory.listings: L3,
        TaskCategory.financial: L2,
        TaskCategory.insurance: L2,
        TaskCategory.communication: L3,
    },
    # custom starts from balanced; its identity lives in the overrides
    AutonomyPreset.custom: _BALANCED,
}

DEFAULT_PRESET = AutonomyPreset.balanced
NAMED_PRESETS = (AutonomyPreset.cautious, AutonomyPreset.balanced, AutonomyPreset.hands_off)


# =============================================================================
# Parsing
# =============================================================================

def parse_category(value: str | TaskCategory) -> Optional[TaskCategory]:
    """Return the TaskCategory for `value`, or None if it is not one."""
    if isinstance(value, TaskCategory):
        return value
    try:
        return TaskCategory(value)
    except ValueError:
        return None


def parse_level(value) -> Optional[AutonomyLevel]:
    try:
        return AutonomyLevel.parse(value)
    except ValueError:
        return None


def parse_preset(value: str | AutonomyPreset | None) -> Optional[AutonomyPreset]:
    if isinstance(value, AutonomyPreset):
        return value
    try:
        return AutonomyPreset(value)
    except ValueError:
        return None


# =============================================================================
# Pure Resolution
# =============================================================================

def preset_levels(preset: AutonomyPreset | str | None) -> LevelMap:
    """The built-in table for a preset alone (balanced when unknown/None)."""
    resolved = parse_preset(preset) or DEFAULT_PRESET
    return dict(PRESET_DEFAULTS[resolved])


def parse_overrides(raw: Optional[Mapping]) -> LevelMap:
    """
    Turn a stored overrides map into typed entries.
    Keys that are not categories and values that are not levels are dropped.
    """
    overrides: LevelMap = {}
    for key, value in (raw or {}).items():
        category = parse_category(key)
        level = parse_level(value)
        if category is None or level is None:
            logger.debug("Ignoring stored override %r=%r", key, value)
            continue
        overrides[category] = level
    return overrides


def merge_levels(defaults: LevelMap, overrides: LevelMap) -> LevelMap:
    """Overlay overrides on defaults key by key. Neither input is modified."""
    merged = dict(defaults)
    merged.update(overrides)
    return merged


def resolve_effective_levels(settings: Optional[AgentAutonomySettings]) -> LevelMap:
    """
    Effective level for every category.

    No settings means balanced defaults. The result is total because every
    preset table covers every category.
    """
    if settings is None:
        return preset_levels(DEFAULT_PRESET)
    return merge_levels(
        preset_levels(settings.preset),
        parse_overrides(settings.category_overrides),
    )


def classify_configuration(levels: Mapping[TaskCategory, AutonomyLevel]) -> AutonomyPreset:
    """Name the preset an effective map is equal to, or custom if none match."""
    for preset in NAMED_PRESETS:
        if dict(levels) == PRESET_DEFAULTS[preset]:
            return preset
    return AutonomyPreset.custom


def diff_from_preset(settings: Optional[AgentAutonomySettings]) -> LevelMap:
    """Categories whose effective level differs from the active preset's table."""
    base = preset_levels(settings.preset if settings else None)
    effective = resolve_effective_levels(settings)
    return {category: level for category, level in effective.items() if base[category] != level}


def requires_checkpoint(effective_level: AutonomyLevel, required_level: Optional[AutonomyLevel]) -> bool:
    """
    True when the owner must sign off before the agent continues.

    No required level means the work needs no more than the owner already
    allows. Otherwise the owner's level has to reach the required one.
    """
    if required_level is None:
        return False
    return effective_level.rank < required_level.rank


def levels_to_dict(levels: Mapping[TaskCategory, AutonomyLevel]) -> dict[str, str]:
    return {category.value: level.value for category, level in levels.items()}


# =============================================================================
# Autonomy Service
# =============================================================================

class AutonomyService:
    """Reads and edits an owner's autonomy settings."""

    async def _load(self, session: AsyncSession, user_id: str) -> Optional[AgentAutonomySettings]:
        result = await session.execute(
            select(AgentAutonomySettings).where(AgentAutonomySettings.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def load_settings(self, session: AsyncSession, user_id: str) -> Optional[AgentAutonomySettings]:
        """Settings row inside a caller-owned session (None if never written)."""
        return await self._load(session, user_id)

    async def apply_category_level(
        self,
        session: AsyncSession,
        user_id: str,
        category: TaskCategory,
        level: AutonomyLevel,
    ) -> AgentAutonomySettings:
        """Merge one override inside a caller-owned session and move the owner to custom."""
        settings = await self._load(session, user_id)
        if settings is None:
            settings = AgentAutonomySettings(
                user_id=user_id,
                preset=AutonomyPreset.custom.value,
                category_overrides={category.value: level.value},
            )
            session.add(settings)
        else:
            overrides = dict(settings.category_overrides or {})
            overrides[category.value] = level.value
            settings.category_overrides = overrides
            settings.preset = AutonomyPreset.custom.value
            settings.updated_at = utc_now()
        await session.flush()
        return settings

    async def get_settings(self, user_id: str) -> Optional[AgentAutonomySettings]:
        """Stored settings for an owner, or None if they never changed anything."""
        require_user_id(user_id)
        with store_read("get_settings"):
            async with get_db_session() as session:
                return await self._load(session, user_id)

    async def effective_levels(self, user_id: str) -> LevelMap:
        return resolve_effective_levels(await self.get_settings(user_id))

    async def level_for(self, user_id: str, category: TaskCategory) -> AutonomyLevel:
        return (await self.effective_levels(user_id))[category]

    async def set_preset(self, user_id: str, preset: str | AutonomyPreset) -> OperationResult[AgentAutonomySettings]:
        """
        Activate a preset.

        A named preset is a full reset: every override is discarded. Choosing
        custom keeps whatever overrides are already stored.
        """
        require_user_id(user_id)
        new_preset = parse_preset(preset)
        if new_preset is None:
            return OperationResult.failure(FailureReason.INVALID_PRESET, f"Invalid preset: {preset}")

        try:
            async with get_db_session() as session:
                settings = await self._load(session, user_id)
                if settings is None:
                    settings = AgentAutonomySettings(
                        user_id=user_id,
                        preset=new_preset.value,
                        category_overrides={},
                    )
                    session.add(settings)
                else:
                    settings.preset = new_preset.value
                    if new_preset != AutonomyPreset.custom:
                        settings.category_overrides = {}
                    settings.updated_at = utc_now()
                await session.flush()
        except SQLAlchemyError as e:
            logger.warning("Failed to set preset for %s: %s", user_id, e)
            return OperationResult.failure(FailureReason.STORE_FAILURE, str(e))

        logger.info("Autonomy preset for %s set to %s", user_id, new_preset.value)
        await event_bus.publish(
            EventType.AUTONOMY_PRESET_CHANGED,
            {"preset": new_preset.value},
            source="autonomy",
            user_id=user_id,
        )
        return OperationResult.success(settings)

    async def set_category_level(
        self,
        user_id: str,
        category: str | TaskCategory,
        level,
    ) -> OperationResult[AgentAutonomySettings]:
        """
        Override one category's level.

        Validation happens before anything is written. On success the preset
        becomes custom even if the new level matches the old preset's default:
        an explicit edit always leaves the named preset.
        """
        require_user_id(user_id)
        parsed_category = parse_category(category)
        if parsed_category is None:
            logger.info("Rejected level edit for %s: invalid category %r", user_id, category)
            return OperationResult.failure(FailureReason.INVALID_CATEGORY, f"Invalid category: {category}")
        parsed_level = parse_level(level)
        if parsed_level is None:
            return OperationResult.failure(FailureReason.INVALID_LEVEL, f"Invalid autonomy level: {level}")

        try:
            async with get_db_session() as session:
                settings = await self.apply_category_level(session, user_id, parsed_category, parsed_level)
        except SQLAlchemyError as e:
            logger.warning("Failed to set %s level for %s: %s", parsed_category.value, user_id, e)
            return OperationResult.failure(FailureReason.STORE_FAILURE, str(e))

        logger.info("Autonomy for %s/%s set to %s", user_id, parsed_category.value, parsed_level.value)
        await event_bus.publish(
            EventType.AUTONOMY_LEVEL_CHANGED,
            {"category": parsed_category.value, "level": parsed_level.value},
            source="autonomy",
            user_id=user_id,
        )
        return OperationResult.success(settings)


_autonomy_service: Optional[AutonomyService] = None


def get_autonomy_service() -> AutonomyService:
    global _autonomy_service
    if _autonomy_service is None:
        _autonomy_service = AutonomyService()
    return _autonomy_service
