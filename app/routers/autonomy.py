"""
Autonomy Router
===============
Owner-facing autonomy settings:
- Preset selection (cautious / balanced / hands_off / custom)
- Per-category level overrides
- Graduation offers earned through repeated approvals
"""

from typing import Optional, Union

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.core.errors import raise_for_failure
from app.core.security import OwnerContext, require_user
from app.models.models import AgentAutonomySettings
from app.services.autonomy import (
    DEFAULT_PRESET,
    classify_configuration,
    diff_from_preset,
    get_autonomy_service,
    levels_to_dict,
    preset_levels,
    resolve_effective_levels,
)
from app.services.autonomy_graduation import get_graduation_service


router = APIRouter(prefix="/api/agent/autonomy", tags=["Agent Autonomy"])


# =============================================================================
# Request/Response Models
# =============================================================================

class PresetUpdate(BaseModel):
    preset: str


class LevelUpdate(BaseModel):
    level: Union[str, int]


class AutonomyResponse(BaseModel):
    preset: str
    matches_preset: str
    levels: dict[str, str]
    preset_defaults: dict[str, str]
    overridden: dict[str, str]


class GraduationResponse(BaseModel):
    category: str
    current_level: int
    consecutive_approvals: int
    threshold: int
    eligible: bool
    progress_pct: int


def settings_to_response(settings: Optional[AgentAutonomySettings]) -> AutonomyResponse:
    preset = settings.preset if settings else DEFAULT_PRESET.value
    levels = resolve_effective_levels(settings)
    return AutonomyResponse(
        preset=preset,
        matches_preset=classify_configuration(levels).value,
        levels=levels_to_dict(levels),
        preset_defaults=levels_to_dict(preset_levels(preset)),
        overridden=levels_to_dict(diff_from_preset(settings)),
    )


# =============================================================================
# Settings
# =============================================================================

@router.get("", response_model=AutonomyResponse)
async def get_autonomy(user: OwnerContext = Depends(require_user)):
    """Effective level per category, with the active preset's defaults for comparison."""
    settings = await get_autonomy_service().get_settings(user.user_id)
    return settings_to_response(settings)


@router.put("/preset", response_model=AutonomyResponse)
async def set_preset(body: PresetUpdate, user: OwnerContext = Depends(require_user)):
    """Switch preset. Any named preset discards per-category overrides."""
    result = await get_autonomy_service().set_preset(user.user_id, body.preset)
    raise_for_failure(result)
    return settings_to_response(result.value)


@router.put("/categories/{category}", response_model=AutonomyResponse)
async def set_category_level(category: str, body: LevelUpdate, user: OwnerContext = Depends(require_user)):
    """Override one category. The preset becomes custom."""
    result = await get_autonomy_service().set_category_level(user.user_id, category, body.level)
    raise_for_failure(result)
    return settings_to_response(result.value)


# =============================================================================
# Graduation
# =============================================================================

@router.get("/graduation", response_model=list[GraduationResponse])
async def graduation_progress(user: OwnerContext = Depends(require_user)):
    progress = await get_graduation_service().progress(user.user_id)
    return [GraduationResponse(**p.to_dict()) for p in progress]


@router.post("/graduation/{category}/accept", response_model=GraduationResponse)
async def accept_graduation(category: str, user: OwnerContext = Depends(require_user)):
    result = await get_graduation_service().accept_graduation(user.user_id, category)
    raise_for_failure(result)
    return GraduationResponse(**result.value.to_dict())


@router.post("/graduation/{category}/decline", response_model=GraduationResponse)
async def decline_graduation(category: str, user: OwnerContext = Depends(require_user)):
    result = await get_graduation_service().decline_graduation(user.user_id, category)
    raise_for_failure(result)
    return GraduationResponse(**result.value.to_dict())
