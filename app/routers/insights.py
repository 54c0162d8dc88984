"""
Insights Router
===============
Home-screen feed: at most a handful of ranked items.
"""

from fastapi import APIRouter, Depends

from app.core.security import OwnerContext, require_user
from app.services.insights import get_insight_aggregator


router = APIRouter(prefix="/api/agent/insights", tags=["Agent Insights"])


@router.get("")
async def get_insights(user: OwnerContext = Depends(require_user)):
    """
    Ranked insights for the owner.

    A failed source gives an empty list with degraded=true rather than an
    error status, so the screen can show a retry hint.
    """
    feed = await get_insight_aggregator().build_feed(user.user_id)
    return feed.to_dict()
