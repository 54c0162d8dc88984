"""
Portfolio signals read from the property app's own tables.

The agent core never writes tenancies or arrears; it only summarizes them
for the insights feed.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

from sqlalchemy import func, select

from app.core.database import get_db_session
from app.core.errors import require_user_id, store_read
from app.core.utc import utc_today
from app.models.models import ArrearsRecord, Tenancy


@dataclass
class ArrearsSummary:
    count: int
    total_overdue: float


@dataclass
class LeaseExpiry:
    tenancy_id: str
    property_id: Optional[str]
    lease_end_date: date


async def arrears_summary(user_id: str) -> Optional[ArrearsSummary]:
    """Count and total of unresolved arrears, or None when there are none."""
    require_user_id(user_id)
    with store_read("arrears_summary"):
        async with get_db_session() as session:
            result = await session.execute(
                select(func.count(ArrearsRecord.id), func.coalesce(func.sum(ArrearsRecord.total_overdue), 0.0))
                .where(ArrearsRecord.owner_id == user_id, ArrearsRecord.is_resolved.is_(False))
            )
            count, total = result.one()
    if not count:
        return None
    return ArrearsSummary(count=int(count), total_overdue=float(total or 0))


async def upcoming_lease_expiries(
    user_id: str,
    within_days: int = 90,
    limit: int = 3,
    today: Optional[date] = None,
) -> list[LeaseExpiry]:
    """Active tenancies whose lease ends between today and `within_days` out, soonest first."""
    require_user_id(user_id)
    start = today or utc_today()
    with store_read("upcoming_lease_expiries"):
        async with get_db_session() as session:
            result = await session.execute(
                select(Tenancy)
                .where(
                    Tenancy.owner_id == user_id,
                    Tenancy.status == "active",
                    Tenancy.lease_end_date.is_not(None),
                    Tenancy.lease_end_date >= start,
                    Tenancy.lease_end_date <= start + timedelta(days=within_days),
                )
                .order_by(Tenancy.lease_end_date.asc())
                .limit(limit)
            )
            return [
                LeaseExpiry(tenancy_id=t.id, property_id=t.property_id, lease_end_date=t.lease_end_date)
                for t in result.scalars().all()
            ]
