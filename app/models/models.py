"""
Casa Agent Core Database Models
SQLAlchemy ORM models and the closed enumerations they store.

All datetime columns use DateTime(timezone=True) for proper UTC handling.
Use utc_now() from app.core.utc for all timestamp defaults.
Enumerations are stored as their string values so the tables stay readable
from the mobile app's own queries.
"""

import enum
import uuid
from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Index,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base
from app.core.utc import utc_now


# Type alias for timezone-aware DateTime columns
DateTimeTZ = DateTime(timezone=True)


def new_id() -> str:
    return str(uuid.uuid4())


# =============================================================================
# Autonomy Enums
# =============================================================================

class AutonomyPreset(str, enum.Enum):
    """Named bundle of default autonomy levels. Exactly one is active per owner."""
    cautious = "cautious"
    balanced = "balanced"
    hands_off = "hands_off"
    custom = "custom"


class AutonomyLevel(str, enum.Enum):
    """
    Ordered permission grade for unattended agent action.
    Each level permits everything the levels below it permit.
    """
    L0 = "L0"   # Inform: always requires owner approval
    L1 = "L1"   # Suggest: propose and wait for confirmation
    L2 = "L2"   # Draft: prepare the action for review
    L3 = "L3"   # Execute: act, then report
    L4 = "L4"   # Autonomous: silent execution

    @property
    def rank(self) -> int:
        return int(self.value[1:])

    @classmethod
    def from_rank(cls, rank: int) -> "AutonomyLevel":
        return cls(f"L{rank}")

    @classmethod
    def parse(cls, value: Any) -> "AutonomyLevel":
        """Accept "L2", 2 or an AutonomyLevel; raise ValueError otherwise."""
        if isinstance(value, cls):
            return value
        if isinstance(value, bool):
            raise ValueError(f"Invalid autonomy level: {value!r}")
        if isinstance(value, int):
            return cls.from_rank(value)
        return cls(str(value).strip().upper())


class TaskCategory(str, enum.Enum):
    """Business domains the agent works in. Fixed set."""
    tenant_finding = "tenant_finding"
    lease_management = "lease_management"
    rent_collection = "rent_collection"
    maintenance = "maintenance"
    compliance = "compliance"
    general = "general"
    inspections = "inspections"
    listings = "listings"
    financial = "financial"
    insurance = "insurance"
    communication = "communication"


# =============================================================================
# Task Enums
# =============================================================================

class TaskStatus(str, enum.Enum):
    """Agent task lifecycle states."""
    pending_input = "pending_input"   # Waiting on an owner decision
    in_progress = "in_progress"       # Agent executing
    scheduled = "scheduled"           # Queued, not yet started
    completed = "completed"           # Terminal
    cancelled = "cancelled"           # Terminal, rejected by the owner


class TaskPriority(str, enum.Enum):
    """Task urgency. Lower rank sorts first."""
    urgent = "urgent"
    high = "high"
    normal = "normal"
    low = "low"

    @property
    def rank(self) -> int:
        return PRIORITY_RANK[self]


PRIORITY_RANK: dict[TaskPriority, int] = {
    TaskPriority.urgent: 0,
    TaskPriority.high: 1,
    TaskPriority.normal: 2,
    TaskPriority.low: 3,
}


class PendingActionStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    expired = "expired"


# =============================================================================
# Autonomy Settings
# =============================================================================

class AgentAutonomySettings(Base):
    """
    One owner's autonomy configuration.

    No row means "balanced defaults". The row is created on first write and
    is only ever updated afterwards.
    """
    __tablename__ = "agent_autonomy_settings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)

    preset: Mapped[str] = mapped_column(String(20), default=AutonomyPreset.balanced.value)
    # {"maintenance": "L3", "financial": "L1"}
    category_overrides: Mapped[dict] = mapped_column(JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTimeTZ, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTimeTZ, default=utc_now, onupdate=utc_now)


class AutonomyGraduationTracking(Base):
    """Approval streak per owner and category, used to suggest a higher level."""
    __tablename__ = "autonomy_graduation_tracking"
    __table_args__ = (
        UniqueConstraint("user_id", "category", name="uq_graduation_user_category"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    category: Mapped[str] = mapped_column(String(40))

    consecutive_approvals: Mapped[int] = mapped_column(Integer, default=0)
    total_approvals: Mapped[int] = mapped_column(Integer, default=0)
    total_rejections: Mapped[int] = mapped_column(Integer, default=0)
    current_level: Mapped[int] = mapped_column(Integer, default=1)
    graduation_threshold: Mapped[int] = mapped_column(Integer, default=10)
    backoff_multiplier: Mapped[int] = mapped_column(Integer, default=1)

    last_approval_at: Mapped[Optional[datetime]] = mapped_column(DateTimeTZ, nullable=True)
    last_rejection_at: Mapped[Optional[datetime]] = mapped_column(DateTimeTZ, nullable=True)
    last_suggestion_at: Mapped[Optional[datetime]] = mapped_column(DateTimeTZ, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTimeTZ, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTimeTZ, default=utc_now, onupdate=utc_now)


# =============================================================================
# Agent Tasks
# =============================================================================

class AgentTask(Base):
    """
    One unit of agent-initiated work.

    Timeline entries are stored as a JSON list; timeline_cursor is the index
    of the current entry (== len(timeline) when every entry is completed).
    Entry status is derived from the cursor, never stored.
    """
    __tablename__ = "agent_tasks"
    __table_args__ = (
        Index("ix_agent_tasks_user_status", "user_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(64), index=True)

    title: Mapped[str] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String(40))
    priority: Mapped[str] = mapped_column(String(10), default=TaskPriority.normal.value)
    # Integer copy of priority so the store can order urgent first
    priority_rank: Mapped[int] = mapped_column(Integer, default=2)
    status: Mapped[str] = mapped_column(String(20), default=TaskStatus.pending_input.value)
    manual_override: Mapped[bool] = mapped_column(Boolean, default=False)

    timeline: Mapped[list] = mapped_column(JSON, default=list)
    timeline_cursor: Mapped[int] = mapped_column(Integer, default=0)

    recommendation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    deep_link: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    related_entity_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    related_entity_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    # Level the agent needs for this work to proceed without a checkpoint
    required_level: Mapped[Optional[str]] = mapped_column(String(4), nullable=True)

    scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTimeTZ, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTimeTZ, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTimeTZ, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTimeTZ, default=utc_now, onupdate=utc_now)


class AgentPendingAction(Base):
    """A concrete action awaiting owner approval on a task."""
    __tablename__ = "agent_pending_actions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    task_id: Mapped[Optional[str]] = mapped_column(String(36), index=True, nullable=True)

    action_type: Mapped[str] = mapped_column(String(50))
    title: Mapped[str] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tool_name: Mapped[str] = mapped_column(String(100))
    tool_params: Mapped[dict] = mapped_column(JSON, default=dict)
    autonomy_level: Mapped[int] = mapped_column(Integer)

    status: Mapped[str] = mapped_column(String(20), default=PendingActionStatus.pending.value)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTimeTZ, nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTimeTZ, nullable=True)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTimeTZ, default=utc_now)


# =============================================================================
# Proactive Actions (append-only audit log)
# =============================================================================

class AgentProactiveAction(Base):
    """
    One autonomous execution. Written once, never updated.
    """
    __tablename__ = "agent_proactive_actions"
    __table_args__ = (
        Index("ix_agent_proactive_user_created", "user_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(64))
    task_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    trigger_type: Mapped[str] = mapped_column(String(50))
    trigger_source: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    action_taken: Mapped[str] = mapped_column(Text)
    tool_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    tool_params: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    result: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    was_auto_executed: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTimeTZ, default=utc_now)


# =============================================================================
# Portfolio records (owned by the property app, read here)
# =============================================================================

class Tenancy(Base):
    """Tenancy row as far as lease-expiry signals need it."""
    __tablename__ = "tenancies"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    owner_id: Mapped[str] = mapped_column(String(64), index=True)
    property_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="active")  # active, ended, terminated
    lease_end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTimeTZ, default=utc_now)


class ArrearsRecord(Base):
    """Unpaid rent on a tenancy."""
    __tablename__ = "arrears_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    owner_id: Mapped[str] = mapped_column(String(64), index=True)
    tenancy_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    total_overdue: Mapped[float] = mapped_column(Float, default=0.0)
    days_overdue: Mapped[int] = mapped_column(Integer, default=0)
    severity: Mapped[str] = mapped_column(String(20), default="minor")
    is_resolved: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTimeTZ, default=utc_now)
