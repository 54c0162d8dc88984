"""
Casa Agent Core - Shared Test Fixtures
Provides reusable fixtures for the database, API clients and seed data.
"""

import os
from datetime import date, datetime, timedelta
from typing import AsyncGenerator, Optional

import pytest
from httpx import AsyncClient, ASGITransport

# Configure test environment BEFORE importing app
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_casa_agent.db"
os.environ["TESTING"] = "true"
os.environ["LOG_LEVEL"] = "WARNING"

from app.main import app
from app.core.config import get_settings
from app.core.event_bus import event_bus


TEST_USER_ID = "owner-0001"
OTHER_USER_ID = "owner-0002"


# =============================================================================
# Core Fixtures
# =============================================================================

@pytest.fixture
def anyio_backend():
    """Use asyncio for async tests."""
    return "asyncio"


@pytest.fixture(scope="function", autouse=True)
async def setup_test_database():
    """Create database tables before each test and clean up after."""
    from app.core.database import Base, close_db, get_engine
    from app.models import models  # noqa: F401  registers tables

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    event_bus.clear()

    yield

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await close_db()
    event_bus.clear()


@pytest.fixture(autouse=True)
async def cleanup_test_db():
    """Remove the SQLite file after each test."""
    yield
    for db_file in ["test_casa_agent.db", "test_casa_agent.db-shm", "test_casa_agent.db-wal"]:
        if os.path.exists(db_file):
            try:
                os.remove(db_file)
            except PermissionError:
                pass


@pytest.fixture
def user_id() -> str:
    return TEST_USER_ID


@pytest.fixture
def settings():
    """Get test settings."""
    return get_settings()


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    """Unauthenticated async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
async def owner_client() -> AsyncGenerator[AsyncClient, None]:
    """Client calling as TEST_USER_ID through the gateway header."""
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"X-User-Id": TEST_USER_ID},
    ) as ac:
        yield ac


# =============================================================================
# Seed Helpers
# =============================================================================

async def seed_task(
    user_id: str = TEST_USER_ID,
    title: str = "Renew landlord insurance",
    category: str = "insurance",
    status: str = "pending_input",
    priority: str = "normal",
    manual_override: bool = False,
    created_at: Optional[datetime] = None,
    updated_at: Optional[datetime] = None,
    **extra,
):
    """Insert a task directly, bypassing the lifecycle rules."""
    from app.core.database import get_db_session
    from app.core.utc import utc_now
    from app.models.models import AgentTask, PRIORITY_RANK, TaskPriority

    now = utc_now()
    async with get_db_session() as session:
        task = AgentTask(
            user_id=user_id,
            title=title,
            category=category,
            status=status,
            priority=priority,
            priority_rank=PRIORITY_RANK[TaskPriority(priority)],
            manual_override=manual_override,
            timeline=extra.pop("timeline", []),
            timeline_cursor=extra.pop("timeline_cursor", 0),
            created_at=created_at or now,
            updated_at=updated_at or created_at or now,
            **extra,
        )
        session.add(task)
    return task


async def seed_proactive_action(
    user_id: str = TEST_USER_ID,
    action_taken: str = "Sent rent reminder",
    trigger_type: str = "rent_due",
    age: timedelta = timedelta(hours=1),
    was_auto_executed: bool = True,
    task_id: Optional[str] = None,
):
    from app.core.database import get_db_session
    from app.core.utc import utc_now
    from app.models.models import AgentProactiveAction

    async with get_db_session() as session:
        action = AgentProactiveAction(
            user_id=user_id,
            task_id=task_id,
            trigger_type=trigger_type,
            action_taken=action_taken,
            was_auto_executed=was_auto_executed,
            created_at=utc_now() - age,
        )
        session.add(action)
    return action


async def seed_tenancy(
    owner_id: str = TEST_USER_ID,
    ends_in_days: Optional[int] = 20,
    status: str = "active",
):
    from app.core.database import get_db_session
    from app.core.utc import utc_today
    from app.models.models import Tenancy

    end: Optional[date] = utc_today() + timedelta(days=ends_in_days) if ends_in_days is not None else None
    async with get_db_session() as session:
        tenancy = Tenancy(owner_id=owner_id, status=status, lease_end_date=end)
        session.add(tenancy)
    return tenancy


async def seed_arrears(owner_id: str = TEST_USER_ID, total_overdue: float = 500.0, is_resolved: bool = False):
    from app.core.database import get_db_session
    from app.models.models import ArrearsRecord

    async with get_db_session() as session:
        record = ArrearsRecord(owner_id=owner_id, total_overdue=total_overdue, is_resolved=is_resolved)
        session.add(record)
    return record


@pytest.fixture
def make_task():
    return seed_task


@pytest.fixture
def make_proactive_action():
    return seed_proactive_action


@pytest.fixture
def make_tenancy():
    return seed_tenancy


@pytest.fixture
def make_arrears():
    return seed_arrears


async def drop_store_table(name: str) -> None:
    """Drop one table mid-test so the next query against it fails in the driver."""
    from app.core.database import Base, get_engine

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.tables[name].drop)


@pytest.fixture
def drop_table():
    return drop_store_table
