"""Shared test fixtures — async DB, client, auth helpers, factories.

Reusable across all test modules (ledger, leave, attendance, API).
Uses SQLite + aiosqlite for fast isolated tests without PostgreSQL.
"""

from __future__ import annotations

import os

# Set test JWT_SECRET before any other import touches pydantic-settings
os.environ.setdefault("JWT_SECRET", "test-secret-for-ci-do-not-use-in-production")

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from hrms.common.constants import UserRole
from hrms.config import settings
from hrms.database import Base, get_db
from hrms.main import create_app

# Import ALL model modules so SQLAlchemy can resolve cross-module relationships
import hrms.attendance.models  # noqa: F401
import hrms.common.audit  # noqa: F401
import hrms.core_hr.models  # noqa: F401
import hrms.leave.models  # noqa: F401

# ── SQLite compat: compile PG-specific types to TEXT/CHAR ───────────

from sqlalchemy.dialects.postgresql import JSONB, UUID as PG_UUID
from sqlalchemy.ext.compiler import compiles


@compiles(JSONB, "sqlite")
def _jsonb_sqlite(element, compiler, **kw):
    return "TEXT"


@compiles(PG_UUID, "sqlite")
def _uuid_sqlite(element, compiler, **kw):
    return "CHAR(36)"


# ── Test database (SQLite in-memory) ────────────────────────────────

TEST_DATABASE_URL = "sqlite+aiosqlite://"

engine = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


# Register PG-compatible functions for SQLite
@event.listens_for(engine.sync_engine, "connect")
def _register_sqlite_functions(dbapi_conn, connection_record):
    """Register NOW() as a SQLite custom function."""
    dbapi_conn.create_function(
        "NOW", 0, lambda: datetime.now(timezone.utc).isoformat(),
    )


TestSessionFactory = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False,
)


@pytest.fixture(autouse=True)
async def _setup_db():
    """Create all tables before each test, drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture(autouse=True)
def _reset_rate_limiter():
    """Reset rate limiter storage between tests to prevent cross-test interference."""
    from hrms.common.rate_limit import limiter

    limiter.reset()
    yield


async def _override_get_db() -> AsyncGenerator[AsyncSession, None]:
    async with TestSessionFactory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


# ── FastAPI test client ─────────────────────────────────────────────

@pytest.fixture
async def app():
    """Create a fresh app instance with DB dependency overridden."""
    application = create_app()
    application.dependency_overrides[get_db] = _override_get_db
    yield application
    application.dependency_overrides.clear()


@pytest.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client wired to the test app."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


# ── Database session (for direct DB operations in tests) ────────────

@pytest.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    async with TestSessionFactory() as session:
        yield session
        await session.commit()


# ── Model factories ─────────────────────────────────────────────────

def _make_employee(
    *,
    email: str | None = None,
    first_name: str = "Test",
    last_name: str = "User",
    reporting_manager_id: uuid.UUID | None = None,
) -> dict:
    code = uuid.uuid4().hex[:6].upper()
    return dict(
        id=uuid.uuid4(),
        employee_code=f"EMP-{code}",
        first_name=first_name,
        last_name=last_name,
        email=email or f"user.{code.lower()}@hrms.local",
        reporting_manager_id=reporting_manager_id,
        is_active=True,
        created_at=datetime.now(timezone.utc),
        updated_at=datetime.now(timezone.utc),
    )


def _make_leave_type(
    *,
    code: str = "AL",
    name: str = "Annual Leave",
    default_annual_quota: Decimal = Decimal("20"),
    max_consecutive_days: int = 0,
    is_carry_forward: bool = False,
    requires_approval: bool = True,
    is_active: bool = True,
) -> dict:
    return dict(
        id=uuid.uuid4(),
        code=code,
        name=name,
        default_annual_quota=default_annual_quota,
        max_consecutive_days=max_consecutive_days,
        is_carry_forward=is_carry_forward,
        requires_approval=requires_approval,
        is_active=is_active,
        created_at=datetime.now(timezone.utc),
        updated_at=datetime.now(timezone.utc),
    )


@pytest.fixture
async def test_manager(db) -> dict:
    """Insert an active manager."""
    from hrms.core_hr.models import Employee

    data = _make_employee(first_name="Maya", last_name="Manager")
    db.add(Employee(**data))
    await db.flush()
    return data


@pytest.fixture
async def test_employee(db, test_manager) -> dict:
    """Insert an active employee reporting to test_manager."""
    from hrms.core_hr.models import Employee

    data = _make_employee(reporting_manager_id=test_manager["id"])
    db.add(Employee(**data))
    await db.flush()
    return data


@pytest.fixture
async def annual_leave(db) -> dict:
    """Insert the AL leave type: quota 20, no consecutive-day cap."""
    from hrms.leave.models import LeaveType

    data = _make_leave_type()
    db.add(LeaveType(**data))
    await db.flush()
    return data


# ── Auth helpers ────────────────────────────────────────────────────

def create_access_token(
    employee_id: uuid.UUID,
    role: UserRole = UserRole.employee,
    expired: bool = False,
) -> str:
    """Generate a JWT access token for testing."""
    if expired:
        exp = datetime.now(timezone.utc) - timedelta(hours=1)
    else:
        exp = datetime.now(timezone.utc) + timedelta(hours=settings.JWT_EXPIRY_HOURS)
    payload = {
        "sub": str(employee_id),
        "role": role.value,
        "type": "access",
        "exp": exp,
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def bearer(employee_id: uuid.UUID, role: UserRole = UserRole.employee) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(employee_id, role)}"}


@pytest.fixture
def auth_headers(test_employee) -> dict[str, str]:
    """Bearer headers for test_employee (role: employee)."""
    return bearer(test_employee["id"])


@pytest.fixture
def manager_headers(test_manager) -> dict[str, str]:
    """Bearer headers for test_manager (role: manager)."""
    return bearer(test_manager["id"], UserRole.manager)


@pytest.fixture
def hr_headers(test_manager) -> dict[str, str]:
    """Bearer headers for test_manager acting as hr_admin."""
    return bearer(test_manager["id"], UserRole.hr_admin)
