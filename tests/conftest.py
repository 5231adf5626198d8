"""Shared test fixtures — async DB, client, auth helpers, factories.

Uses SQLite + aiosqlite for fast isolated tests without PostgreSQL.
"""

from __future__ import annotations

import os

# Set test settings before any other import touches pydantic-settings
os.environ.setdefault("JWT_SECRET", "test-secret-for-ci-do-not-use-in-production")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from timeoff.config import settings
from timeoff.database import Base, get_db
from timeoff.main import create_app

# Import ALL model modules so every table is in Base.metadata
import timeoff.auth.models  # noqa: F401
import timeoff.common.audit  # noqa: F401
import timeoff.core_hr.models  # noqa: F401
import timeoff.holidays.models  # noqa: F401
import timeoff.leave.models  # noqa: F401

from timeoff.auth.models import Role, RoleAssignment, RolePermission
from timeoff.common.constants import PermissionAction, PermissionResource
from timeoff.core_hr.models import Employee
from timeoff.holidays.models import PublicHoliday
from timeoff.leave.models import LeaveBalance, LeavePolicy, LeaveType

# ── SQLite compat: compile PG-specific types ────────────────────────

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


# ── Role / permission seed ──────────────────────────────────────────

OWN = {"own_records_only": True}
REPORTS = {"direct_reports_only": True}
ALL_ACTIONS = list(PermissionAction)

# role → [(resource, action, conditions)]
ROLE_MATRIX: dict[str, list[tuple[PermissionResource, PermissionAction, Optional[dict]]]] = {
    "employee": [
        (PermissionResource.leave_requests, PermissionAction.view, OWN),
        (PermissionResource.leave_requests, PermissionAction.create, OWN),
        (PermissionResource.leave_requests, PermissionAction.edit, OWN),
        (PermissionResource.leave_balances, PermissionAction.view, OWN),
    ],
    "team_lead": [
        (PermissionResource.leave_requests, PermissionAction.view, REPORTS),
        (PermissionResource.leave_requests, PermissionAction.approve, REPORTS),
        (PermissionResource.leave_balances, PermissionAction.view, REPORTS),
    ],
    "manager": [
        (PermissionResource.leave_requests, PermissionAction.view, REPORTS),
        (PermissionResource.leave_requests, PermissionAction.edit, REPORTS),
        (PermissionResource.leave_requests, PermissionAction.delete, REPORTS),
        (PermissionResource.leave_requests, PermissionAction.approve, REPORTS),
        (PermissionResource.leave_balances, PermissionAction.view, REPORTS),
    ],
    "hr_admin": [
        *[(PermissionResource.leave_requests, a, None) for a in ALL_ACTIONS],
        (PermissionResource.leave_balances, PermissionAction.view, None),
        (PermissionResource.leave_balances, PermissionAction.edit, None),
    ],
    "super_admin": [
        (resource, a, None)
        for resource in PermissionResource
        for a in ALL_ACTIONS
    ],
}


async def seed_roles(db: AsyncSession) -> None:
    for role_id, grants in ROLE_MATRIX.items():
        db.add(Role(
            id=role_id,
            name=role_id.replace("_", " ").title(),
            is_system=True,
            is_active=True,
        ))
        for resource, action, conditions in grants:
            db.add(RolePermission(
                id=uuid.uuid4(),
                role_id=role_id,
                resource=resource,
                action=action,
                conditions=conditions,
            ))
    await db.flush()


# ── Model factories ─────────────────────────────────────────────────

def _make_employee(
    *,
    email: Optional[str] = None,
    first_name: str = "Test",
    last_name: str = "User",
    reporting_manager_id: Optional[uuid.UUID] = None,
    region: Optional[str] = "UK",
    policy_id: Optional[uuid.UUID] = None,
    date_of_joining: Optional[date] = date(2020, 1, 6),
) -> dict:
    code = uuid.uuid4().hex[:6].upper()
    return dict(
        id=uuid.uuid4(),
        employee_code=f"EMP-{code}",
        email=email or f"user.{code.lower()}@example.com",
        first_name=first_name,
        last_name=last_name,
        reporting_manager_id=reporting_manager_id,
        region=region,
        policy_id=policy_id,
        date_of_joining=date_of_joining,
        is_active=True,
        created_at=datetime.now(timezone.utc),
        updated_at=datetime.now(timezone.utc),
    )


def _make_leave_type(*, code: str = "annual", name: str = "Annual Leave") -> dict:
    return dict(
        id=uuid.uuid4(),
        code=code,
        name=name,
        sort_order=0,
        is_active=True,
        created_at=datetime.now(timezone.utc),
    )


def _policy_config(**leave_types: dict[str, Any]) -> dict:
    """``_policy_config(annual={"default_allowance_hours": 160})``"""
    return {"leave_types": leave_types}


def _make_policy(
    *,
    config: Optional[dict] = None,
    is_default: bool = True,
    working_days: Optional[list[int]] = None,
    holiday_region: Optional[str] = None,
) -> dict:
    return dict(
        id=uuid.uuid4(),
        name="Standard",
        working_days=working_days or [1, 2, 3, 4, 5],
        holiday_region=holiday_region,
        config=config if config is not None else _policy_config(
            annual={"default_allowance_hours": 160},
        ),
        is_default=is_default,
        is_active=True,
        created_at=datetime.now(timezone.utc),
        updated_at=datetime.now(timezone.utc),
    )


async def add_employee(
    db: AsyncSession,
    *roles: str,
    **overrides: Any,
) -> dict:
    """Insert an employee holding ``roles`` (default: employee)."""
    data = _make_employee(**overrides)
    db.add(Employee(**data))
    for role_id in roles or ("employee",):
        db.add(RoleAssignment(id=uuid.uuid4(), employee_id=data["id"], role_id=role_id))
    await db.flush()
    return data


async def add_leave_type(db: AsyncSession, **overrides: Any) -> dict:
    data = _make_leave_type(**overrides)
    db.add(LeaveType(**data))
    await db.flush()
    return data


async def add_policy(db: AsyncSession, **overrides: Any) -> dict:
    data = _make_policy(**overrides)
    db.add(LeavePolicy(**data))
    await db.flush()
    return data


async def add_holiday(
    db: AsyncSession,
    day: date,
    *,
    region: str = "UK",
    name: str = "Bank Holiday",
) -> None:
    db.add(PublicHoliday(
        id=uuid.uuid4(), name=name, date=day, region=region, year=day.year,
    ))
    await db.flush()


async def set_balance(
    db: AsyncSession,
    employee_id: uuid.UUID,
    leave_type_id: uuid.UUID,
    year: int,
    **counters: Any,
) -> None:
    """Insert a balance row with explicit counters (hours as ints/Decimals)."""
    values = {
        "allowance": Decimal("0"),
        "used": Decimal("0"),
        "scheduled": Decimal("0"),
        "carried_over": Decimal("0"),
        "adjustment": Decimal("0"),
    }
    values.update({k: Decimal(str(v)) for k, v in counters.items()})
    db.add(LeaveBalance(
        id=uuid.uuid4(),
        employee_id=employee_id,
        leave_type_id=leave_type_id,
        year=year,
        **values,
    ))
    await db.flush()


async def read_balance(
    db: AsyncSession,
    employee_id: uuid.UUID,
    leave_type_id: uuid.UUID,
    year: int,
) -> LeaveBalance:
    """Fresh read of a balance row, bypassing the identity map."""
    result = await db.execute(
        select(LeaveBalance)
        .where(
            LeaveBalance.employee_id == employee_id,
            LeaveBalance.leave_type_id == leave_type_id,
            LeaveBalance.year == year,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalars().one()


# ── Common world ────────────────────────────────────────────────────

@pytest.fixture
async def org(db) -> dict:
    """Roles, a default policy, an annual leave type and a small team.

    manager ── alice, bob; hr (hr_admin); outsider (employee, no manager).
    Committed so that service failures can be rolled back without losing it.
    """
    await seed_roles(db)
    policy = await add_policy(db)
    annual = await add_leave_type(db)
    manager = await add_employee(db, "employee", "manager", first_name="Mona")
    alice = await add_employee(
        db, first_name="Alice", reporting_manager_id=manager["id"],
    )
    bob = await add_employee(
        db, first_name="Bob", reporting_manager_id=manager["id"],
    )
    hr = await add_employee(db, "employee", "hr_admin", first_name="Hana")
    outsider = await add_employee(db, first_name="Otto")
    await db.commit()
    return dict(
        policy=policy,
        annual=annual,
        manager=manager,
        alice=alice,
        bob=bob,
        hr=hr,
        outsider=outsider,
    )


# ── Auth helpers ────────────────────────────────────────────────────

def create_access_token(
    employee_id: uuid.UUID,
    expired: bool = False,
    token_type: str = "access",
) -> str:
    """Generate a JWT access token for testing."""
    if expired:
        exp = datetime.now(timezone.utc) - timedelta(hours=1)
    else:
        exp = datetime.now(timezone.utc) + timedelta(hours=settings.JWT_EXPIRY_HOURS)
    payload = {
        "sub": str(employee_id),
        "type": token_type,
        "exp": exp,
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def auth_headers(employee_id: uuid.UUID) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(employee_id)}"}
