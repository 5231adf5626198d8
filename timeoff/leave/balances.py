"""Balance ledger — per (employee, leave type, year) hour accounting.

Every mutation of a balance row goes through :func:`locked_balance`, which
locks the row inside the caller's transaction (``get_db`` or an explicit
``async with session.begin()``) and flushes the change on a clean exit.
Any exception raised inside the block propagates and the caller's unit of
work rolls back, releasing the lock with it.

Counters:
  - ``used``       hours of approved requests
  - ``scheduled``  hours of pending requests
  - ``remaining``  allowance + carried_over + adjustment - used - scheduled
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import AsyncIterator, Optional

from sqlalchemy import select, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from timeoff.auth.permissions import can_access_record, check_permission
from timeoff.common.audit import record_audit
from timeoff.common.constants import PermissionAction, PermissionResource
from timeoff.common.exceptions import (
    ForbiddenException,
    NotFoundException,
    TransientStoreError,
    UnauthorizedException,
    ValidationException,
)
from timeoff.config import settings
from timeoff.core_hr.models import Employee
from timeoff.leave.models import ZERO_HOURS, LeaveBalance, LeaveType
from timeoff.leave.policies import parse_config, policy_for, rules_for, seed_allowance
from timeoff.leave.schemas import LeaveBalanceOut

logger = logging.getLogger(__name__)

# PostgreSQL SQLSTATEs worth a retry: lock_not_available, deadlock_detected
_TRANSIENT_SQLSTATES = {"55P03", "40P01"}

_UPSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


# ── Derived quantities ──────────────────────────────────────────────

def remaining(balance: LeaveBalance) -> Decimal:
    """Hours still bookable. May go negative; never clamped."""
    return (
        balance.allowance
        + balance.carried_over
        + balance.adjustment
        - balance.used
        - balance.scheduled
    )


# The affordability check reads the same quantity
available = remaining


def is_unlimited(balance: LeaveBalance) -> bool:
    return balance.allowance == 0


def to_out(balance: LeaveBalance, leave_type: Optional[LeaveType] = None) -> LeaveBalanceOut:
    out = LeaveBalanceOut.model_validate(balance)
    out.remaining = remaining(balance)
    out.unlimited = is_unlimited(balance)
    if leave_type is not None:
        out.leave_type_code = leave_type.code
        out.leave_type_name = leave_type.name
    return out


# ── Store helpers ───────────────────────────────────────────────────

def _is_transient(exc: DBAPIError) -> bool:
    if isinstance(exc, IntegrityError):
        return False
    if isinstance(exc, OperationalError) or exc.connection_invalidated:
        return True
    return getattr(exc.orig, "pgcode", None) in _TRANSIENT_SQLSTATES


async def guarded_execute(db: AsyncSession, statement):
    """Execute, turning lock timeouts and lost connections into TransientStoreError."""
    try:
        return await db.execute(statement)
    except DBAPIError as exc:
        if _is_transient(exc):
            logger.warning("Balance store unavailable: %s", exc.orig)
            raise TransientStoreError() from exc
        raise


async def _flush(db: AsyncSession) -> None:
    try:
        await db.flush()
    except DBAPIError as exc:
        if _is_transient(exc):
            logger.warning("Balance flush failed: %s", exc.orig)
            raise TransientStoreError() from exc
        raise


def _balance_query(employee_id: uuid.UUID, leave_type_id: uuid.UUID, year: int):
    return select(LeaveBalance).where(
        LeaveBalance.employee_id == employee_id,
        LeaveBalance.leave_type_id == leave_type_id,
        LeaveBalance.year == year,
    )


async def _seed_for(
    db: AsyncSession,
    employee_id: uuid.UUID,
    leave_type_id: uuid.UUID,
    year: int,
) -> Decimal:
    """Opening allowance the employee's policy grants for this type/year."""
    lt_result = await db.execute(
        select(LeaveType.code).where(LeaveType.id == leave_type_id)
    )
    code = lt_result.scalar()
    if code is None:
        return ZERO_HOURS

    policy = await policy_for(db, employee_id)
    emp_result = await db.execute(
        select(Employee.date_of_joining).where(Employee.id == employee_id)
    )
    return seed_allowance(rules_for(policy, code), year, emp_result.scalar())


async def _insert_if_absent(
    db: AsyncSession,
    employee_id: uuid.UUID,
    leave_type_id: uuid.UUID,
    year: int,
) -> None:
    """Create the row with a seeded allowance and zero counters.

    Concurrent inserts for the same key are absorbed by ON CONFLICT DO
    NOTHING; whichever insert lands first wins and everyone else reads it.
    """
    dialect = db.get_bind().dialect.name
    upsert = _UPSERTS.get(dialect)
    if upsert is None:
        raise RuntimeError(f"Balance upsert is not supported on {dialect!r}")

    allowance = await _seed_for(db, employee_id, leave_type_id, year)
    stmt = (
        upsert(LeaveBalance)
        .values(
            id=uuid.uuid4(),
            employee_id=employee_id,
            leave_type_id=leave_type_id,
            year=year,
            allowance=allowance,
            used=ZERO_HOURS,
            scheduled=ZERO_HOURS,
            carried_over=ZERO_HOURS,
            adjustment=ZERO_HOURS,
            updated_at=datetime.now(timezone.utc),
        )
        .on_conflict_do_nothing(
            index_elements=["employee_id", "leave_type_id", "year"]
        )
    )
    await guarded_execute(db, stmt)


# ═════════════════════════════════════════════════════════════════════
# Reads
# ═════════════════════════════════════════════════════════════════════


async def get_or_init(
    db: AsyncSession,
    employee_id: uuid.UUID,
    leave_type_id: uuid.UUID,
    year: int,
) -> LeaveBalance:
    """Non-locking read; provisions the row when it does not exist yet."""
    result = await guarded_execute(db, _balance_query(employee_id, leave_type_id, year))
    balance = result.scalars().first()
    if balance is not None:
        return balance

    await _insert_if_absent(db, employee_id, leave_type_id, year)
    result = await guarded_execute(db, _balance_query(employee_id, leave_type_id, year))
    return result.scalars().one()


async def ensure_balances(
    db: AsyncSession,
    employee_id: uuid.UUID,
    year: int,
) -> list[LeaveBalance]:
    """Provision a row for every active leave type the policy enables."""
    config = parse_config(await policy_for(db, employee_id))
    lt_result = await db.execute(
        select(LeaveType)
        .where(LeaveType.is_active.is_(True))
        .order_by(LeaveType.sort_order, LeaveType.name)
    )
    balances: list[LeaveBalance] = []
    for leave_type in lt_result.scalars().all():
        type_policy = config.leave_types.get(leave_type.code)
        if type_policy is None or not type_policy.enabled:
            continue
        balances.append(await get_or_init(db, employee_id, leave_type.id, year))
    return balances


async def get_balances(
    db: AsyncSession,
    employee_id: uuid.UUID,
    year: int,
) -> list[LeaveBalanceOut]:
    """All balances of an employee for a year, with remaining hours."""
    await ensure_balances(db, employee_id, year)

    result = await db.execute(
        select(LeaveBalance)
        .join(LeaveType, LeaveType.id == LeaveBalance.leave_type_id)
        .where(
            LeaveBalance.employee_id == employee_id,
            LeaveBalance.year == year,
        )
        .options(selectinload(LeaveBalance.leave_type))
        .order_by(LeaveType.sort_order, LeaveType.name)
    )
    return [to_out(b, b.leave_type) for b in result.scalars().all()]


# ═════════════════════════════════════════════════════════════════════
# Locking
# ═════════════════════════════════════════════════════════════════════


async def lock_for_update(
    db: AsyncSession,
    employee_id: uuid.UUID,
    leave_type_id: uuid.UUID,
    year: int,
) -> LeaveBalance:
    """Lock the balance row for the rest of the caller's transaction.

    The row is created first when absent. ``populate_existing`` makes sure
    the returned object carries the values read under the lock, not a stale
    copy from the identity map.
    """
    if db.get_bind().dialect.name == "postgresql":
        await guarded_execute(
            db, text(f"SET LOCAL lock_timeout = {int(settings.LOCK_TIMEOUT_MS)}")
        )

    locked = (
        _balance_query(employee_id, leave_type_id, year)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    result = await guarded_execute(db, locked)
    balance = result.scalars().first()
    if balance is None:
        await _insert_if_absent(db, employee_id, leave_type_id, year)
        result = await guarded_execute(db, locked)
        balance = result.scalars().one()
    return balance


@asynccontextmanager
async def locked_balance(
    db: AsyncSession,
    employee_id: uuid.UUID,
    leave_type_id: uuid.UUID,
    year: int,
) -> AsyncIterator[LeaveBalance]:
    """``async with locked_balance(...) as balance:`` mutate, then flush."""
    balance = await lock_for_update(db, employee_id, leave_type_id, year)
    yield balance
    balance.updated_at = datetime.now(timezone.utc)
    await _flush(db)


# ═════════════════════════════════════════════════════════════════════
# Administrative mutations
# ═════════════════════════════════════════════════════════════════════


async def adjust_balance(
    db: AsyncSession,
    principal_id: Optional[uuid.UUID],
    employee_id: uuid.UUID,
    leave_type_id: uuid.UUID,
    hours: Decimal,
    reason: str,
    year: Optional[int] = None,
) -> LeaveBalanceOut:
    """Add a signed manual correction to ``adjustment``."""
    if principal_id is None:
        raise UnauthorizedException()
    if not await can_access_record(
        db, principal_id,
        PermissionResource.leave_balances, PermissionAction.edit,
        employee_id,
    ):
        logger.warning(
            "Balance adjustment denied: principal=%s employee=%s",
            principal_id, employee_id,
        )
        raise ForbiddenException("You cannot adjust this employee's balance.")

    leave_type = await db.get(LeaveType, leave_type_id)
    if leave_type is None:
        raise NotFoundException("LeaveType", str(leave_type_id))

    year = year or datetime.now(timezone.utc).year
    async with locked_balance(db, employee_id, leave_type_id, year) as balance:
        before = balance.adjustment
        balance.adjustment = before + hours

    await record_audit(
        db,
        action="adjust",
        entity_type="leave_balance",
        entity_id=balance.id,
        actor_id=principal_id,
        changes={
            "adjustment": {"old": str(before), "new": str(balance.adjustment)},
            "hours": str(hours),
            "reason": reason,
        },
    )
    logger.info(
        "Balance adjusted: employee=%s type=%s year=%s hours=%s by=%s",
        employee_id, leave_type.code, year, hours, principal_id,
    )
    return to_out(balance, leave_type)


async def carry_over(
    db: AsyncSession,
    principal_id: Optional[uuid.UUID],
    employee_id: uuid.UUID,
    leave_type_id: uuid.UUID,
    from_year: int,
) -> LeaveBalanceOut:
    """Move unused hours of ``from_year`` into next year's ``carried_over``.

    The amount is ``min(max(remaining, 0), max_hours)``. Re-running it
    overwrites the previous carry rather than adding to it.
    """
    if principal_id is None:
        raise UnauthorizedException()
    perm = await check_permission(
        db, principal_id, PermissionResource.leave_balances, PermissionAction.edit,
    )
    if not perm.unconditional:
        raise ForbiddenException("Carry-over requires unrestricted balance access.")

    leave_type = await db.get(LeaveType, leave_type_id)
    if leave_type is None:
        raise NotFoundException("LeaveType", str(leave_type_id))

    type_policy = rules_for(await policy_for(db, employee_id), leave_type.code)
    if type_policy is None or not type_policy.carry_over.enabled:
        raise ValidationException(
            {"leave_type_id": [f"{leave_type.name} does not carry over."]}
        )

    # Lock in ascending year order so two carry runs cannot deadlock
    async with locked_balance(db, employee_id, leave_type_id, from_year) as source:
        unused = max(remaining(source), ZERO_HOURS)
    carried = min(unused, type_policy.carry_over.max_hours)

    async with locked_balance(db, employee_id, leave_type_id, from_year + 1) as target:
        before = target.carried_over
        target.carried_over = carried

    await record_audit(
        db,
        action="carry_over",
        entity_type="leave_balance",
        entity_id=target.id,
        actor_id=principal_id,
        changes={
            "carried_over": {"old": str(before), "new": str(carried)},
            "from_year": from_year,
        },
    )
    logger.info(
        "Carried over %sh of %s from %s for employee=%s",
        carried, leave_type.code, from_year, employee_id,
    )
    return to_out(target, leave_type)
