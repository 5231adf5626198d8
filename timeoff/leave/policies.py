"""Policy store — which rules apply to an employee and a leave type."""

from __future__ import annotations

import uuid
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from timeoff.common.constants import DEFAULT_WORKING_WEEKDAYS
from timeoff.config import settings
from timeoff.core_hr.models import Employee
from timeoff.leave.models import LeavePolicy
from timeoff.leave.schemas import LeaveTypePolicy, PolicyConfig

HOURS_QUANTUM = Decimal("0.01")


async def policy_for(
    db: AsyncSession,
    employee_id: uuid.UUID,
) -> Optional[LeavePolicy]:
    """The employee's assigned active policy, else the active default one."""
    emp_result = await db.execute(
        select(Employee.policy_id).where(Employee.id == employee_id)
    )
    policy_id = emp_result.scalar()

    if policy_id is not None:
        result = await db.execute(
            select(LeavePolicy).where(
                LeavePolicy.id == policy_id,
                LeavePolicy.is_active.is_(True),
            )
        )
        policy = result.scalars().first()
        if policy is not None:
            return policy

    result = await db.execute(
        select(LeavePolicy)
        .where(
            LeavePolicy.is_default.is_(True),
            LeavePolicy.is_active.is_(True),
        )
        .order_by(LeavePolicy.created_at)
        .limit(1)
    )
    return result.scalars().first()


def parse_config(policy: Optional[LeavePolicy]) -> PolicyConfig:
    if policy is None or not policy.config:
        return PolicyConfig()
    return PolicyConfig.model_validate(policy.config)


def rules_for(
    policy: Optional[LeavePolicy],
    leave_type_code: str,
) -> Optional[LeaveTypePolicy]:
    """Per-type policy block, or None when the policy does not mention it."""
    return parse_config(policy).leave_types.get(leave_type_code)


def working_weekdays_for(policy: Optional[LeavePolicy]) -> frozenset[int]:
    if policy is None or not policy.working_days:
        return DEFAULT_WORKING_WEEKDAYS
    return frozenset(int(d) for d in policy.working_days)


def holiday_region_for(
    policy: Optional[LeavePolicy],
    employee: Optional[Employee],
) -> str:
    """Policy override, then the employee's own region, then the default."""
    if policy is not None and policy.holiday_region:
        return policy.holiday_region
    if employee is not None and employee.region:
        return employee.region
    return settings.DEFAULT_REGION


def seed_allowance(
    type_policy: Optional[LeaveTypePolicy],
    year: int,
    start_date: Optional[date] = None,
) -> Decimal:
    """Opening allowance for a new balance row.

    Employees who joined during ``year`` get the remaining whole months
    (joining month included) when the type accrues pro rata.
    """
    if type_policy is None or not type_policy.enabled:
        return Decimal("0")

    allowance = type_policy.default_allowance_hours
    if (
        type_policy.accrual.pro_rata_first_year
        and start_date is not None
        and start_date.year == year
    ):
        months = 12 - start_date.month + 1
        allowance = (allowance * months / 12).quantize(
            HOURS_QUANTUM, rounding=ROUND_HALF_UP
        )
    return allowance
