"""Leave lifecycle test suite — create, approve/decline, cancel, delete,
policy rules, ledger bookkeeping and read views.

Tests drive ``LeaveService`` directly against SQLite via the shared
conftest.py fixtures. Dates are in March 2026; 2026-03-02 is a Monday.
"""

from __future__ import annotations

import uuid
from datetime import date, timedelta
from decimal import Decimal
from typing import Optional

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from timeoff.common.audit import AuditTrail
from timeoff.common.constants import LeaveStatus
from timeoff.common.exceptions import (
    ConflictError,
    ForbiddenException,
    InsufficientBalanceException,
    InvalidStateException,
    NotFoundException,
    UnauthorizedException,
    ValidationException,
)
from timeoff.leave import balances
from timeoff.leave.models import LeaveRequest, LeaveType
from timeoff.leave.schemas import LeaveRequestCreate
from timeoff.leave.service import LeaveService
from tests.conftest import (
    _policy_config,
    add_employee,
    add_holiday,
    add_leave_type,
    add_policy,
    read_balance,
    seed_roles,
    set_balance,
)

MON = date(2026, 3, 2)
WED = date(2026, 3, 4)
FRI = date(2026, 3, 6)
SAT = date(2026, 3, 7)
SUN = date(2026, 3, 8)
NEXT_MON = date(2026, 3, 9)
NEXT_WED = date(2026, 3, 11)
YEAR = 2026


# ═════════════════════════════════════════════════════════════════════
# Helpers
# ═════════════════════════════════════════════════════════════════════


def _req(
    leave_type_id: uuid.UUID,
    start: date = MON,
    end: date = WED,
    *,
    half_day: bool = False,
    note: Optional[str] = None,
) -> LeaveRequestCreate:
    return LeaveRequestCreate(
        leave_type_id=leave_type_id,
        start_date=start,
        end_date=end,
        half_day=half_day,
        note=note,
    )


async def _create(db: AsyncSession, who: dict, leave_type: dict, start=MON, end=WED, **kw):
    return await LeaveService.create_leave_request(
        db, who["id"], _req(leave_type["id"], start, end, **kw),
    )


async def _assert_ledger_matches(
    db: AsyncSession,
    employee_id: uuid.UUID,
    leave_type_id: uuid.UUID,
    year: int = YEAR,
) -> None:
    """used / scheduled equal the hours of approved / pending requests."""
    bal = await read_balance(db, employee_id, leave_type_id, year)
    sums = {}
    for status in (LeaveStatus.approved, LeaveStatus.pending):
        result = await db.execute(
            select(func.coalesce(func.sum(LeaveRequest.total_hours), 0)).where(
                LeaveRequest.employee_id == employee_id,
                LeaveRequest.leave_type_id == leave_type_id,
                LeaveRequest.status == status,
            )
        )
        sums[status] = Decimal(str(result.scalar_one()))
    assert bal.used == sums[LeaveStatus.approved]
    assert bal.scheduled == sums[LeaveStatus.pending]
    assert balances.remaining(bal) == (
        bal.allowance + bal.carried_over + bal.adjustment - bal.used - bal.scheduled
    )


def _next_weekday(after: date) -> date:
    day = after + timedelta(days=1)
    while day.isoweekday() > 5:
        day += timedelta(days=1)
    return day


# ═════════════════════════════════════════════════════════════════════
# 1. Create
# ═════════════════════════════════════════════════════════════════════


class TestCreateLeaveRequest:

    async def test_pending_request_schedules_hours(self, db: AsyncSession, org: dict):
        """Mon–Wed, full day → 24h pending; scheduled 24, remaining 136."""
        alice, annual = org["alice"], org["annual"]

        out = await _create(db, alice, annual, note="Family visit")

        assert out.status == LeaveStatus.pending
        assert out.total_hours == Decimal("24")
        assert out.employee_id == alice["id"]
        assert out.reviewer_id is None
        assert out.auto_approved is False
        assert out.note == "Family visit"
        assert out.leave_type_brief.code == "annual"

        bal = await read_balance(db, alice["id"], annual["id"], YEAR)
        assert bal.allowance == Decimal("160")
        assert bal.scheduled == Decimal("24")
        assert bal.used == Decimal("0")
        assert balances.remaining(bal) == Decimal("136")

    async def test_unconditional_approver_is_auto_approved(
        self, db: AsyncSession, org: dict,
    ):
        """hr_admin holds unconditional approve → approved on the spot."""
        hr, annual = org["hr"], org["annual"]

        out = await _create(db, hr, annual)

        assert out.status == LeaveStatus.approved
        assert out.auto_approved is True
        assert out.reviewer_id == hr["id"]
        assert out.reviewed_at is not None

        bal = await read_balance(db, hr["id"], annual["id"], YEAR)
        assert bal.used == Decimal("24")
        assert bal.scheduled == Decimal("0")
        assert balances.remaining(bal) == Decimal("136")

    async def test_conditional_approver_is_not_auto_approved(
        self, db: AsyncSession, org: dict,
    ):
        out = await _create(db, org["manager"], org["annual"])
        assert out.status == LeaveStatus.pending

    async def test_overlap_rejected(self, db: AsyncSession, org: dict):
        alice, annual = org["alice"], org["annual"]
        await _create(db, alice, annual, date(2026, 3, 15), date(2026, 3, 17))

        with pytest.raises(ConflictError) as exc_info:
            await _create(db, alice, annual, date(2026, 3, 16), date(2026, 3, 18))
        assert exc_info.value.status_code == 409

        bal = await read_balance(db, alice["id"], annual["id"], YEAR)
        assert bal.scheduled == Decimal("16")

    async def test_overlap_is_per_employee(self, db: AsyncSession, org: dict):
        await _create(db, org["alice"], org["annual"])
        out = await _create(db, org["bob"], org["annual"])
        assert out.status == LeaveStatus.pending

    async def test_adjacent_ranges_do_not_overlap(self, db: AsyncSession, org: dict):
        await _create(db, org["alice"], org["annual"], MON, WED)
        out = await _create(db, org["alice"], org["annual"], date(2026, 3, 5), FRI)
        assert out.total_hours == Decimal("16")

    async def test_insufficient_balance(self, db: AsyncSession, org: dict):
        alice, annual = org["alice"], org["annual"]
        await set_balance(db, alice["id"], annual["id"], YEAR, allowance=16, used=16)

        with pytest.raises(InsufficientBalanceException) as exc_info:
            await _create(db, alice, annual, MON, FRI)
        assert exc_info.value.error_type == "insufficient-balance"

        bal = await read_balance(db, alice["id"], annual["id"], YEAR)
        assert bal.used == Decimal("16")
        assert bal.scheduled == Decimal("0")
        count = await db.execute(select(func.count()).select_from(LeaveRequest))
        assert count.scalar_one() == 0

    async def test_exact_fit_is_allowed(self, db: AsyncSession, org: dict):
        alice, annual = org["alice"], org["annual"]
        await set_balance(db, alice["id"], annual["id"], YEAR, allowance=24)

        out = await _create(db, alice, annual)

        assert out.total_hours == Decimal("24")
        bal = await read_balance(db, alice["id"], annual["id"], YEAR)
        assert balances.remaining(bal) == Decimal("0")

    async def test_carry_and_adjustment_count_towards_available(
        self, db: AsyncSession, org: dict,
    ):
        alice, annual = org["alice"], org["annual"]
        await set_balance(
            db, alice["id"], annual["id"], YEAR,
            allowance=8, carried_over=8, adjustment=8,
        )
        out = await _create(db, alice, annual)
        assert out.status == LeaveStatus.pending

    async def test_unlimited_type_skips_balance_check(self, db: AsyncSession, org: dict):
        alice = org["alice"]
        unpaid = await add_leave_type(db, code="unpaid", name="Unpaid Leave")

        out = await _create(db, alice, unpaid, MON, date(2026, 3, 31))

        assert out.total_hours == Decimal("176")
        bal = await read_balance(db, alice["id"], unpaid["id"], YEAR)
        assert bal.allowance == Decimal("0")
        assert bal.scheduled == Decimal("176")

    async def test_half_day(self, db: AsyncSession, org: dict):
        out = await _create(db, org["alice"], org["annual"], half_day=True)
        assert out.half_day is True
        assert out.total_hours == Decimal("12")

    async def test_weekends_and_holidays_not_charged(self, db: AsyncSession, org: dict):
        await add_holiday(db, WED)
        out = await _create(db, org["alice"], org["annual"], MON, SUN)
        assert out.total_hours == Decimal("32")

    async def test_zero_working_days_rejected(self, db: AsyncSession, org: dict):
        with pytest.raises(ValidationException) as exc_info:
            await _create(db, org["alice"], org["annual"], SAT, SUN)
        assert "dates" in exc_info.value.errors

    async def test_holiday_only_range_rejected(self, db: AsyncSession, org: dict):
        await add_holiday(db, MON)
        with pytest.raises(ValidationException):
            await _create(db, org["alice"], org["annual"], MON, MON)

    async def test_other_region_holiday_is_charged(self, db: AsyncSession, org: dict):
        await add_holiday(db, WED, region="US")
        out = await _create(db, org["alice"], org["annual"])
        assert out.total_hours == Decimal("24")

    async def test_unknown_leave_type(self, db: AsyncSession, org: dict):
        with pytest.raises(ValidationException) as exc_info:
            await LeaveService.create_leave_request(
                db, org["alice"]["id"], _req(uuid.uuid4()),
            )
        assert "leave_type_id" in exc_info.value.errors

    async def test_inactive_leave_type(self, db: AsyncSession, org: dict):
        lt = await db.get(LeaveType, org["annual"]["id"])
        lt.is_active = False
        await db.flush()
        with pytest.raises(ValidationException):
            await _create(db, org["alice"], org["annual"])

    async def test_requires_principal(self, db: AsyncSession, org: dict):
        with pytest.raises(UnauthorizedException):
            await LeaveService.create_leave_request(db, None, _req(org["annual"]["id"]))

    async def test_requires_create_permission(self, db: AsyncSession, org: dict):
        lead = await add_employee(db, "team_lead")
        with pytest.raises(ForbiddenException):
            await _create(db, lead, org["annual"])

    async def test_audit_entry_written(self, db: AsyncSession, org: dict):
        out = await _create(db, org["alice"], org["annual"])

        result = await db.execute(
            select(AuditTrail).where(AuditTrail.entity_id == out.id)
        )
        entry = result.scalars().one()
        assert entry.action == "create"
        assert entry.actor_id == org["alice"]["id"]
        assert entry.changes["total_hours"] == "24.00"


# ═════════════════════════════════════════════════════════════════════
# 2. Policy rules
# ═════════════════════════════════════════════════════════════════════


async def _policy_world(db: AsyncSession, **annual_policy) -> tuple[dict, dict]:
    await seed_roles(db)
    annual_policy.setdefault("default_allowance_hours", 160)
    await add_policy(db, config=_policy_config(annual=annual_policy))
    emp = await add_employee(db)
    annual = await add_leave_type(db)
    return emp, annual


class TestPolicyRules:

    async def test_min_notice(self, db: AsyncSession):
        emp, annual = await _policy_world(db, rules={"min_notice_hours": 168})
        soon = _next_weekday(date.today())

        with pytest.raises(ValidationException) as exc_info:
            await _create(db, emp, annual, soon, soon)
        assert "start_date" in exc_info.value.errors

    async def test_min_notice_satisfied(self, db: AsyncSession):
        emp, annual = await _policy_world(db, rules={"min_notice_hours": 24})
        later = _next_weekday(date.today() + timedelta(days=14))

        out = await _create(db, emp, annual, later, later)
        assert out.status == LeaveStatus.pending

    async def test_max_consecutive_hours(self, db: AsyncSession):
        emp, annual = await _policy_world(db, rules={"max_consecutive_hours": 16})

        with pytest.raises(ValidationException):
            await _create(db, emp, annual, MON, WED)
        out = await _create(db, emp, annual, MON, date(2026, 3, 3))
        assert out.total_hours == Decimal("16")

    async def test_auto_approve_threshold(self, db: AsyncSession):
        emp, annual = await _policy_world(db, rules={"auto_approve_up_to_hours": 8})

        short = await _create(db, emp, annual, MON, MON)
        long = await _create(db, emp, annual, NEXT_MON, NEXT_WED)

        assert short.status == LeaveStatus.approved
        assert short.auto_approved is True
        assert short.reviewer_id is None
        assert long.status == LeaveStatus.pending
        await _assert_ledger_matches(db, emp["id"], annual["id"])

    async def test_approval_not_required(self, db: AsyncSession):
        emp, annual = await _policy_world(db, rules={"requires_approval": False})

        out = await _create(db, emp, annual)

        assert out.status == LeaveStatus.approved
        bal = await read_balance(db, emp["id"], annual["id"], YEAR)
        assert bal.used == Decimal("24")

    async def test_document_required(self, db: AsyncSession):
        emp, annual = await _policy_world(
            db, rules={"requires_document_after_hours": 16},
        )
        short = await _create(db, emp, annual, MON, MON)
        long = await _create(db, emp, annual, NEXT_MON, NEXT_WED)

        assert short.document_required is False
        assert long.document_required is True

    async def test_disabled_type(self, db: AsyncSession):
        emp, annual = await _policy_world(db, enabled=False)
        with pytest.raises(ValidationException):
            await _create(db, emp, annual)

    async def test_policy_working_week(self, db: AsyncSession):
        await seed_roles(db)
        await add_policy(
            db,
            working_days=[7, 1, 2, 3, 4],
            config=_policy_config(annual={"default_allowance_hours": 160}),
        )
        emp = await add_employee(db)
        annual = await add_leave_type(db)

        out = await _create(db, emp, annual, FRI, SUN)

        # Friday off, Saturday off, Sunday working
        assert out.total_hours == Decimal("8")

    async def test_policy_holiday_region(self, db: AsyncSession):
        await seed_roles(db)
        await add_policy(
            db,
            holiday_region="US",
            config=_policy_config(annual={"default_allowance_hours": 160}),
        )
        emp = await add_employee(db, region="UK")
        annual = await add_leave_type(db)
        await add_holiday(db, MON, region="US")
        await add_holiday(db, WED, region="UK")

        out = await _create(db, emp, annual)

        assert out.total_hours == Decimal("16")


# ═════════════════════════════════════════════════════════════════════
# 3. Approve / Decline
# ═════════════════════════════════════════════════════════════════════


class TestReview:

    async def test_manager_approves_report(self, db: AsyncSession, org: dict):
        alice, annual, mgr = org["alice"], org["annual"], org["manager"]
        req = await _create(db, alice, annual)

        out = await LeaveService.approve_leave_request(db, req.id, mgr["id"], note="Enjoy")

        assert out.status == LeaveStatus.approved
        assert out.reviewer_id == mgr["id"]
        assert out.reviewer_note == "Enjoy"
        assert out.reviewed_at is not None
        bal = await read_balance(db, alice["id"], annual["id"], YEAR)
        assert bal.used == Decimal("24")
        assert bal.scheduled == Decimal("0")

    async def test_hr_approves_anyone(self, db: AsyncSession, org: dict):
        req = await _create(db, org["outsider"], org["annual"])
        out = await LeaveService.approve_leave_request(db, req.id, org["hr"]["id"])
        assert out.status == LeaveStatus.approved

    async def test_non_manager_forbidden(self, db: AsyncSession, org: dict):
        req = await _create(db, org["alice"], org["annual"])
        for who in ("bob", "outsider"):
            with pytest.raises(ForbiddenException):
                await LeaveService.approve_leave_request(db, req.id, org[who]["id"])

    async def test_reporting_manager_without_approve_grant_may_review(
        self, db: AsyncSession, org: dict,
    ):
        """Reviewer eligibility follows the reporting line, not the grant."""
        lead = await add_employee(db, first_name="Lena")
        report = await add_employee(
            db, first_name="Rita", reporting_manager_id=lead["id"],
        )
        req = await _create(db, report, org["annual"])

        out = await LeaveService.approve_leave_request(db, req.id, lead["id"])

        assert out.status == LeaveStatus.approved
        assert out.reviewer_id == lead["id"]

    async def test_owner_cannot_approve_self(self, db: AsyncSession, org: dict):
        req = await _create(db, org["alice"], org["annual"])
        with pytest.raises(ForbiddenException):
            await LeaveService.approve_leave_request(db, req.id, org["alice"]["id"])

    async def test_approve_twice_is_invalid_state(self, db: AsyncSession, org: dict):
        alice, annual, mgr = org["alice"], org["annual"], org["manager"]
        req = await _create(db, alice, annual)
        await LeaveService.approve_leave_request(db, req.id, mgr["id"])

        with pytest.raises(InvalidStateException):
            await LeaveService.approve_leave_request(db, req.id, mgr["id"])

        bal = await read_balance(db, alice["id"], annual["id"], YEAR)
        assert bal.used == Decimal("24")
        assert bal.scheduled == Decimal("0")

    async def test_decline_releases_hours(self, db: AsyncSession, org: dict):
        alice, annual, mgr = org["alice"], org["annual"], org["manager"]
        req = await _create(db, alice, annual)

        out = await LeaveService.decline_leave_request(db, req.id, mgr["id"], note="Busy week")

        assert out.status == LeaveStatus.declined
        assert out.reviewer_note == "Busy week"
        bal = await read_balance(db, alice["id"], annual["id"], YEAR)
        assert bal.used == Decimal("0")
        assert bal.scheduled == Decimal("0")

    async def test_decline_twice_is_invalid_state(self, db: AsyncSession, org: dict):
        alice, annual, mgr = org["alice"], org["annual"], org["manager"]
        req = await _create(db, alice, annual)
        await LeaveService.decline_leave_request(db, req.id, mgr["id"])

        with pytest.raises(InvalidStateException):
            await LeaveService.decline_leave_request(db, req.id, mgr["id"])
        with pytest.raises(InvalidStateException):
            await LeaveService.approve_leave_request(db, req.id, mgr["id"])

        await _assert_ledger_matches(db, alice["id"], annual["id"])

    async def test_missing_request(self, db: AsyncSession, org: dict):
        with pytest.raises(NotFoundException):
            await LeaveService.approve_leave_request(db, uuid.uuid4(), org["hr"]["id"])

    async def test_state_checked_before_permission(self, db: AsyncSession, org: dict):
        req = await _create(db, org["hr"], org["annual"])
        # auto-approved; an unrelated employee gets the state error first
        with pytest.raises(InvalidStateException):
            await LeaveService.decline_leave_request(db, req.id, org["bob"]["id"])

    async def test_requires_principal(self, db: AsyncSession, org: dict):
        req = await _create(db, org["alice"], org["annual"])
        with pytest.raises(UnauthorizedException):
            await LeaveService.approve_leave_request(db, req.id, None)

    async def test_declined_range_can_be_requested_again(
        self, db: AsyncSession, org: dict,
    ):
        alice, annual = org["alice"], org["annual"]
        req = await _create(db, alice, annual)
        await LeaveService.decline_leave_request(db, req.id, org["manager"]["id"])

        again = await _create(db, alice, annual)

        assert again.status == LeaveStatus.pending
        await _assert_ledger_matches(db, alice["id"], annual["id"])


# ═════════════════════════════════════════════════════════════════════
# 4. Cancel
# ═════════════════════════════════════════════════════════════════════


class TestCancel:

    async def test_owner_cancels_pending(self, db: AsyncSession, org: dict):
        alice, annual = org["alice"], org["annual"]
        req = await _create(db, alice, annual)

        out = await LeaveService.cancel_leave_request(db, req.id, alice["id"], note="Plans changed")

        assert out.status == LeaveStatus.cancelled
        assert out.cancelled_at is not None
        bal = await read_balance(db, alice["id"], annual["id"], YEAR)
        assert bal.scheduled == Decimal("0")

    async def test_manager_cancels_report(self, db: AsyncSession, org: dict):
        req = await _create(db, org["alice"], org["annual"])
        out = await LeaveService.cancel_leave_request(db, req.id, org["manager"]["id"])
        assert out.status == LeaveStatus.cancelled

    async def test_other_employee_forbidden(self, db: AsyncSession, org: dict):
        req = await _create(db, org["alice"], org["annual"])
        with pytest.raises(ForbiddenException):
            await LeaveService.cancel_leave_request(db, req.id, org["bob"]["id"])

    async def test_only_pending_can_be_cancelled(self, db: AsyncSession, org: dict):
        req = await _create(db, org["hr"], org["annual"])
        with pytest.raises(InvalidStateException):
            await LeaveService.cancel_leave_request(db, req.id, org["hr"]["id"])

    async def test_cancelled_range_is_free_again(self, db: AsyncSession, org: dict):
        alice, annual = org["alice"], org["annual"]
        req = await _create(db, alice, annual)
        await LeaveService.cancel_leave_request(db, req.id, alice["id"])

        await _create(db, alice, annual)

        await _assert_ledger_matches(db, alice["id"], annual["id"])


# ═════════════════════════════════════════════════════════════════════
# 5. Delete
# ═════════════════════════════════════════════════════════════════════


class TestDelete:

    async def test_hr_deletes_approved(self, db: AsyncSession, org: dict):
        """Approved 24h deleted by HR → used back to 0."""
        alice, annual = org["alice"], org["annual"]
        req = await _create(db, alice, annual)
        await LeaveService.approve_leave_request(db, req.id, org["manager"]["id"])

        snapshot = await LeaveService.delete_leave_request(db, req.id, org["hr"]["id"])

        assert snapshot.id == req.id
        assert snapshot.status == LeaveStatus.approved
        assert snapshot.total_hours == Decimal("24")
        assert await db.get(LeaveRequest, req.id) is None
        bal = await read_balance(db, alice["id"], annual["id"], YEAR)
        assert bal.used == Decimal("0")

    async def test_owner_deletes_pending(self, db: AsyncSession, org: dict):
        alice, annual = org["alice"], org["annual"]
        req = await _create(db, alice, annual)

        await LeaveService.delete_leave_request(db, req.id, alice["id"])

        bal = await read_balance(db, alice["id"], annual["id"], YEAR)
        assert bal.scheduled == Decimal("0")

    async def test_owner_cannot_delete_approved(self, db: AsyncSession, org: dict):
        alice, annual = org["alice"], org["annual"]
        req = await _create(db, alice, annual)
        await LeaveService.approve_leave_request(db, req.id, org["manager"]["id"])

        with pytest.raises(ForbiddenException):
            await LeaveService.delete_leave_request(db, req.id, alice["id"])

    async def test_manager_deletes_report_request(self, db: AsyncSession, org: dict):
        alice, annual = org["alice"], org["annual"]
        req = await _create(db, alice, annual)
        await LeaveService.approve_leave_request(db, req.id, org["manager"]["id"])

        await LeaveService.delete_leave_request(db, req.id, org["manager"]["id"])

        await _assert_ledger_matches(db, alice["id"], annual["id"])

    async def test_stranger_forbidden(self, db: AsyncSession, org: dict):
        req = await _create(db, org["alice"], org["annual"])
        with pytest.raises(ForbiddenException):
            await LeaveService.delete_leave_request(db, req.id, org["outsider"]["id"])

    async def test_declined_has_no_balance_effect(self, db: AsyncSession, org: dict):
        alice, annual = org["alice"], org["annual"]
        keep = await _create(db, alice, annual, NEXT_MON, NEXT_WED)
        req = await _create(db, alice, annual)
        await LeaveService.decline_leave_request(db, req.id, org["manager"]["id"])

        snapshot = await LeaveService.delete_leave_request(db, req.id, org["hr"]["id"])

        assert snapshot.status == LeaveStatus.declined
        bal = await read_balance(db, alice["id"], annual["id"], YEAR)
        assert bal.scheduled == keep.total_hours
        assert bal.used == Decimal("0")

    async def test_missing_request(self, db: AsyncSession, org: dict):
        with pytest.raises(NotFoundException):
            await LeaveService.delete_leave_request(db, uuid.uuid4(), org["hr"]["id"])


# ═════════════════════════════════════════════════════════════════════
# 6. Round trips and ledger invariants
# ═════════════════════════════════════════════════════════════════════


class TestRoundTrips:

    async def test_pending_create_then_delete(self, db: AsyncSession, org: dict):
        alice, annual = org["alice"], org["annual"]
        await set_balance(db, alice["id"], annual["id"], YEAR, allowance=160, scheduled=8)

        req = await _create(db, alice, annual)
        await LeaveService.delete_leave_request(db, req.id, alice["id"])

        bal = await read_balance(db, alice["id"], annual["id"], YEAR)
        assert bal.scheduled == Decimal("8")

    async def test_auto_approved_create_then_delete(self, db: AsyncSession, org: dict):
        hr, annual = org["hr"], org["annual"]
        await set_balance(db, hr["id"], annual["id"], YEAR, allowance=160, used=40)

        req = await _create(db, hr, annual)
        await LeaveService.delete_leave_request(db, req.id, hr["id"])

        bal = await read_balance(db, hr["id"], annual["id"], YEAR)
        assert bal.used == Decimal("40")

    async def test_ledger_tracks_mixed_history(self, db: AsyncSession, org: dict):
        alice, annual, mgr = org["alice"], org["annual"], org["manager"]

        r1 = await _create(db, alice, annual, MON, MON)
        r2 = await _create(db, alice, annual, date(2026, 3, 3), date(2026, 3, 3))
        r3 = await _create(db, alice, annual, WED, FRI)
        r4 = await _create(db, alice, annual, NEXT_MON, NEXT_WED, half_day=True)
        await _assert_ledger_matches(db, alice["id"], annual["id"])

        await LeaveService.approve_leave_request(db, r1.id, mgr["id"])
        await _assert_ledger_matches(db, alice["id"], annual["id"])
        await LeaveService.decline_leave_request(db, r2.id, mgr["id"])
        await _assert_ledger_matches(db, alice["id"], annual["id"])
        await LeaveService.cancel_leave_request(db, r3.id, alice["id"])
        await _assert_ledger_matches(db, alice["id"], annual["id"])
        await LeaveService.delete_leave_request(db, r1.id, org["hr"]["id"])
        await _assert_ledger_matches(db, alice["id"], annual["id"])

        bal = await read_balance(db, alice["id"], annual["id"], YEAR)
        assert bal.scheduled == r4.total_hours
        assert bal.used == Decimal("0")

    async def test_balance_year_follows_start_date(self, db: AsyncSession, org: dict):
        alice, annual = org["alice"], org["annual"]

        await _create(db, alice, annual, date(2026, 12, 31), date(2027, 1, 1))

        bal = await read_balance(db, alice["id"], annual["id"], 2026)
        assert bal.scheduled == Decimal("16")


# ═════════════════════════════════════════════════════════════════════
# 7. Read views
# ═════════════════════════════════════════════════════════════════════


class TestReads:

    async def test_get_request_scoping(self, db: AsyncSession, org: dict):
        req = await _create(db, org["alice"], org["annual"])

        own = await LeaveService.get_leave_request(db, req.id, org["alice"]["id"])
        assert own.employee_brief.id == org["alice"]["id"]
        assert own.leave_type_brief.code == "annual"

        by_mgr = await LeaveService.get_leave_request(db, req.id, org["manager"]["id"])
        assert by_mgr.id == req.id

        with pytest.raises(ForbiddenException):
            await LeaveService.get_leave_request(db, req.id, org["bob"]["id"])
        with pytest.raises(NotFoundException):
            await LeaveService.get_leave_request(db, uuid.uuid4(), org["alice"]["id"])

    async def test_list_scopes(self, db: AsyncSession, org: dict):
        await _create(db, org["alice"], org["annual"])
        await _create(db, org["bob"], org["annual"])
        await _create(db, org["outsider"], org["annual"])

        mine = await LeaveService.get_leave_requests(db, org["alice"]["id"])
        assert mine.meta.total == 1

        team = await LeaveService.get_leave_requests(db, org["manager"]["id"], scope="team")
        assert {r.employee_id for r in team.data} == {org["alice"]["id"], org["bob"]["id"]}

        everyone = await LeaveService.get_leave_requests(db, org["hr"]["id"], scope="all")
        assert everyone.meta.total == 3

        with pytest.raises(ForbiddenException):
            await LeaveService.get_leave_requests(db, org["alice"]["id"], scope="all")
        with pytest.raises(ValidationException):
            await LeaveService.get_leave_requests(db, org["alice"]["id"], scope="company")

    async def test_list_filters_and_pagination(self, db: AsyncSession, org: dict):
        alice = org["alice"]
        first = await _create(db, alice, org["annual"], MON, MON)
        await _create(db, alice, org["annual"], WED, WED)
        await _create(db, alice, org["annual"], FRI, FRI)
        await LeaveService.cancel_leave_request(db, first.id, alice["id"])

        pending = await LeaveService.get_leave_requests(
            db, alice["id"], status=LeaveStatus.pending,
        )
        assert pending.meta.total == 2

        page = await LeaveService.get_leave_requests(db, alice["id"], page=2, page_size=2)
        assert page.meta.total == 3
        assert page.meta.total_pages == 2
        assert len(page.data) == 1
        # newest start date first
        assert page.data[0].start_date == MON

    async def test_team_scope_without_reports(self, db: AsyncSession, org: dict):
        page = await LeaveService.get_leave_requests(db, org["alice"]["id"], scope="team")
        assert page.meta.total == 0
        assert page.data == []

    async def test_pending_approvals(self, db: AsyncSession, org: dict):
        await _create(db, org["alice"], org["annual"])
        await _create(db, org["bob"], org["annual"])
        await _create(db, org["outsider"], org["annual"])

        mgr_queue = await LeaveService.get_pending_approvals(db, org["manager"]["id"])
        assert {r.employee_id for r in mgr_queue} == {org["alice"]["id"], org["bob"]["id"]}
        assert await LeaveService.get_pending_count(db, org["manager"]["id"]) == 2

        hr_queue = await LeaveService.get_pending_approvals(db, org["hr"]["id"])
        assert len(hr_queue) == 3
        assert await LeaveService.get_pending_count(db, org["hr"]["id"]) == 3

        assert await LeaveService.get_pending_approvals(db, org["alice"]["id"]) == []
        assert await LeaveService.get_pending_count(db, org["alice"]["id"]) == 0

    async def test_pending_queue_empty_without_approve_grant(
        self, db: AsyncSession, org: dict,
    ):
        """A reporting manager holding only the employee role reviews nothing."""
        lead = await add_employee(db, first_name="Lena")
        report = await add_employee(
            db, first_name="Rita", reporting_manager_id=lead["id"],
        )
        await _create(db, report, org["annual"])

        assert await LeaveService.get_pending_approvals(db, lead["id"]) == []
        assert await LeaveService.get_pending_count(db, lead["id"]) == 0

    async def test_leave_types(self, db: AsyncSession, org: dict):
        await add_leave_type(db, code="sick", name="Sick Leave")
        types = await LeaveService.get_leave_types(db)
        assert [t.code for t in types] == ["annual", "sick"]

    async def test_balances_scoping(self, db: AsyncSession, org: dict):
        own = await LeaveService.get_balances(db, org["alice"]["id"], year=YEAR)
        assert [b.leave_type_code for b in own] == ["annual"]
        assert own[0].remaining == Decimal("160")

        by_mgr = await LeaveService.get_balances(
            db, org["manager"]["id"], org["alice"]["id"], YEAR,
        )
        assert by_mgr[0].employee_id == org["alice"]["id"]

        with pytest.raises(ForbiddenException):
            await LeaveService.get_balances(db, org["bob"]["id"], org["alice"]["id"], YEAR)
        with pytest.raises(NotFoundException):
            await LeaveService.get_balances(db, org["hr"]["id"], uuid.uuid4(), YEAR)

    async def test_my_permissions(self, db: AsyncSession, org: dict):
        perms = await LeaveService.get_my_permissions(db, org["alice"]["id"])
        assert len(perms) == 4
        assert all(p.role_id == "employee" for p in perms)
        assert all([c.value for c in p.conditions] == ["own_records_only"] for p in perms)
