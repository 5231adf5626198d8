"""Leave service layer — request lifecycle, approvals, and read views.

Business logic:
  - Create with permission, leave-type, working-day, policy-rule, overlap
    and affordability checks, auto-approving for unrestricted approvers
    and for requests the policy waves through
  - Approve / decline / cancel of pending requests, moving hours between
    ``scheduled`` and ``used`` under the balance lock
  - Delete with balance restoration, returning the deleted snapshot
  - My / team / all request listings and the pending-approval queue

Every operation takes the database session (the caller's unit of work) and
the acting principal explicitly. Balance mutations run inside
``locked_balance`` so concurrent requests against the same balance are
serialized; any raised exception rolls the whole unit back.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, time, timezone
from typing import Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from timeoff.auth.permissions import (
    can_access_record,
    check_permission,
    get_user_permissions,
    has_any_role,
    manager_of,
)
from timeoff.common.audit import record_audit
from timeoff.common.constants import (
    ACTIVE_LEAVE_STATUSES,
    ELEVATED_REVIEWER_ROLES,
    FULL_DAY_HOURS,
    HALF_DAY_HOURS,
    LeaveStatus,
    PermissionAction,
    PermissionResource,
)
from timeoff.common.exceptions import (
    ConflictError,
    ForbiddenException,
    InsufficientBalanceException,
    InvalidStateException,
    NotFoundException,
    UnauthorizedException,
    ValidationException,
)
from timeoff.common.pagination import PaginatedResponse, PaginationMeta, paginate
from timeoff.core_hr.models import Employee
from timeoff.holidays.working_days import count_working_days
from timeoff.leave import balances
from timeoff.leave.models import LeaveRequest, LeaveType
from timeoff.leave.policies import (
    holiday_region_for,
    policy_for,
    rules_for,
    working_weekdays_for,
)
from timeoff.leave.schemas import (
    EmployeeBrief,
    LeaveBalanceOut,
    LeaveRequestCreate,
    LeaveRequestOut,
    LeaveTypeBrief,
    LeaveTypeOut,
    PermissionOut,
)

logger = logging.getLogger(__name__)

REQUEST_SCOPES = ("my", "team", "all")


def _require_principal(principal_id: Optional[uuid.UUID]) -> uuid.UUID:
    if principal_id is None:
        raise UnauthorizedException()
    return principal_id


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════
# LeaveService
# ═════════════════════════════════════════════════════════════════════


class LeaveService:
    """Async leave operations: requests, approvals, balances, listings."""

    # ─────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    def _build_request_response(
        req: LeaveRequest,
        *,
        employee: Optional[Employee] = None,
        leave_type: Optional[LeaveType] = None,
    ) -> LeaveRequestOut:
        """Build LeaveRequestOut from ORM, optionally enriching relationships."""
        out = LeaveRequestOut.model_validate(req)
        if employee is not None:
            out.employee_brief = EmployeeBrief.model_validate(employee)
        if leave_type is not None:
            out.leave_type_brief = LeaveTypeBrief.model_validate(leave_type)
        return out

    @staticmethod
    async def _get_request_for_update(
        db: AsyncSession,
        request_id: uuid.UUID,
    ) -> LeaveRequest:
        """Load and row-lock a request so its status cannot move under us."""
        result = await balances.guarded_execute(
            db,
            select(LeaveRequest)
            .where(LeaveRequest.id == request_id)
            .with_for_update()
            .execution_options(populate_existing=True),
        )
        req = result.scalars().first()
        if req is None:
            raise NotFoundException("LeaveRequest", str(request_id))
        return req

    @staticmethod
    async def _can_review(
        db: AsyncSession,
        principal_id: uuid.UUID,
        owner_id: uuid.UUID,
    ) -> bool:
        if await has_any_role(db, principal_id, ELEVATED_REVIEWER_ROLES):
            return True
        return await manager_of(db, owner_id) == principal_id

    @staticmethod
    async def _find_overlap(
        db: AsyncSession,
        employee_id: uuid.UUID,
        data: LeaveRequestCreate,
    ) -> Optional[LeaveRequest]:
        result = await db.execute(
            select(LeaveRequest)
            .where(
                LeaveRequest.employee_id == employee_id,
                LeaveRequest.status.in_(ACTIVE_LEAVE_STATUSES),
                LeaveRequest.start_date <= data.end_date,
                LeaveRequest.end_date >= data.start_date,
            )
            .limit(1)
        )
        return result.scalars().first()

    @staticmethod
    def _snapshot(req: LeaveRequest) -> dict:
        return {
            "employee_id": str(req.employee_id),
            "leave_type_id": str(req.leave_type_id),
            "start_date": req.start_date.isoformat(),
            "end_date": req.end_date.isoformat(),
            "total_hours": str(req.total_hours),
            "status": req.status.value,
        }

    # ─────────────────────────────────────────────────────────────────
    # Create
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def create_leave_request(
        db: AsyncSession,
        principal_id: Optional[uuid.UUID],
        data: LeaveRequestCreate,
    ) -> LeaveRequestOut:
        """Request leave for the principal.

        Checks, in order: create permission, active leave type, policy
        enablement, working days in range, notice and length rules,
        overlap with pending/approved requests, then affordability under
        the balance lock. Unrestricted approvers and requests the policy
        does not need reviewed are approved on the spot.
        """
        principal_id = _require_principal(principal_id)
        owner_id = principal_id

        # ── Permission ──────────────────────────────────────────────
        if not await can_access_record(
            db, principal_id,
            PermissionResource.leave_requests, PermissionAction.create,
            owner_id,
        ):
            logger.warning("Leave request creation denied: principal=%s", principal_id)
            raise ForbiddenException("You cannot create leave requests.")

        # ── Leave type ──────────────────────────────────────────────
        lt_result = await db.execute(
            select(LeaveType).where(
                LeaveType.id == data.leave_type_id,
                LeaveType.is_active.is_(True),
            )
        )
        leave_type = lt_result.scalars().first()
        if leave_type is None:
            raise ValidationException(
                {"leave_type_id": ["Unknown or inactive leave type."]}
            )

        employee = await db.get(Employee, owner_id)
        policy = await policy_for(db, owner_id)
        type_policy = rules_for(policy, leave_type.code)
        if type_policy is not None and not type_policy.enabled:
            raise ValidationException(
                {"leave_type_id": [f"{leave_type.name} is not available under your policy."]}
            )

        # ── Working days / hours ────────────────────────────────────
        days = await count_working_days(
            db,
            data.start_date,
            data.end_date,
            holiday_region_for(policy, employee),
            working_weekdays_for(policy),
        )
        if days == 0:
            raise ValidationException(
                {"dates": ["No working days in the selected range "
                           "(all days are weekends or public holidays)."]}
            )
        total_hours = days * (HALF_DAY_HOURS if data.half_day else FULL_DAY_HOURS)

        # ── Policy rules ────────────────────────────────────────────
        now = _now()
        document_required = False
        policy_auto_approve = False
        if type_policy is not None:
            rules = type_policy.rules
            if rules.min_notice_hours > 0:
                starts_at = datetime.combine(data.start_date, time.min, tzinfo=timezone.utc)
                notice = (starts_at - now).total_seconds() / 3600
                if notice < rules.min_notice_hours:
                    raise ValidationException(
                        {"start_date": [
                            f"{leave_type.name} requires at least "
                            f"{rules.min_notice_hours} hours notice."
                        ]}
                    )
            if rules.max_consecutive_hours > 0 and total_hours > rules.max_consecutive_hours:
                raise ValidationException(
                    {"dates": [
                        f"{leave_type.name} allows at most "
                        f"{rules.max_consecutive_hours} consecutive hours."
                    ]}
                )
            document_required = (
                rules.requires_document_after_hours > 0
                and total_hours > rules.requires_document_after_hours
            )
            policy_auto_approve = not rules.requires_approval or (
                rules.auto_approve_up_to_hours > 0
                and total_hours <= rules.auto_approve_up_to_hours
            )

        # ── Overlap ─────────────────────────────────────────────────
        clash = await LeaveService._find_overlap(db, owner_id, data)
        if clash is not None:
            raise ConflictError(
                "Leave request overlaps with an existing request.",
                errors={"dates": [
                    f"Overlaps with {clash.status.value} request "
                    f"{clash.start_date} to {clash.end_date}."
                ]},
            )

        approver = await check_permission(
            db, principal_id,
            PermissionResource.leave_requests, PermissionAction.approve,
        )
        self_approved = approver.unconditional
        auto_approved = self_approved or policy_auto_approve

        # ── Balance (locked) ────────────────────────────────────────
        async with balances.locked_balance(
            db, owner_id, leave_type.id, data.start_date.year,
        ) as balance:
            if not balances.is_unlimited(balance):
                avail = balances.available(balance)
                if total_hours > avail:
                    raise InsufficientBalanceException(
                        leave_type.name, avail, total_hours,
                    )

            leave_req = LeaveRequest(
                employee_id=owner_id,
                leave_type_id=leave_type.id,
                start_date=data.start_date,
                end_date=data.end_date,
                half_day=data.half_day,
                total_hours=total_hours,
                note=data.note,
                status=LeaveStatus.approved if auto_approved else LeaveStatus.pending,
                reviewer_id=principal_id if self_approved else None,
                reviewed_at=now if auto_approved else None,
                auto_approved=auto_approved,
                document_required=document_required,
            )
            db.add(leave_req)

            if auto_approved:
                balance.used = balance.used + total_hours
            else:
                balance.scheduled = balance.scheduled + total_hours

        await db.refresh(leave_req)

        await record_audit(
            db,
            action="create",
            entity_type="leave_request",
            entity_id=leave_req.id,
            actor_id=principal_id,
            changes={
                **LeaveService._snapshot(leave_req),
                "auto_approved": auto_approved,
            },
        )
        logger.info(
            "Leave request created: id=%s employee=%s type=%s hours=%s status=%s",
            leave_req.id, owner_id, leave_type.code, total_hours,
            leave_req.status.value,
        )
        return LeaveService._build_request_response(leave_req, leave_type=leave_type)

    # ─────────────────────────────────────────────────────────────────
    # Approve / Decline
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def _review(
        db: AsyncSession,
        request_id: uuid.UUID,
        principal_id: Optional[uuid.UUID],
        note: Optional[str],
        outcome: LeaveStatus,
    ) -> LeaveRequestOut:
        principal_id = _require_principal(principal_id)
        verb = "approve" if outcome == LeaveStatus.approved else "decline"

        leave_req = await LeaveService._get_request_for_update(db, request_id)
        if leave_req.status != LeaveStatus.pending:
            raise InvalidStateException(
                f"Cannot {verb} a request that is {leave_req.status.value}."
            )
        if not await LeaveService._can_review(db, principal_id, leave_req.employee_id):
            logger.warning(
                "Leave %s denied: principal=%s request=%s",
                verb, principal_id, request_id,
            )
            raise ForbiddenException(
                f"You are not authorised to {verb} this leave request."
            )

        hours = leave_req.total_hours
        async with balances.locked_balance(
            db, leave_req.employee_id, leave_req.leave_type_id, leave_req.year,
        ) as balance:
            if outcome == LeaveStatus.approved:
                balance.used = balance.used + hours
            balance.scheduled = balance.scheduled - hours

            now = _now()
            leave_req.status = outcome
            leave_req.reviewer_id = principal_id
            leave_req.reviewer_note = note
            leave_req.reviewed_at = now
            leave_req.updated_at = now

        await record_audit(
            db,
            action=verb,
            entity_type="leave_request",
            entity_id=leave_req.id,
            actor_id=principal_id,
            changes={
                "status": {"old": LeaveStatus.pending.value, "new": outcome.value},
                "note": note,
            },
        )
        logger.info(
            "Leave request %s: id=%s by=%s hours=%s",
            outcome.value, leave_req.id, principal_id, hours,
        )
        return LeaveService._build_request_response(leave_req)

    @staticmethod
    async def approve_leave_request(
        db: AsyncSession,
        request_id: uuid.UUID,
        principal_id: Optional[uuid.UUID],
        note: Optional[str] = None,
    ) -> LeaveRequestOut:
        """Approve a pending request: its hours move from scheduled to used."""
        return await LeaveService._review(
            db, request_id, principal_id, note, LeaveStatus.approved,
        )

    @staticmethod
    async def decline_leave_request(
        db: AsyncSession,
        request_id: uuid.UUID,
        principal_id: Optional[uuid.UUID],
        note: Optional[str] = None,
    ) -> LeaveRequestOut:
        """Decline a pending request: its scheduled hours are released."""
        return await LeaveService._review(
            db, request_id, principal_id, note, LeaveStatus.declined,
        )

    # ─────────────────────────────────────────────────────────────────
    # Cancel
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def cancel_leave_request(
        db: AsyncSession,
        request_id: uuid.UUID,
        principal_id: Optional[uuid.UUID],
        note: Optional[str] = None,
    ) -> LeaveRequestOut:
        """Withdraw a pending request, keeping it on record as cancelled."""
        principal_id = _require_principal(principal_id)

        leave_req = await LeaveService._get_request_for_update(db, request_id)
        if leave_req.status != LeaveStatus.pending:
            raise InvalidStateException(
                f"Cannot cancel a request that is {leave_req.status.value}."
            )
        if leave_req.employee_id != principal_id and not await can_access_record(
            db, principal_id,
            PermissionResource.leave_requests, PermissionAction.edit,
            leave_req.employee_id,
        ):
            raise ForbiddenException("You cannot cancel this leave request.")

        async with balances.locked_balance(
            db, leave_req.employee_id, leave_req.leave_type_id, leave_req.year,
        ) as balance:
            balance.scheduled = balance.scheduled - leave_req.total_hours

            now = _now()
            leave_req.status = LeaveStatus.cancelled
            leave_req.cancelled_at = now
            leave_req.updated_at = now
            if note:
                leave_req.reviewer_note = note

        await record_audit(
            db,
            action="cancel",
            entity_type="leave_request",
            entity_id=leave_req.id,
            actor_id=principal_id,
            changes={
                "status": {"old": LeaveStatus.pending.value, "new": LeaveStatus.cancelled.value},
                "note": note,
            },
        )
        logger.info("Leave request cancelled: id=%s by=%s", leave_req.id, principal_id)
        return LeaveService._build_request_response(leave_req)

    # ─────────────────────────────────────────────────────────────────
    # Delete
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def delete_leave_request(
        db: AsyncSession,
        request_id: uuid.UUID,
        principal_id: Optional[uuid.UUID],
    ) -> LeaveRequestOut:
        """Hard-delete a request, giving back whatever it held on the balance.

        Allowed with record-scoped ``leave_requests:delete``, or for the
        owner while the request is still pending. Returns the request as it
        was just before deletion.
        """
        principal_id = _require_principal(principal_id)

        leave_req = await LeaveService._get_request_for_update(db, request_id)
        is_owner = leave_req.employee_id == principal_id
        allowed = await can_access_record(
            db, principal_id,
            PermissionResource.leave_requests, PermissionAction.delete,
            leave_req.employee_id,
        ) or (is_owner and leave_req.status == LeaveStatus.pending)
        if not allowed:
            logger.warning(
                "Leave delete denied: principal=%s request=%s", principal_id, request_id,
            )
            raise ForbiddenException("You cannot delete this leave request.")

        snapshot = LeaveService._build_request_response(leave_req)
        hours = leave_req.total_hours

        if leave_req.status in ACTIVE_LEAVE_STATUSES:
            async with balances.locked_balance(
                db, leave_req.employee_id, leave_req.leave_type_id, leave_req.year,
            ) as balance:
                if leave_req.status == LeaveStatus.approved:
                    balance.used = balance.used - hours
                else:
                    balance.scheduled = balance.scheduled - hours
                await db.delete(leave_req)
        else:
            await db.delete(leave_req)
            await db.flush()

        await record_audit(
            db,
            action="delete",
            entity_type="leave_request",
            entity_id=request_id,
            actor_id=principal_id,
            changes=LeaveService._snapshot(leave_req),
        )
        logger.info(
            "Leave request deleted: id=%s status=%s by=%s",
            request_id, snapshot.status.value, principal_id,
        )
        return snapshot

    # ─────────────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def get_leave_request(
        db: AsyncSession,
        request_id: uuid.UUID,
        principal_id: Optional[uuid.UUID],
    ) -> LeaveRequestOut:
        principal_id = _require_principal(principal_id)
        result = await db.execute(
            select(LeaveRequest)
            .where(LeaveRequest.id == request_id)
            .options(
                selectinload(LeaveRequest.employee),
                selectinload(LeaveRequest.leave_type),
            )
        )
        leave_req = result.scalars().first()
        if leave_req is None:
            raise NotFoundException("LeaveRequest", str(request_id))
        if leave_req.employee_id != principal_id and not await can_access_record(
            db, principal_id,
            PermissionResource.leave_requests, PermissionAction.view,
            leave_req.employee_id,
        ):
            raise ForbiddenException("You cannot view this leave request.")
        return LeaveService._build_request_response(
            leave_req, employee=leave_req.employee, leave_type=leave_req.leave_type,
        )

    @staticmethod
    async def _direct_report_ids(
        db: AsyncSession,
        manager_id: uuid.UUID,
    ) -> list[uuid.UUID]:
        reports = await db.execute(
            select(Employee.id).where(
                Employee.reporting_manager_id == manager_id,
                Employee.is_active.is_(True),
            )
        )
        return [r[0] for r in reports.all()]

    @staticmethod
    async def get_leave_requests(
        db: AsyncSession,
        principal_id: Optional[uuid.UUID],
        *,
        scope: str = "my",
        status: Optional[LeaveStatus] = None,
        leave_type_id: Optional[uuid.UUID] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> PaginatedResponse[LeaveRequestOut]:
        """List leave requests.

        Scopes:
          - my: own requests only
          - team: direct reports of the principal
          - all: everyone (unrestricted ``leave_requests:view`` only)
        """
        principal_id = _require_principal(principal_id)
        if scope not in REQUEST_SCOPES:
            raise ValidationException(
                {"scope": [f"Must be one of: {', '.join(REQUEST_SCOPES)}."]}
            )

        query = select(LeaveRequest).order_by(
            LeaveRequest.start_date.desc(), LeaveRequest.created_at.desc(),
        )
        if scope == "my":
            query = query.where(LeaveRequest.employee_id == principal_id)
        elif scope == "team":
            report_ids = await LeaveService._direct_report_ids(db, principal_id)
            if not report_ids:
                return PaginatedResponse(
                    data=[], meta=PaginationMeta.build(page, page_size, 0),
                )
            query = query.where(LeaveRequest.employee_id.in_(report_ids))
        else:
            perm = await check_permission(
                db, principal_id,
                PermissionResource.leave_requests, PermissionAction.view,
            )
            if not perm.unconditional:
                raise ForbiddenException("You cannot list everyone's leave requests.")

        if status is not None:
            query = query.where(LeaveRequest.status == status)
        if leave_type_id is not None:
            query = query.where(LeaveRequest.leave_type_id == leave_type_id)

        rows, meta = await paginate(
            db, query, page, page_size,
            options=(
                selectinload(LeaveRequest.employee),
                selectinload(LeaveRequest.leave_type),
            ),
        )
        return PaginatedResponse(
            data=[
                LeaveService._build_request_response(
                    r, employee=r.employee, leave_type=r.leave_type,
                )
                for r in rows
            ],
            meta=meta,
        )

    @staticmethod
    async def _pending_query(db: AsyncSession, principal_id: uuid.UUID):
        """Pending requests the principal is expected to review, or None."""
        query = select(LeaveRequest).where(LeaveRequest.status == LeaveStatus.pending)
        perm = await check_permission(
            db, principal_id,
            PermissionResource.leave_requests, PermissionAction.approve,
        )
        elevated = await has_any_role(db, principal_id, ELEVATED_REVIEWER_ROLES)
        if perm.unconditional or elevated:
            return query
        if not perm.allowed:
            return None

        report_ids = await LeaveService._direct_report_ids(db, principal_id)
        if not report_ids:
            return None
        return query.where(LeaveRequest.employee_id.in_(report_ids))

    @staticmethod
    async def get_pending_approvals(
        db: AsyncSession,
        principal_id: Optional[uuid.UUID],
    ) -> list[LeaveRequestOut]:
        """Oldest-first queue of pending requests awaiting the principal."""
        principal_id = _require_principal(principal_id)
        query = await LeaveService._pending_query(db, principal_id)
        if query is None:
            return []

        result = await db.execute(
            query.options(
                selectinload(LeaveRequest.employee),
                selectinload(LeaveRequest.leave_type),
            ).order_by(LeaveRequest.created_at.asc())
        )
        return [
            LeaveService._build_request_response(
                r, employee=r.employee, leave_type=r.leave_type,
            )
            for r in result.scalars().all()
        ]

    @staticmethod
    async def get_pending_count(
        db: AsyncSession,
        principal_id: Optional[uuid.UUID],
    ) -> int:
        principal_id = _require_principal(principal_id)
        query = await LeaveService._pending_query(db, principal_id)
        if query is None:
            return 0
        result = await db.execute(
            query.with_only_columns(func.count(), maintain_column_froms=True)
        )
        return result.scalar_one()

    @staticmethod
    async def get_leave_types(db: AsyncSession) -> list[LeaveTypeOut]:
        """List active leave types in display order."""
        result = await db.execute(
            select(LeaveType)
            .where(LeaveType.is_active.is_(True))
            .order_by(LeaveType.sort_order, LeaveType.name)
        )
        return [LeaveTypeOut.model_validate(lt) for lt in result.scalars().all()]

    @staticmethod
    async def get_balances(
        db: AsyncSession,
        principal_id: Optional[uuid.UUID],
        employee_id: Optional[uuid.UUID] = None,
        year: Optional[int] = None,
    ) -> list[LeaveBalanceOut]:
        """Balances for the principal, or for someone they may view."""
        principal_id = _require_principal(principal_id)
        employee_id = employee_id or principal_id
        if employee_id != principal_id and not await can_access_record(
            db, principal_id,
            PermissionResource.leave_balances, PermissionAction.view,
            employee_id,
        ):
            raise ForbiddenException("You cannot view this employee's balances.")

        if await db.get(Employee, employee_id) is None:
            raise NotFoundException("Employee", str(employee_id))
        return await balances.get_balances(db, employee_id, year or _now().year)

    @staticmethod
    async def get_my_permissions(
        db: AsyncSession,
        principal_id: Optional[uuid.UUID],
    ) -> Sequence[PermissionOut]:
        principal_id = _require_principal(principal_id)
        grants = await get_user_permissions(db, principal_id)
        return [PermissionOut.model_validate(g) for g in grants]
