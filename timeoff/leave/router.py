"""Leave router — requests, approvals, balances, leave types, permissions.

All endpoints require authentication. Record-level authorization happens in
the service, which knows the record owner.
"""


import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from timeoff.auth.dependencies import get_current_user, require_permission
from timeoff.common.constants import LeaveStatus, PermissionAction, PermissionResource
from timeoff.common.pagination import PaginatedResponse, PaginationParams
from timeoff.common.rate_limit import limiter
from timeoff.core_hr.models import Employee
from timeoff.database import get_db
from timeoff.leave import balances
from timeoff.leave.schemas import (
    BalanceAdjustRequest,
    BalanceCarryOverRequest,
    LeaveApproveRequest,
    LeaveBalanceOut,
    LeaveCancelRequest,
    LeaveDeclineRequest,
    LeaveRequestCreate,
    LeaveRequestOut,
    LeaveTypeOut,
    PendingCountOut,
    PermissionOut,
)
from timeoff.leave.service import LeaveService

router = APIRouter(prefix="", tags=["leave"])


# ── POST /requests ──────────────────────────────────────────────────

@router.post("/requests", response_model=LeaveRequestOut, status_code=201)
@limiter.limit("20/minute")
async def create_request(
    request: Request,
    body: LeaveRequestCreate,
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Request leave. Validates working days, overlap and balance."""
    return await LeaveService.create_leave_request(db, employee.id, body)


# ── GET /requests ───────────────────────────────────────────────────

@router.get("/requests", response_model=PaginatedResponse[LeaveRequestOut])
async def list_requests(
    scope: str = Query("my", description="my | team | all"),
    status: Optional[LeaveStatus] = Query(None),
    leave_type_id: Optional[uuid.UUID] = Query(None),
    pagination: PaginationParams = Depends(),
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveService.get_leave_requests(
        db,
        employee.id,
        scope=scope,
        status=status,
        leave_type_id=leave_type_id,
        page=pagination.page,
        page_size=pagination.page_size,
    )


# ── GET /requests/{id} ──────────────────────────────────────────────

@router.get("/requests/{request_id}", response_model=LeaveRequestOut)
async def get_request(
    request_id: uuid.UUID,
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveService.get_leave_request(db, request_id, employee.id)


# ── PUT /requests/{id}/approve ──────────────────────────────────────

@router.put("/requests/{request_id}/approve", response_model=LeaveRequestOut)
async def approve_request(
    request_id: uuid.UUID,
    body: LeaveApproveRequest,
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Approve a pending leave request. Moves its hours to used."""
    return await LeaveService.approve_leave_request(
        db, request_id, employee.id, note=body.note,
    )


# ── PUT /requests/{id}/decline ──────────────────────────────────────

@router.put("/requests/{request_id}/decline", response_model=LeaveRequestOut)
async def decline_request(
    request_id: uuid.UUID,
    body: LeaveDeclineRequest,
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Decline a pending leave request. Releases its scheduled hours."""
    return await LeaveService.decline_leave_request(
        db, request_id, employee.id, note=body.note,
    )


# ── PUT /requests/{id}/cancel ───────────────────────────────────────

@router.put("/requests/{request_id}/cancel", response_model=LeaveRequestOut)
async def cancel_request(
    request_id: uuid.UUID,
    body: LeaveCancelRequest,
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveService.cancel_leave_request(
        db, request_id, employee.id, note=body.note,
    )


# ── DELETE /requests/{id} ───────────────────────────────────────────

@router.delete("/requests/{request_id}", response_model=LeaveRequestOut)
async def delete_request(
    request_id: uuid.UUID,
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Delete a request and restore its hours. Returns the deleted request."""
    return await LeaveService.delete_leave_request(db, request_id, employee.id)


# ── GET /approvals/pending ──────────────────────────────────────────

@router.get("/approvals/pending", response_model=list[LeaveRequestOut])
async def pending_approvals(
    employee: Employee = Depends(
        require_permission(PermissionResource.leave_requests, PermissionAction.approve)
    ),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveService.get_pending_approvals(db, employee.id)


# ── GET /approvals/count ────────────────────────────────────────────

@router.get("/approvals/count", response_model=PendingCountOut)
async def pending_count(
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    count = await LeaveService.get_pending_count(db, employee.id)
    return PendingCountOut(count=count)


# ── GET /balances ───────────────────────────────────────────────────

@router.get("/balances", response_model=list[LeaveBalanceOut])
async def get_balances(
    year: Optional[int] = Query(None, description="Leave year; defaults to current year"),
    employee_id: Optional[uuid.UUID] = Query(None, description="Defaults to the caller"),
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveService.get_balances(db, employee.id, employee_id, year)


# ── POST /balances/adjust ───────────────────────────────────────────

@router.post("/balances/adjust", response_model=LeaveBalanceOut)
async def adjust_balance(
    body: BalanceAdjustRequest,
    employee: Employee = Depends(
        require_permission(PermissionResource.leave_balances, PermissionAction.edit)
    ),
    db: AsyncSession = Depends(get_db),
):
    """Credit (positive) or debit (negative) hours on a balance."""
    return await balances.adjust_balance(
        db,
        employee.id,
        body.employee_id,
        body.leave_type_id,
        body.hours,
        body.reason,
        body.year,
    )


# ── POST /balances/carry-over ──────────────────────────────────────

@router.post("/balances/carry-over", response_model=LeaveBalanceOut)
async def carry_over_balance(
    body: BalanceCarryOverRequest,
    employee: Employee = Depends(
        require_permission(PermissionResource.leave_balances, PermissionAction.edit)
    ),
    db: AsyncSession = Depends(get_db),
):
    """Roll unused hours of ``from_year`` into the following year."""
    return await balances.carry_over(
        db,
        employee.id,
        body.employee_id,
        body.leave_type_id,
        body.from_year,
    )


# ── GET /types ──────────────────────────────────────────────────────

@router.get("/types", response_model=list[LeaveTypeOut])
async def get_types(
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveService.get_leave_types(db)


# ── GET /me/permissions ─────────────────────────────────────────────

@router.get("/me/permissions", response_model=list[PermissionOut])
async def my_permissions(
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveService.get_my_permissions(db, employee.id)
