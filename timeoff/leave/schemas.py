"""Leave Pydantic v2 schemas — request / response validation.

Naming conventions:
  - *Create / *Request  → request bodies (write)
  - *Out                → response bodies (read)
  - *Brief              → compact embedded representations
  - *Config / *Policy   → validated shape of ``LeavePolicy.config``
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from timeoff.common.constants import (
    MAX_REQUEST_SPAN_DAYS,
    AccrualType,
    Condition,
    LeaveStatus,
    PermissionAction,
    PermissionResource,
)


# ═════════════════════════════════════════════════════════════════════
# Policy configuration (stored as JSON on LeavePolicy.config)
# ═════════════════════════════════════════════════════════════════════


class AccrualConfig(BaseModel):
    type: AccrualType = AccrualType.upfront
    pro_rata_first_year: bool = False


class CarryOverConfig(BaseModel):
    enabled: bool = False
    max_hours: Decimal = Field(default=Decimal("0"), ge=0)
    expires_after_months: int = Field(default=0, ge=0)


class RequestRules(BaseModel):
    """Per-type request rules. A zero threshold disables its rule."""

    min_notice_hours: int = Field(default=0, ge=0)
    max_consecutive_hours: Decimal = Field(default=Decimal("0"), ge=0)
    auto_approve_up_to_hours: Decimal = Field(default=Decimal("0"), ge=0)
    requires_document_after_hours: Decimal = Field(default=Decimal("0"), ge=0)
    requires_approval: bool = True


class LeaveTypePolicy(BaseModel):
    enabled: bool = True
    default_allowance_hours: Decimal = Field(default=Decimal("0"), ge=0)
    accrual: AccrualConfig = Field(default_factory=AccrualConfig)
    carry_over: CarryOverConfig = Field(default_factory=CarryOverConfig)
    rules: RequestRules = Field(default_factory=RequestRules)


class PolicyConfig(BaseModel):
    """Leave-type code → rules, e.g. ``{"leave_types": {"annual": {...}}}``."""

    leave_types: dict[str, LeaveTypePolicy] = Field(default_factory=dict)


# ═════════════════════════════════════════════════════════════════════
# Embedded / shared
# ═════════════════════════════════════════════════════════════════════


class EmployeeBrief(BaseModel):
    """Minimal employee info embedded in leave responses."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    employee_code: str
    full_name: str


class LeaveTypeBrief(BaseModel):
    """Minimal leave type info embedded in leave responses."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    code: str
    name: str


# ═════════════════════════════════════════════════════════════════════
# Leave Type
# ═════════════════════════════════════════════════════════════════════


class LeaveTypeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    code: str
    name: str
    description: Optional[str] = None
    sort_order: int = 0
    is_active: bool = True


# ═════════════════════════════════════════════════════════════════════
# Leave Balance
# ═════════════════════════════════════════════════════════════════════


class LeaveBalanceOut(BaseModel):
    """Balance for a single leave type with the derived remaining hours."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    employee_id: uuid.UUID
    leave_type_id: uuid.UUID
    year: int
    allowance: Decimal
    used: Decimal
    scheduled: Decimal
    carried_over: Decimal
    adjustment: Decimal

    # Computed fields: filled by the ledger, not from ORM
    remaining: Decimal = Decimal("0")
    unlimited: bool = False

    leave_type_code: Optional[str] = None
    leave_type_name: Optional[str] = None


class BalanceAdjustRequest(BaseModel):
    """HR balance adjustment payload."""

    employee_id: uuid.UUID
    leave_type_id: uuid.UUID
    hours: Decimal = Field(
        ..., description="Positive to credit, negative to debit"
    )
    reason: str = Field(..., min_length=3, max_length=500)
    year: Optional[int] = Field(
        None, description="Target year; defaults to current year"
    )

    @field_validator("hours")
    @classmethod
    def hours_not_zero(cls, v: Decimal) -> Decimal:
        if v == 0:
            raise ValueError("hours must not be zero.")
        return v


class BalanceCarryOverRequest(BaseModel):
    """Year-end rollover of one employee's unused hours."""

    employee_id: uuid.UUID
    leave_type_id: uuid.UUID
    from_year: int = Field(..., ge=2000, le=2100)


# ═════════════════════════════════════════════════════════════════════
# Leave Request: Create
# ═════════════════════════════════════════════════════════════════════


class LeaveRequestCreate(BaseModel):
    """Payload for requesting leave."""

    leave_type_id: uuid.UUID
    start_date: date = Field(..., description="Leave start date (inclusive)")
    end_date: date = Field(..., description="Leave end date (inclusive)")
    half_day: bool = Field(
        default=False, description="Counts 4 hours per working day instead of 8"
    )
    note: Optional[str] = Field(None, max_length=1000)

    @model_validator(mode="after")
    def validate_dates(self) -> "LeaveRequestCreate":
        if self.start_date > self.end_date:
            raise ValueError("start_date must be on or before end_date.")
        if (self.end_date - self.start_date).days > MAX_REQUEST_SPAN_DAYS:
            raise ValueError(
                f"Leave request cannot span more than {MAX_REQUEST_SPAN_DAYS} days."
            )
        return self


# ═════════════════════════════════════════════════════════════════════
# Leave Request: Response
# ═════════════════════════════════════════════════════════════════════


class LeaveRequestOut(BaseModel):
    """Full leave request response."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    employee_id: uuid.UUID
    leave_type_id: uuid.UUID
    start_date: date
    end_date: date
    half_day: bool = False
    total_hours: Decimal
    note: Optional[str] = None
    status: LeaveStatus
    reviewer_id: Optional[uuid.UUID] = None
    reviewer_note: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    auto_approved: bool = False
    document_required: bool = False
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    # Enriched by service when the relationship is loaded
    employee_brief: Optional[EmployeeBrief] = None
    leave_type_brief: Optional[LeaveTypeBrief] = None


# ═════════════════════════════════════════════════════════════════════
# Leave Approve / Decline / Cancel
# ═════════════════════════════════════════════════════════════════════


class LeaveApproveRequest(BaseModel):
    note: Optional[str] = Field(None, max_length=500)


class LeaveDeclineRequest(BaseModel):
    note: Optional[str] = Field(None, max_length=500)


class LeaveCancelRequest(BaseModel):
    note: Optional[str] = Field(None, max_length=500)


class PendingCountOut(BaseModel):
    count: int


# ═════════════════════════════════════════════════════════════════════
# Permissions
# ═════════════════════════════════════════════════════════════════════


class PermissionOut(BaseModel):
    """One grant held by the caller, for client-side feature gating."""

    model_config = ConfigDict(from_attributes=True)

    role_id: str
    resource: PermissionResource
    action: PermissionAction
    conditions: list[Condition] = Field(default_factory=list)

    @field_validator("conditions", mode="before")
    @classmethod
    def sort_conditions(cls, v):
        return sorted(v, key=lambda c: c.value if hasattr(c, "value") else str(c))
