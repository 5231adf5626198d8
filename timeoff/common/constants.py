"""Enums and constants for the time-off engine — matching PostgreSQL ENUM types."""

from __future__ import annotations

import enum
from decimal import Decimal


# ── Auth / Roles ────────────────────────────────────────────────────

class SystemRole(str, enum.Enum):
    """Seeded role ids. Custom roles may exist alongside these."""

    employee = "employee"
    team_lead = "team_lead"
    manager = "manager"
    hr_admin = "hr_admin"
    super_admin = "super_admin"


class PermissionResource(str, enum.Enum):
    users = "users"
    leave_requests = "leave_requests"
    leave_balances = "leave_balances"
    leave_policies = "leave_policies"
    public_holidays = "public_holidays"
    roles = "roles"


class PermissionAction(str, enum.Enum):
    view = "view"
    create = "create"
    edit = "edit"
    delete = "delete"
    approve = "approve"


class Condition(str, enum.Enum):
    """Record-scoping restriction attached to a role permission."""

    own_records_only = "own_records_only"
    direct_reports_only = "direct_reports_only"


# Roles that may review any leave request regardless of reporting line
ELEVATED_REVIEWER_ROLES: frozenset[str] = frozenset(
    {SystemRole.hr_admin.value, SystemRole.super_admin.value}
)


# ── Leave ───────────────────────────────────────────────────────────

class LeaveStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    declined = "declined"
    cancelled = "cancelled"


# Statuses that hold a claim on the calendar (and on the balance)
ACTIVE_LEAVE_STATUSES: tuple[LeaveStatus, ...] = (
    LeaveStatus.pending,
    LeaveStatus.approved,
)


class AccrualType(str, enum.Enum):
    upfront = "upfront"
    monthly = "monthly"
    quarterly = "quarterly"
    annual = "annual"


FULL_DAY_HOURS = Decimal("8")
HALF_DAY_HOURS = Decimal("4")

# ISO weekday numbers (Mon=1 … Sun=7)
DEFAULT_WORKING_WEEKDAYS: frozenset[int] = frozenset({1, 2, 3, 4, 5})

# ── Misc constants ──────────────────────────────────────────────────

DATE_FORMAT = "%Y-%m-%d"
MAX_REQUEST_SPAN_DAYS = 365
