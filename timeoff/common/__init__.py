"""Common module — shared utilities for the time-off engine."""

from timeoff.common.audit import AuditTrail, record_audit
from timeoff.common.constants import (
    ACTIVE_LEAVE_STATUSES,
    DEFAULT_WORKING_WEEKDAYS,
    FULL_DAY_HOURS,
    HALF_DAY_HOURS,
    AccrualType,
    Condition,
    LeaveStatus,
    PermissionAction,
    PermissionResource,
    SystemRole,
)
from timeoff.common.exceptions import (
    AppException,
    ConflictError,
    ForbiddenException,
    InsufficientBalanceException,
    InvalidStateException,
    NotFoundException,
    TransientStoreError,
    UnauthorizedException,
    ValidationException,
    register_exception_handlers,
)
from timeoff.common.pagination import (
    PaginatedResponse,
    PaginationMeta,
    PaginationParams,
    paginate,
)

__all__ = [
    # Audit
    "AuditTrail",
    "record_audit",
    # Constants / Enums
    "AccrualType",
    "Condition",
    "LeaveStatus",
    "PermissionAction",
    "PermissionResource",
    "SystemRole",
    "ACTIVE_LEAVE_STATUSES",
    "DEFAULT_WORKING_WEEKDAYS",
    "FULL_DAY_HOURS",
    "HALF_DAY_HOURS",
    # Exceptions
    "AppException",
    "ConflictError",
    "ForbiddenException",
    "InsufficientBalanceException",
    "InvalidStateException",
    "NotFoundException",
    "TransientStoreError",
    "UnauthorizedException",
    "ValidationException",
    "register_exception_handlers",
    # Pagination
    "PaginatedResponse",
    "PaginationMeta",
    "PaginationParams",
    "paginate",
]
