"""Auth dependencies — JWT validation and permission enforcement.

Tokens are issued by the identity provider in front of this service; the
engine only verifies them. ``sub`` carries the employee id.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from fastapi import Depends, Request
from jose import ExpiredSignatureError, JWTError, jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from timeoff.auth.permissions import check_permission
from timeoff.common.constants import PermissionAction, PermissionResource
from timeoff.common.exceptions import ForbiddenException, UnauthorizedException
from timeoff.config import settings
from timeoff.core_hr.models import Employee
from timeoff.database import get_db


def create_access_token(
    employee_id: uuid.UUID,
    expires_delta: Optional[timedelta] = None,
) -> str:
    expires = datetime.now(timezone.utc) + (
        expires_delta or timedelta(hours=settings.JWT_EXPIRY_HOURS)
    )
    payload = {
        "sub": str(employee_id),
        "type": "access",
        "exp": expires,
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def _extract_bearer(request: Request) -> str:
    """Extract Bearer token from Authorization header."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise UnauthorizedException("Missing or invalid Authorization header.")
    return auth_header[7:]


# ── Core dependency ─────────────────────────────────────────────────

async def get_current_user(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Employee:
    """Validate JWT and return the authenticated, active Employee."""
    token = _extract_bearer(request)

    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except ExpiredSignatureError:
        raise UnauthorizedException("Token has expired.")
    except JWTError:
        raise UnauthorizedException("Invalid token.")

    if payload.get("type") != "access":
        raise UnauthorizedException("Invalid token type.")

    try:
        employee_id = uuid.UUID(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise UnauthorizedException("Invalid token subject.")

    emp_result = await db.execute(
        select(Employee).where(
            Employee.id == employee_id,
            Employee.is_active.is_(True),
        ),
    )
    employee = emp_result.scalars().first()
    if employee is None:
        raise UnauthorizedException("User account is inactive or not found.")
    return employee


# ── Permission-based dependency ─────────────────────────────────────

def require_permission(
    resource: PermissionResource,
    action: PermissionAction,
) -> Callable:
    """Return a dependency that needs ``resource:action`` in some form.

    Conditional grants pass here; record-scoped checks happen in the
    service once the record owner is known.
    """

    async def _check(
        employee: Employee = Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
    ) -> Employee:
        result = await check_permission(db, employee.id, resource, action)
        if not result.allowed:
            raise ForbiddenException(
                detail=f"Permission '{resource.value}:{action.value}' is not granted.",
            )
        return employee

    return _check
