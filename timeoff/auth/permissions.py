"""Permission evaluator — role → (resource, action, conditions) resolution.

A principal is allowed an action when any of its active roles grants the
(resource, action) pair. A grant with no conditions wins outright; otherwise
the conditions of every granting role are unioned and must be honoured by
record-scoped checks.

Absence of permission is a normal ``False`` result, never an exception, and
an unknown principal looks exactly like one without roles.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from timeoff.auth.models import Role, RoleAssignment, RolePermission
from timeoff.common.constants import Condition, PermissionAction, PermissionResource
from timeoff.core_hr.models import Employee

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PermissionGrant:
    """One (resource, action, conditions) triple granted by a role."""

    role_id: str
    resource: PermissionResource
    action: PermissionAction
    conditions: frozenset[Condition] = frozenset()


@dataclass(frozen=True)
class PermissionResult:
    allowed: bool
    conditions: frozenset[Condition] = field(default_factory=frozenset)

    @property
    def unconditional(self) -> bool:
        return self.allowed and not self.conditions


DENIED = PermissionResult(allowed=False)


def parse_conditions(raw: Optional[dict[str, Any]]) -> frozenset[Condition]:
    """Turn the stored JSON condition object into a set of Condition tags.

    Keys with a falsy value are dropped; unknown keys are logged and ignored.
    """
    if not raw:
        return frozenset()
    found: set[Condition] = set()
    for key, value in raw.items():
        if not value:
            continue
        try:
            found.add(Condition(key))
        except ValueError:
            logger.warning("Ignoring unknown permission condition %r", key)
    return frozenset(found)


def merge_grants(grants: Iterable[PermissionGrant]) -> PermissionResult:
    """Resolve the matching grants of all roles into a single result."""
    grants = list(grants)
    if not grants:
        return DENIED
    if any(not g.conditions for g in grants):
        return PermissionResult(allowed=True)
    merged: frozenset[Condition] = frozenset()
    for g in grants:
        merged |= g.conditions
    return PermissionResult(allowed=True, conditions=merged)


# ── Store lookups ───────────────────────────────────────────────────

async def roles_of(db: AsyncSession, principal_id: uuid.UUID) -> list[str]:
    """Return the ids of the principal's active roles."""
    result = await db.execute(
        select(RoleAssignment.role_id)
        .join(Role, Role.id == RoleAssignment.role_id)
        .where(
            RoleAssignment.employee_id == principal_id,
            Role.is_active.is_(True),
        )
    )
    return [row[0] for row in result.all()]


async def list_permissions(
    db: AsyncSession,
    role_ids: Sequence[str],
    *,
    resource: Optional[PermissionResource] = None,
    action: Optional[PermissionAction] = None,
) -> list[PermissionGrant]:
    """Return the grants held by the given roles, optionally narrowed."""
    if not role_ids:
        return []
    query = select(RolePermission).where(RolePermission.role_id.in_(list(role_ids)))
    if resource is not None:
        query = query.where(RolePermission.resource == resource)
    if action is not None:
        query = query.where(RolePermission.action == action)

    result = await db.execute(query)
    return [
        PermissionGrant(
            role_id=perm.role_id,
            resource=perm.resource,
            action=perm.action,
            conditions=parse_conditions(perm.conditions),
        )
        for perm in result.scalars().all()
    ]


async def manager_of(
    db: AsyncSession,
    employee_id: uuid.UUID,
) -> Optional[uuid.UUID]:
    result = await db.execute(
        select(Employee.reporting_manager_id).where(Employee.id == employee_id)
    )
    return result.scalar()


# ── Evaluation ──────────────────────────────────────────────────────

async def check_permission(
    db: AsyncSession,
    principal_id: uuid.UUID,
    resource: PermissionResource,
    action: PermissionAction,
) -> PermissionResult:
    """Evaluate whether the principal may perform ``action`` on ``resource``."""
    role_ids = await roles_of(db, principal_id)
    if not role_ids:
        return DENIED
    grants = await list_permissions(db, role_ids, resource=resource, action=action)
    return merge_grants(grants)


async def can_access_record(
    db: AsyncSession,
    principal_id: uuid.UUID,
    resource: PermissionResource,
    action: PermissionAction,
    record_owner_id: uuid.UUID,
) -> bool:
    """Record-scoped check on top of :func:`check_permission`.

    When both conditions are present, satisfying either one is enough.
    """
    result = await check_permission(db, principal_id, resource, action)
    if not result.allowed:
        return False
    if result.unconditional:
        return True

    if Condition.own_records_only in result.conditions:
        if record_owner_id == principal_id:
            return True
    if Condition.direct_reports_only in result.conditions:
        if await manager_of(db, record_owner_id) == principal_id:
            return True
    return False


async def has_any_role(
    db: AsyncSession,
    principal_id: uuid.UUID,
    role_ids: Iterable[str],
) -> bool:
    held = set(await roles_of(db, principal_id))
    return not held.isdisjoint(role_ids)


async def get_user_permissions(
    db: AsyncSession,
    principal_id: uuid.UUID,
) -> list[PermissionGrant]:
    """Every grant held by the principal across all active roles."""
    role_ids = await roles_of(db, principal_id)
    return await list_permissions(db, role_ids)
