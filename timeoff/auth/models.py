"""Auth ORM models: Role, RoleAssignment, RolePermission."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from timeoff.common.constants import PermissionAction, PermissionResource
from timeoff.core_hr.models import Employee
from timeoff.database import Base


class Role(Base):
    __tablename__ = "roles"

    # Slug id, e.g. "hr_admin"
    id: Mapped[str] = mapped_column(sa.String(50), primary_key=True)
    name: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(sa.Text)
    is_system: Mapped[bool] = mapped_column(
        sa.Boolean, server_default=sa.text("FALSE")
    )
    is_active: Mapped[bool] = mapped_column(
        sa.Boolean, server_default=sa.text("TRUE")
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now()
    )

    # Relationships
    permissions: Mapped[list[RolePermission]] = relationship(
        back_populates="role", cascade="all, delete-orphan"
    )


class RoleAssignment(Base):
    __tablename__ = "role_assignments"
    __table_args__ = (
        sa.UniqueConstraint("employee_id", "role_id", name="uq_role_assignment"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    employee_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        sa.ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
    )
    role_id: Mapped[str] = mapped_column(
        sa.String(50),
        sa.ForeignKey("roles.id", ondelete="CASCADE"),
        nullable=False,
    )
    assigned_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now()
    )

    # Relationships
    employee: Mapped[Employee] = relationship(foreign_keys=[employee_id])
    role: Mapped[Role] = relationship()


class RolePermission(Base):
    __tablename__ = "role_permissions"
    __table_args__ = (
        sa.UniqueConstraint(
            "role_id", "resource", "action", name="uq_role_permission"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    role_id: Mapped[str] = mapped_column(
        sa.String(50),
        sa.ForeignKey("roles.id", ondelete="CASCADE"),
        nullable=False,
    )
    resource: Mapped[PermissionResource] = mapped_column(
        sa.Enum(PermissionResource, name="permission_resource"), nullable=False
    )
    action: Mapped[PermissionAction] = mapped_column(
        sa.Enum(PermissionAction, name="permission_action"), nullable=False
    )
    # e.g. {"own_records_only": true}; NULL grants unconditionally
    conditions: Mapped[Optional[dict]] = mapped_column(JSONB(none_as_null=True))
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now()
    )

    # Relationships
    role: Mapped[Role] = relationship(back_populates="permissions")
