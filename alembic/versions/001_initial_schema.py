"""001 – Initial schema: all tables, indexes, enums, seed data.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19 09:00:00.000000+00:00
"""

import json

from alembic import op

# Revision identifiers
revision = "001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

ENUM_TYPES: list[tuple[str, list[str]]] = [
    ("leave_status", ["pending", "approved", "declined", "cancelled"]),
    (
        "permission_resource",
        [
            "users",
            "leave_requests",
            "leave_balances",
            "leave_policies",
            "public_holidays",
            "roles",
        ],
    ),
    ("permission_action", ["view", "create", "edit", "delete", "approve"]),
]

ALL_ACTIONS = ["view", "create", "edit", "delete", "approve"]
OWN = {"own_records_only": True}
REPORTS = {"direct_reports_only": True}

SYSTEM_ROLES: list[tuple[str, str, str]] = [
    ("employee", "Employee", "Requests and manages their own leave"),
    ("team_lead", "Team Lead", "Reviews leave for direct reports"),
    ("manager", "Manager", "Reviews and manages leave for direct reports"),
    ("hr_admin", "HR Admin", "Full leave administration"),
    ("super_admin", "Super Admin", "Unrestricted access"),
]

# (role, resource, action, conditions)
SEED_PERMISSIONS: list[tuple[str, str, str, dict | None]] = [
    ("employee", "users", "view", OWN),
    ("employee", "leave_requests", "view", OWN),
    ("employee", "leave_requests", "create", OWN),
    ("employee", "leave_requests", "edit", OWN),
    ("employee", "leave_balances", "view", OWN),
    ("employee", "public_holidays", "view", None),
    ("employee", "leave_policies", "view", None),

    ("team_lead", "users", "view", REPORTS),
    ("team_lead", "leave_requests", "view", REPORTS),
    ("team_lead", "leave_requests", "approve", REPORTS),
    ("team_lead", "leave_balances", "view", REPORTS),

    ("manager", "users", "view", REPORTS),
    ("manager", "leave_requests", "view", REPORTS),
    ("manager", "leave_requests", "edit", REPORTS),
    ("manager", "leave_requests", "delete", REPORTS),
    ("manager", "leave_requests", "approve", REPORTS),
    ("manager", "leave_balances", "view", REPORTS),

    *[("hr_admin", "leave_requests", a, None) for a in ALL_ACTIONS],
    *[("hr_admin", "leave_policies", a, None) for a in ALL_ACTIONS],
    *[("hr_admin", "public_holidays", a, None) for a in ALL_ACTIONS],
    ("hr_admin", "leave_balances", "view", None),
    ("hr_admin", "leave_balances", "edit", None),
    ("hr_admin", "users", "view", None),
    ("hr_admin", "users", "edit", None),

    *[
        ("super_admin", resource, a, None)
        for resource in ENUM_TYPES[1][1]
        for a in ALL_ACTIONS
    ],
]

DEFAULT_POLICY_CONFIG = {
    "leave_types": {
        "annual": {
            "enabled": True,
            "default_allowance_hours": 200,
            "accrual": {"type": "upfront", "pro_rata_first_year": True},
            "carry_over": {"enabled": True, "max_hours": 40, "expires_after_months": 3},
            "rules": {"min_notice_hours": 0, "requires_approval": True},
        },
        "sick": {
            "enabled": True,
            "default_allowance_hours": 80,
            "rules": {"requires_document_after_hours": 24, "requires_approval": True},
        },
        "unpaid": {
            "enabled": True,
            "default_allowance_hours": 0,
            "rules": {"requires_approval": True},
        },
    },
}


def _create_enum(name: str, values: list[str]) -> None:
    vals = ", ".join(f"'{v}'" for v in values)
    op.execute(f"CREATE TYPE {name} AS ENUM ({vals})")


def _drop_enum(name: str) -> None:
    op.execute(f"DROP TYPE IF EXISTS {name}")


def _sql_json(value: dict | None) -> str:
    if value is None:
        return "NULL"
    return "'" + json.dumps(value).replace("'", "''") + "'::jsonb"


# ---------------------------------------------------------------------------
# UPGRADE
# ---------------------------------------------------------------------------


def upgrade() -> None:
    # ── Extensions ────────────────────────────────────────────────────────
    op.execute('CREATE EXTENSION IF NOT EXISTS "uuid-ossp"')

    # ── Enum types ────────────────────────────────────────────────────────
    for name, values in ENUM_TYPES:
        _create_enum(name, values)

    # ── 1. leave_policies ─────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE leave_policies (
            id              UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            name            VARCHAR(100) NOT NULL,
            description     TEXT,
            working_days    JSONB NOT NULL DEFAULT '[1, 2, 3, 4, 5]',
            holiday_region  VARCHAR(10),
            config          JSONB NOT NULL DEFAULT '{}',
            is_default      BOOLEAN DEFAULT FALSE,
            is_active       BOOLEAN DEFAULT TRUE,
            created_at      TIMESTAMPTZ DEFAULT NOW(),
            updated_at      TIMESTAMPTZ DEFAULT NOW()
        )
    """)

    # ── 2. employees ──────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE employees (
            id                    UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            employee_code         VARCHAR(20) UNIQUE NOT NULL,
            email                 VARCHAR(255) UNIQUE NOT NULL,
            first_name            VARCHAR(100) NOT NULL,
            last_name             VARCHAR(100) NOT NULL,
            reporting_manager_id  UUID REFERENCES employees(id) ON DELETE SET NULL,
            region                VARCHAR(10),
            policy_id             UUID REFERENCES leave_policies(id),
            date_of_joining       DATE,
            is_active             BOOLEAN DEFAULT TRUE,
            created_at            TIMESTAMPTZ DEFAULT NOW(),
            updated_at            TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute(
        "CREATE INDEX ix_employees_reporting_manager ON employees(reporting_manager_id)"
    )

    # ── 3. roles / role_assignments / role_permissions ────────────────────
    op.execute("""
        CREATE TABLE roles (
            id           VARCHAR(50) PRIMARY KEY,
            name         VARCHAR(100) NOT NULL,
            description  TEXT,
            is_system    BOOLEAN DEFAULT FALSE,
            is_active    BOOLEAN DEFAULT TRUE,
            created_at   TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE TABLE role_assignments (
            id           UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            employee_id  UUID NOT NULL REFERENCES employees(id) ON DELETE CASCADE,
            role_id      VARCHAR(50) NOT NULL REFERENCES roles(id) ON DELETE CASCADE,
            assigned_at  TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT uq_role_assignment UNIQUE (employee_id, role_id)
        )
    """)
    op.execute("""
        CREATE TABLE role_permissions (
            id          UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            role_id     VARCHAR(50) NOT NULL REFERENCES roles(id) ON DELETE CASCADE,
            resource    permission_resource NOT NULL,
            action      permission_action NOT NULL,
            conditions  JSONB,
            created_at  TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT uq_role_permission UNIQUE (role_id, resource, action)
        )
    """)

    # ── 4. public_holidays ────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE public_holidays (
            id          UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            name        VARCHAR(150) NOT NULL,
            date        DATE NOT NULL,
            region      VARCHAR(10) NOT NULL,
            year        INTEGER NOT NULL,
            created_at  TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT uq_public_holiday_date_region UNIQUE (date, region)
        )
    """)
    op.execute(
        "CREATE INDEX ix_public_holidays_region_date ON public_holidays(region, date)"
    )

    # ── 5. leave_types ────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE leave_types (
            id           UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            code         VARCHAR(30) UNIQUE NOT NULL,
            name         VARCHAR(100) NOT NULL,
            description  TEXT,
            sort_order   INTEGER DEFAULT 0,
            is_active    BOOLEAN DEFAULT TRUE,
            created_at   TIMESTAMPTZ DEFAULT NOW()
        )
    """)

    # ── 6. leave_balances ─────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE leave_balances (
            id             UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            employee_id    UUID NOT NULL REFERENCES employees(id) ON DELETE CASCADE,
            leave_type_id  UUID NOT NULL REFERENCES leave_types(id),
            year           INTEGER NOT NULL,
            allowance      NUMERIC(7,2) DEFAULT 0,
            used           NUMERIC(7,2) DEFAULT 0,
            scheduled      NUMERIC(7,2) DEFAULT 0,
            carried_over   NUMERIC(7,2) DEFAULT 0,
            adjustment     NUMERIC(7,2) DEFAULT 0,
            updated_at     TIMESTAMPTZ,
            CONSTRAINT uq_leave_balance UNIQUE (employee_id, leave_type_id, year)
        )
    """)

    # ── 7. leave_requests ─────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE leave_requests (
            id                 UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            employee_id        UUID NOT NULL REFERENCES employees(id) ON DELETE CASCADE,
            leave_type_id      UUID NOT NULL REFERENCES leave_types(id),
            start_date         DATE NOT NULL,
            end_date           DATE NOT NULL,
            half_day           BOOLEAN DEFAULT FALSE,
            total_hours        NUMERIC(7,2) NOT NULL,
            note               TEXT,
            status             leave_status NOT NULL DEFAULT 'pending',
            reviewer_id        UUID REFERENCES employees(id) ON DELETE SET NULL,
            reviewer_note      TEXT,
            reviewed_at        TIMESTAMPTZ,
            auto_approved      BOOLEAN DEFAULT FALSE,
            document_required  BOOLEAN DEFAULT FALSE,
            cancelled_at       TIMESTAMPTZ,
            created_at         TIMESTAMPTZ DEFAULT NOW(),
            updated_at         TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT ck_leave_request_dates CHECK (end_date >= start_date)
        )
    """)
    op.execute(
        "CREATE INDEX ix_leave_requests_employee_dates "
        "ON leave_requests(employee_id, start_date, end_date)"
    )
    op.execute("CREATE INDEX ix_leave_requests_status ON leave_requests(status)")

    # ── 8. audit_trail ────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE audit_trail (
            id           UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            actor_id     UUID REFERENCES employees(id) ON DELETE SET NULL,
            action       VARCHAR(50) NOT NULL,
            entity_type  VARCHAR(50) NOT NULL,
            entity_id    UUID NOT NULL,
            changes      JSONB,
            created_at   TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
    """)
    op.execute("CREATE INDEX ix_audit_trail_actor_id ON audit_trail(actor_id)")
    op.execute(
        "CREATE INDEX ix_audit_trail_entity ON audit_trail(entity_type, entity_id)"
    )
    op.execute("CREATE INDEX ix_audit_trail_created_at ON audit_trail(created_at)")

    # ══════════════════════════════════════════════════════════════════════
    # Seed data
    # ══════════════════════════════════════════════════════════════════════

    role_rows = ",\n".join(
        f"('{rid}', '{name}', '{desc}', TRUE)" for rid, name, desc in SYSTEM_ROLES
    )
    op.execute(
        f"INSERT INTO roles (id, name, description, is_system) VALUES\n{role_rows}"
    )

    perm_rows = ",\n".join(
        f"('{role}', '{resource}', '{action}', {_sql_json(cond)})"
        for role, resource, action, cond in SEED_PERMISSIONS
    )
    op.execute(
        "INSERT INTO role_permissions (role_id, resource, action, conditions) VALUES\n"
        + perm_rows
    )

    # Leave types
    op.execute("""
        INSERT INTO leave_types (code, name, description, sort_order) VALUES
        ('annual', 'Annual Leave', 'Paid holiday allowance',       1),
        ('sick',   'Sick Leave',   'Absence through illness',      2),
        ('unpaid', 'Unpaid Leave', 'Leave without pay, unlimited', 3)
    """)

    op.execute(
        "INSERT INTO leave_policies (name, description, holiday_region, config, is_default) "
        "VALUES ('Standard', 'Default company policy', 'UK', "
        f"{_sql_json(DEFAULT_POLICY_CONFIG)}, TRUE)"
    )


# ---------------------------------------------------------------------------
# DOWNGRADE
# ---------------------------------------------------------------------------


def downgrade() -> None:
    # Drop tables in reverse dependency order
    tables = [
        "audit_trail",
        "leave_requests",
        "leave_balances",
        "leave_types",
        "public_holidays",
        "role_permissions",
        "role_assignments",
        "roles",
        "employees",
        "leave_policies",
    ]
    for t in tables:
        op.execute(f"DROP TABLE IF EXISTS {t} CASCADE")

    for name, _ in reversed(ENUM_TYPES):
        _drop_enum(name)

    op.execute('DROP EXTENSION IF EXISTS "uuid-ossp"')
