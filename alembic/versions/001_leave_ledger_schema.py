"""001 – Leave & attendance schema: employees, leave ledger, attendance, audit.

Revision ID: 001_leave_ledger_schema
Revises:
Create Date: 2026-10-18 10:00:00.000000+00:00
"""

from alembic import op

# Revision identifiers
revision = "001_leave_ledger_schema"
down_revision = None
branch_labels = None
depends_on = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

ENUM_TYPES: list[tuple[str, list[str]]] = [
    ("leave_status", ["pending", "approved", "rejected", "cancelled"]),
    (
        "attendance_status",
        ["present", "absent", "leave", "holiday", "half_day", "weekend"],
    ),
]


def _create_enum(name: str, values: list[str]) -> None:
    vals = ", ".join(f"'{v}'" for v in values)
    op.execute(f"CREATE TYPE {name} AS ENUM ({vals})")


def _drop_enum(name: str) -> None:
    op.execute(f"DROP TYPE IF EXISTS {name}")


# ---------------------------------------------------------------------------
# UPGRADE
# ---------------------------------------------------------------------------


def upgrade() -> None:
    # ── Extensions ────────────────────────────────────────────────────────
    op.execute('CREATE EXTENSION IF NOT EXISTS "uuid-ossp"')

    # ── Enum types ────────────────────────────────────────────────────────
    for name, values in ENUM_TYPES:
        _create_enum(name, values)

    # ── 1. employees ──────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE employees (
            id                   UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            employee_code        VARCHAR(20)  NOT NULL UNIQUE,
            first_name           VARCHAR(100) NOT NULL,
            last_name            VARCHAR(100) NOT NULL,
            email                VARCHAR(255) NOT NULL UNIQUE,
            reporting_manager_id UUID REFERENCES employees(id),
            is_active            BOOLEAN DEFAULT TRUE,
            created_at           TIMESTAMPTZ DEFAULT NOW(),
            updated_at           TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute(
        "CREATE INDEX idx_emp_manager ON employees(reporting_manager_id)"
    )

    # ── 2. leave_types ────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE leave_types (
            id                   UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            code                 VARCHAR(10)  NOT NULL UNIQUE,
            name                 VARCHAR(100) NOT NULL,
            description          TEXT,
            default_annual_quota NUMERIC(5,1) DEFAULT 0,
            max_consecutive_days INTEGER DEFAULT 0,
            is_carry_forward     BOOLEAN DEFAULT FALSE,
            requires_approval    BOOLEAN DEFAULT TRUE,
            is_active            BOOLEAN DEFAULT TRUE,
            created_at           TIMESTAMPTZ DEFAULT NOW(),
            updated_at           TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT ck_leave_type_quota    CHECK (default_annual_quota >= 0),
            CONSTRAINT ck_leave_type_max_days CHECK (max_consecutive_days >= 0)
        )
    """)

    # ── 3. leave_balances ─────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE leave_balances (
            id               UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            employee_id      UUID NOT NULL REFERENCES employees(id),
            leave_type_id    UUID NOT NULL REFERENCES leave_types(id),
            year             INTEGER NOT NULL,
            allocated_leaves NUMERIC(5,1) DEFAULT 0,
            carried_forward  NUMERIC(5,1) DEFAULT 0,
            used_leaves      NUMERIC(5,1) DEFAULT 0,
            pending_leaves   NUMERIC(5,1) DEFAULT 0,
            version          INTEGER NOT NULL DEFAULT 1,
            created_at       TIMESTAMPTZ DEFAULT NOW(),
            updated_at       TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT uq_leave_balance UNIQUE (employee_id, leave_type_id, year),
            CONSTRAINT ck_balance_used_non_negative    CHECK (used_leaves >= 0),
            CONSTRAINT ck_balance_pending_non_negative CHECK (pending_leaves >= 0),
            CONSTRAINT ck_balance_within_entitlement
                CHECK (used_leaves + pending_leaves <= allocated_leaves + carried_forward)
        )
    """)

    # ── 4. leave_requests ─────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE leave_requests (
            id                   UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            employee_id          UUID NOT NULL REFERENCES employees(id),
            leave_type_id        UUID NOT NULL REFERENCES leave_types(id),
            start_date           DATE NOT NULL,
            end_date             DATE NOT NULL,
            duration             NUMERIC(5,1) NOT NULL,
            is_half_day          BOOLEAN DEFAULT FALSE,
            reason               TEXT,
            contact_during_leave VARCHAR(100),
            status               leave_status NOT NULL DEFAULT 'pending',
            approved_by          UUID REFERENCES employees(id),
            rejection_reason     TEXT,
            cancelled_by         UUID REFERENCES employees(id),
            cancelled_at         TIMESTAMPTZ,
            applied_date         TIMESTAMPTZ DEFAULT NOW(),
            last_modified        TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT ck_leave_request_dates    CHECK (start_date <= end_date),
            CONSTRAINT ck_leave_request_duration CHECK (duration > 0)
        )
    """)
    op.execute("""
        CREATE INDEX ix_leave_requests_employee_dates
            ON leave_requests(employee_id, start_date, end_date)
    """)
    op.execute("CREATE INDEX idx_leave_req_status ON leave_requests(status)")

    # ── 5. attendance_records ─────────────────────────────────────────────
    op.execute("""
        CREATE TABLE attendance_records (
            id               UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            employee_id      UUID NOT NULL REFERENCES employees(id),
            date             DATE NOT NULL,
            status           attendance_status NOT NULL DEFAULT 'absent',
            check_in         TIMESTAMPTZ,
            check_out        TIMESTAMPTZ,
            work_hours       NUMERIC(5,2),
            is_leave         BOOLEAN DEFAULT FALSE,
            leave_request_id UUID REFERENCES leave_requests(id),
            status_before_leave attendance_status,
            remarks          TEXT,
            created_at       TIMESTAMPTZ DEFAULT NOW(),
            updated_at       TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT uq_attendance_emp_date UNIQUE (employee_id, date)
        )
    """)
    op.execute("""
        CREATE INDEX ix_attendance_leave_request_id
            ON attendance_records(leave_request_id)
    """)

    # ── 6. audit_trail ────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE audit_trail (
            id          UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            actor_id    UUID REFERENCES employees(id),
            action      VARCHAR(50) NOT NULL,
            entity_type VARCHAR(50) NOT NULL,
            entity_id   UUID NOT NULL,
            old_values  JSONB,
            new_values  JSONB,
            created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX ix_audit_trail_entity
            ON audit_trail(entity_type, entity_id)
    """)
    op.execute("CREATE INDEX ix_audit_trail_actor_id   ON audit_trail(actor_id)")
    op.execute("CREATE INDEX ix_audit_trail_created_at ON audit_trail(created_at)")

    # ── Seed leave types ──────────────────────────────────────────────────
    op.execute("""
        INSERT INTO leave_types
            (code, name, default_annual_quota, max_consecutive_days, requires_approval)
        VALUES
            ('AL', 'Annual Leave', 20, 0,  TRUE),
            ('SL', 'Sick Leave',   10, 5,  TRUE),
            ('CL', 'Casual Leave',  7, 3,  TRUE)
    """)


# ---------------------------------------------------------------------------
# DOWNGRADE
# ---------------------------------------------------------------------------


def downgrade() -> None:
    # Drop tables in reverse dependency order
    tables = [
        "audit_trail",
        "attendance_records",
        "leave_requests",
        "leave_balances",
        "leave_types",
        "employees",
    ]
    for t in tables:
        op.execute(f"DROP TABLE IF EXISTS {t} CASCADE")

    # Drop enum types
    for name, _ in reversed(ENUM_TYPES):
        _drop_enum(name)

    op.execute('DROP EXTENSION IF EXISTS "uuid-ossp"')
