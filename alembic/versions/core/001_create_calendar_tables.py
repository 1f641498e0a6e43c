"""create_calendar_tables

Revision ID: core_001
Revises:
Create Date: 2026-10-01 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS family_members (
            family_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            joined_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            PRIMARY KEY (family_id, user_id)
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendars (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            description TEXT,
            color TEXT,
            type TEXT NOT NULL DEFAULT 'local'
                CHECK (type IN ('local', 'google', 'ical')),
            family_id TEXT,
            owner_id TEXT,
            is_default BOOLEAN NOT NULL DEFAULT false,
            timezone TEXT NOT NULL DEFAULT 'UTC',
            external_config JSONB NOT NULL DEFAULT '{}',
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_calendars_family ON calendars (family_id)")
    op.execute("CREATE INDEX IF NOT EXISTS idx_calendars_owner ON calendars (owner_id)")

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_permissions (
            calendar_id TEXT NOT NULL REFERENCES calendars (id) ON DELETE CASCADE,
            user_id TEXT NOT NULL,
            can_view BOOLEAN NOT NULL DEFAULT false,
            can_edit BOOLEAN NOT NULL DEFAULT false,
            can_share BOOLEAN NOT NULL DEFAULT false,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            PRIMARY KEY (calendar_id, user_id)
        )
    """)
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_calendar_permissions_user "
        "ON calendar_permissions (user_id) WHERE can_view"
    )

    op.execute("""
        CREATE TABLE IF NOT EXISTS events (
            id TEXT PRIMARY KEY,
            calendar_id TEXT NOT NULL REFERENCES calendars (id) ON DELETE CASCADE,
            family_id TEXT,
            title TEXT NOT NULL,
            description TEXT,
            location TEXT,
            start_time TIMESTAMPTZ NOT NULL,
            end_time TIMESTAMPTZ NOT NULL,
            status TEXT NOT NULL DEFAULT 'confirmed'
                CHECK (status IN ('confirmed', 'tentative', 'cancelled')),
            created_by TEXT NOT NULL,
            user_id TEXT,
            external_id TEXT,
            recurrence JSONB,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CHECK (start_time <= end_time)
        )
    """)
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_events_calendar_window "
        "ON events (calendar_id, start_time, end_time)"
    )
    op.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS uq_events_calendar_external_id "
        "ON events (calendar_id, external_id) WHERE external_id IS NOT NULL"
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS events")
    op.execute("DROP TABLE IF EXISTS calendar_permissions")
    op.execute("DROP TABLE IF EXISTS calendars")
    op.execute("DROP TABLE IF EXISTS family_members")
