"""calendar_directory

Revision ID: cal_001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "cal_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS managed_calendars (
            id TEXT PRIMARY KEY,
            practitioner_id TEXT NOT NULL,
            calendar_id TEXT NOT NULL UNIQUE,
            mode TEXT NOT NULL DEFAULT 'managed',
            owner_account_email TEXT NOT NULL,
            shared_email TEXT NOT NULL,
            acl_role TEXT NOT NULL DEFAULT 'writer'
                CHECK (acl_role IN ('writer', 'reader')),
            integration_status TEXT NOT NULL DEFAULT 'pending'
                CHECK (integration_status IN ('pending', 'active', 'error', 'removed')),
            sync_token TEXT,
            channel_id TEXT UNIQUE,
            channel_resource_id TEXT,
            channel_expires_at TIMESTAMPTZ,
            channel_token TEXT,
            channel_address TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_managed_calendars_active
        ON managed_calendars (practitioner_id, mode)
        WHERE integration_status = 'active'
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_managed_calendars_channel_expiry
        ON managed_calendars (channel_expires_at)
        WHERE channel_id IS NOT NULL
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS appointment_calendar_events (
            appointment_id TEXT PRIMARY KEY,
            calendar_id TEXT NOT NULL,
            event_id TEXT NOT NULL,
            linked_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS appointment_calendar_events")
    op.execute("DROP TABLE IF EXISTS managed_calendars")
