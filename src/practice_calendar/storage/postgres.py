"""asyncpg-backed Calendar Directory.

Tables are created by the ``cal_001`` Alembic revision.  The single-active
invariant is enforced by the partial unique index
``uq_managed_calendars_active``; a violating write surfaces as
``CalendarDirectoryError``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import asyncpg

from practice_calendar.calendar.errors import CalendarDirectoryError
from practice_calendar.calendar.models import (
    DEFAULT_INTEGRATION_MODE,
    AppointmentEventLink,
    IntegrationStatus,
    ManagedCalendar,
    WebhookChannel,
)
from practice_calendar.db import Database
from practice_calendar.storage.directory import CalendarDirectory

logger = logging.getLogger(__name__)

_COLUMNS = """
    id, practitioner_id, calendar_id, mode, owner_account_email, shared_email,
    acl_role, integration_status, sync_token, channel_id, channel_resource_id,
    channel_expires_at, channel_token, channel_address, created_at, updated_at
"""


def _row_to_calendar(row: Any) -> ManagedCalendar:
    channel = None
    if row["channel_id"] is not None:
        channel = WebhookChannel(
            channel_id=row["channel_id"],
            resource_id=row["channel_resource_id"] or "",
            expires_at=row["channel_expires_at"],
            token=row["channel_token"],
            address=row["channel_address"],
        )
    return ManagedCalendar(
        id=row["id"],
        practitioner_id=row["practitioner_id"],
        calendar_id=row["calendar_id"],
        mode=row["mode"],
        owner_account_email=row["owner_account_email"],
        shared_email=row["shared_email"],
        acl_role=row["acl_role"],
        integration_status=IntegrationStatus(row["integration_status"]),
        sync_token=row["sync_token"],
        channel=channel,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresCalendarDirectory(CalendarDirectory):
    def __init__(self, db: Database) -> None:
        self._db = db

    async def _fetch_one(self, where: str, *args: Any) -> ManagedCalendar | None:
        row = await self._db.fetchrow(
            f"SELECT {_COLUMNS} FROM managed_calendars WHERE {where} "
            "ORDER BY updated_at DESC LIMIT 1",
            *args,
        )
        return _row_to_calendar(row) if row is not None else None

    async def get_active_calendar(
        self, practitioner_id: str, mode: str = DEFAULT_INTEGRATION_MODE
    ) -> ManagedCalendar | None:
        return await self._fetch_one(
            "practitioner_id = $1 AND mode = $2 AND integration_status = 'active'",
            practitioner_id,
            mode,
        )

    async def get_calendar(
        self, practitioner_id: str, mode: str = DEFAULT_INTEGRATION_MODE
    ) -> ManagedCalendar | None:
        return await self._fetch_one(
            "practitioner_id = $1 AND mode = $2 AND integration_status <> 'removed'",
            practitioner_id,
            mode,
        )

    async def get_by_calendar_id(self, calendar_id: str) -> ManagedCalendar | None:
        return await self._fetch_one("calendar_id = $1", calendar_id)

    async def get_by_channel_id(self, channel_id: str) -> ManagedCalendar | None:
        return await self._fetch_one("channel_id = $1", channel_id)

    async def list_calendars(
        self, *, status: IntegrationStatus | None = None
    ) -> list[ManagedCalendar]:
        if status is None:
            rows = await self._db.fetch(
                f"SELECT {_COLUMNS} FROM managed_calendars ORDER BY created_at"
            )
        else:
            rows = await self._db.fetch(
                f"SELECT {_COLUMNS} FROM managed_calendars "
                "WHERE integration_status = $1 ORDER BY created_at",
                status.value,
            )
        return [_row_to_calendar(row) for row in rows]

    async def list_channels_expiring_before(self, cutoff: datetime) -> list[ManagedCalendar]:
        rows = await self._db.fetch(
            f"SELECT {_COLUMNS} FROM managed_calendars "
            "WHERE integration_status = 'active' AND channel_id IS NOT NULL "
            "AND channel_expires_at <= $1 ORDER BY channel_expires_at",
            cutoff,
        )
        return [_row_to_calendar(row) for row in rows]

    async def save_calendar(self, record: ManagedCalendar) -> ManagedCalendar:
        channel = record.channel
        try:
            row = await self._db.fetchrow(
                f"""
                INSERT INTO managed_calendars ({_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, now())
                ON CONFLICT (id) DO UPDATE SET
                    practitioner_id = EXCLUDED.practitioner_id,
                    calendar_id = EXCLUDED.calendar_id,
                    mode = EXCLUDED.mode,
                    owner_account_email = EXCLUDED.owner_account_email,
                    shared_email = EXCLUDED.shared_email,
                    acl_role = EXCLUDED.acl_role,
                    integration_status = EXCLUDED.integration_status,
                    sync_token = EXCLUDED.sync_token,
                    channel_id = EXCLUDED.channel_id,
                    channel_resource_id = EXCLUDED.channel_resource_id,
                    channel_expires_at = EXCLUDED.channel_expires_at,
                    channel_token = EXCLUDED.channel_token,
                    channel_address = EXCLUDED.channel_address,
                    updated_at = now()
                RETURNING {_COLUMNS}
                """,
                record.id,
                record.practitioner_id,
                record.calendar_id,
                record.mode,
                record.owner_account_email,
                record.shared_email,
                record.acl_role,
                record.integration_status.value,
                record.sync_token,
                channel.channel_id if channel else None,
                channel.resource_id if channel else None,
                channel.expires_at if channel else None,
                channel.token if channel else None,
                channel.address if channel else None,
                record.created_at,
            )
        except asyncpg.UniqueViolationError as exc:
            raise CalendarDirectoryError(
                f"Calendar record for practitioner {record.practitioner_id!r} "
                f"violates a uniqueness constraint: {exc.constraint_name}"
            ) from exc
        return _row_to_calendar(row)

    async def update_status(self, record_id: str, status: IntegrationStatus) -> ManagedCalendar:
        try:
            row = await self._db.fetchrow(
                f"UPDATE managed_calendars SET integration_status = $2, updated_at = now() "
                f"WHERE id = $1 RETURNING {_COLUMNS}",
                record_id,
                status.value,
            )
        except asyncpg.UniqueViolationError as exc:
            raise CalendarDirectoryError(
                f"Activating record {record_id!r} would create a second active calendar"
            ) from exc
        if row is None:
            raise CalendarDirectoryError(f"Unknown calendar record {record_id!r}")
        return _row_to_calendar(row)

    async def swap_channel(
        self,
        record_id: str,
        expected_channel_id: str | None,
        channel: WebhookChannel | None,
    ) -> bool:
        result = await self._db.execute(
            """
            UPDATE managed_calendars SET
                channel_id = $3,
                channel_resource_id = $4,
                channel_expires_at = $5,
                channel_token = $6,
                channel_address = $7,
                updated_at = now()
            WHERE id = $1 AND channel_id IS NOT DISTINCT FROM $2
            """,
            record_id,
            expected_channel_id,
            channel.channel_id if channel else None,
            channel.resource_id if channel else None,
            channel.expires_at if channel else None,
            channel.token if channel else None,
            channel.address if channel else None,
        )
        return result == "UPDATE 1"

    async def update_sync_token(self, record_id: str, sync_token: str | None) -> None:
        await self._db.execute(
            "UPDATE managed_calendars SET sync_token = $2, updated_at = now() WHERE id = $1",
            record_id,
            sync_token,
        )

    async def record_appointment_event(self, link: AppointmentEventLink) -> None:
        await self._db.execute(
            """
            INSERT INTO appointment_calendar_events (appointment_id, calendar_id, event_id, linked_at)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (appointment_id) DO UPDATE SET
                calendar_id = EXCLUDED.calendar_id,
                event_id = EXCLUDED.event_id,
                linked_at = EXCLUDED.linked_at
            """,
            link.appointment_id,
            link.calendar_id,
            link.event_id,
            link.linked_at,
        )

    async def get_appointment_event(self, appointment_id: str) -> AppointmentEventLink | None:
        row = await self._db.fetchrow(
            "SELECT appointment_id, calendar_id, event_id, linked_at "
            "FROM appointment_calendar_events WHERE appointment_id = $1",
            appointment_id,
        )
        if row is None:
            return None
        return AppointmentEventLink(**dict(row))

    async def count_calendars(self, *, status: IntegrationStatus | None = None) -> int:
        if status is None:
            return int(await self._db.fetchval("SELECT count(*) FROM managed_calendars"))
        return int(
            await self._db.fetchval(
                "SELECT count(*) FROM managed_calendars WHERE integration_status = $1",
                status.value,
            )
        )
