"""Calendar Lifecycle Manager: provision, verify and tear down managed calendars."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable

from practice_calendar.calendar.channels import ChannelManager
from practice_calendar.calendar.errors import (
    CalendarCreateError,
    CalendarNotFoundError,
    CalendarServiceError,
)
from practice_calendar.calendar.models import (
    DEFAULT_INTEGRATION_MODE,
    AclRole,
    AclRule,
    CalendarCreateRequest,
    IntegrationStatus,
    ManagedCalendar,
)
from practice_calendar.calendar.provider import CalendarProvider
from practice_calendar.calendar.retry import RetryExecutor
from practice_calendar.core.logging import calendar_log_context
from practice_calendar.storage.directory import CalendarDirectory

logger = logging.getLogger(__name__)

CALENDAR_SUMMARY_SUFFIX = "Therapy Sessions"


def calendar_summary(display_name: str) -> str:
    return f"{display_name} - {CALENDAR_SUMMARY_SUFFIX}"


class CalendarLifecycleManager:
    def __init__(
        self,
        provider: CalendarProvider,
        executor: RetryExecutor,
        directory: CalendarDirectory,
        channels: ChannelManager,
        *,
        owner_account_email: str,
        timezone: str = "Europe/London",
        mode: str = DEFAULT_INTEGRATION_MODE,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self._provider = provider
        self._executor = executor
        self._directory = directory
        self._channels = channels
        self.owner_account_email = owner_account_email
        self.timezone = timezone
        self.mode = mode
        self._id_factory = id_factory
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, practitioner_id: str) -> asyncio.Lock:
        lock = self._locks.get(practitioner_id)
        if lock is None:
            lock = self._locks[practitioner_id] = asyncio.Lock()
        return lock

    async def get_calendar(self, practitioner_id: str) -> ManagedCalendar | None:
        return await self._directory.get_calendar(practitioner_id, self.mode)

    async def create_managed_calendar(
        self,
        practitioner_id: str,
        practitioner_email: str,
        *,
        display_name: str | None = None,
    ) -> ManagedCalendar:
        """Provision (or return) the practitioner's active managed calendar.

        Idempotent: an existing ``active`` record is returned unchanged.  A
        ``pending``/``error`` record whose provider calendar still exists is
        resumed from the ACL step instead of creating another calendar.
        Webhook setup failures are logged and do not fail provisioning.
        """
        with calendar_log_context(practitioner_id=practitioner_id):
            async with self._lock_for(practitioner_id):
                existing = await self._directory.get_active_calendar(practitioner_id, self.mode)
                if existing is not None:
                    logger.debug("Practitioner already has active calendar %s", existing.calendar_id)
                    return existing

                record = await self._resumable_record(practitioner_id)
                if record is None:
                    record = await self._create_record(
                        practitioner_id, practitioner_email, display_name or practitioner_email
                    )

                with calendar_log_context(calendar_id=record.calendar_id):
                    try:
                        await self.ensure_acl(record.calendar_id, practitioner_email, "writer")
                    except CalendarServiceError:
                        await self._directory.update_status(record.id, IntegrationStatus.ERROR)
                        logger.error(
                            "ACL grant failed for calendar %s; record marked error",
                            record.calendar_id,
                        )
                        raise

                    record = await self._directory.update_status(record.id, IntegrationStatus.ACTIVE)
                    logger.info("Managed calendar %s is active", record.calendar_id)

                    if self._channels.webhook_url:
                        try:
                            await self._channels.watch_calendar(record.calendar_id)
                        except CalendarServiceError as exc:
                            logger.warning(
                                "Webhook setup failed for calendar %s; falling back to polling: %s",
                                record.calendar_id,
                                exc,
                            )
                        refreshed = await self._directory.get_by_calendar_id(record.calendar_id)
                        if refreshed is not None:
                            record = refreshed
                    return record

    async def _resumable_record(self, practitioner_id: str) -> ManagedCalendar | None:
        record = await self._directory.get_calendar(practitioner_id, self.mode)
        if record is None or record.integration_status not in (
            IntegrationStatus.PENDING,
            IntegrationStatus.ERROR,
        ):
            return None
        if not await self.verify_calendar_access(record.calendar_id):
            logger.info("Stale %s record %s dropped", record.integration_status, record.calendar_id)
            await self._directory.update_status(record.id, IntegrationStatus.REMOVED)
            return None
        logger.info("Resuming provisioning of calendar %s", record.calendar_id)
        return record

    async def _create_record(
        self, practitioner_id: str, practitioner_email: str, display_name: str
    ) -> ManagedCalendar:
        request = CalendarCreateRequest(
            summary=calendar_summary(display_name),
            description=f"Appointments managed for practitioner {practitioner_id}",
            timezone=self.timezone,
        )
        try:
            created = await self._executor.run(
                "create_calendar", lambda: self._provider.create_calendar(request)
            )
        except CalendarServiceError as exc:
            raise CalendarCreateError(
                f"Failed to create calendar for practitioner {practitioner_id}: {exc.message}",
                retryable=exc.retryable,
            ) from exc

        logger.info("Created provider calendar %s", created.calendar_id)
        return await self._directory.save_calendar(
            ManagedCalendar(
                id=self._id_factory(),
                practitioner_id=practitioner_id,
                calendar_id=created.calendar_id,
                mode=self.mode,
                owner_account_email=self.owner_account_email,
                shared_email=practitioner_email,
                acl_role="writer",
                integration_status=IntegrationStatus.PENDING,
            )
        )

    async def verify_calendar_access(self, calendar_id: str) -> bool:
        """Return False when the calendar no longer exists; other errors propagate."""
        try:
            await self._executor.run(
                "get_calendar",
                lambda: self._provider.get_calendar(calendar_id),
                calendar_id=calendar_id,
            )
        except CalendarNotFoundError:
            return False
        return True

    async def ensure_acl(self, calendar_id: str, email: str, role: AclRole) -> AclRule:
        """Grant *role* to *email* unless an identical grant already exists."""
        rules = await self._executor.run(
            "list_acl", lambda: self._provider.list_acl(calendar_id), calendar_id=calendar_id
        )
        normalized = email.strip().lower()
        for rule in rules:
            if rule.scope_value.strip().lower() == normalized and rule.role == role:
                return rule

        rule = AclRule(role=role, scope_type="user", scope_value=email.strip())
        granted = await self._executor.run(
            "insert_acl",
            lambda: self._provider.insert_acl(calendar_id, rule),
            calendar_id=calendar_id,
        )
        logger.info("Granted %s access on calendar %s", role, calendar_id)
        return granted

    async def delete_calendar(self, calendar_id: str) -> None:
        """Delete the provider calendar; an already-missing calendar counts as success."""
        try:
            await self._executor.run(
                "delete_calendar",
                lambda: self._provider.delete_calendar(calendar_id),
                calendar_id=calendar_id,
            )
        except CalendarNotFoundError:
            logger.info("Calendar %s already deleted at provider", calendar_id)
            return
        logger.info("Deleted provider calendar %s", calendar_id)

    async def teardown_calendar(self, practitioner_id: str) -> ManagedCalendar | None:
        """Admin teardown: stop the channel, delete the calendar, mark the record removed."""
        with calendar_log_context(practitioner_id=practitioner_id):
            async with self._lock_for(practitioner_id):
                record = await self._directory.get_calendar(practitioner_id, self.mode)
                if record is None:
                    return None
                with calendar_log_context(calendar_id=record.calendar_id):
                    await self._channels.remove_channel(record)
                    await self.delete_calendar(record.calendar_id)
                    removed = await self._directory.update_status(
                        record.id, IntegrationStatus.REMOVED
                    )
                    logger.info("Tore down managed calendar %s", record.calendar_id)
                    return removed
