"""Tests for appointment event creation, update and deletion."""

from __future__ import annotations

import pytest

from practice_calendar.calendar.errors import (
    CalendarNotFoundError,
    CalendarProviderError,
    ConflictDetectedError,
)
from practice_calendar.calendar.events import APPOINTMENT_ID_PROPERTY, PRACTITIONER_ID_PROPERTY
from practice_calendar.calendar.models import EventAttendee, EventPatch
from tests.conftest import at, session_spec

pytestmark = pytest.mark.unit


class TestCreateEvent:
    async def test_stores_event_with_appointment_metadata(
        self, service, provider, directory, provision
    ):
        record = await provision()
        spec = session_spec(
            at(14),
            at(15),
            attendees=[EventAttendee(email="client@example.test")],
            private_metadata={"source": "booking"},
        )

        event_id = await service.create_event(record.calendar_id, spec, "appt-1")

        event = provider.calendars[record.calendar_id].events[event_id]
        assert event.private_metadata == {
            "source": "booking",
            APPOINTMENT_ID_PROPERTY: "appt-1",
            PRACTITIONER_ID_PROPERTY: "prac-1",
        }
        assert event.conference_uri is not None
        assert [a.email for a in event.attendees] == ["client@example.test"]

        link = await directory.get_appointment_event("appt-1")
        assert (link.calendar_id, link.event_id) == (record.calendar_id, event_id)

    async def test_counts_created_events(self, service, provision):
        record = await provision()
        await service.create_event(record.calendar_id, session_spec(at(9), at(10)), "appt-1")
        await service.create_event(record.calendar_id, session_spec(at(10), at(11)), "appt-2")

        assert (await service.get_metrics()).events_created == 2

    async def test_transient_insert_failure_is_retried(self, service, provider, sleeps, provision):
        record = await provision()
        provider.fail_next(
            "insert_event", CalendarProviderError(status_code=500, message="Internal error")
        )

        event_id = await service.create_event(
            record.calendar_id, session_spec(at(14), at(15)), "appt-1"
        )

        assert event_id in provider.calendars[record.calendar_id].events
        assert sleeps == [1.0]

    async def test_event_spec_rejects_inverted_window(self):
        with pytest.raises(ValueError):
            session_spec(at(15), at(14))


class TestUpdateEvent:
    async def test_merges_patch_onto_current_event(self, service, provision):
        record = await provision()
        event_id = await service.create_event(
            record.calendar_id,
            session_spec(at(14), at(15), private_metadata={"room": "A"}),
            "appt-1",
        )

        updated = await service.update_event(
            record.calendar_id,
            event_id,
            EventPatch(summary="Rescheduled session", private_metadata={"room": "B"}),
        )

        assert updated.summary == "Rescheduled session"
        assert (updated.start_at, updated.end_at) == (at(14), at(15))
        assert updated.private_metadata["room"] == "B"
        assert updated.private_metadata[APPOINTMENT_ID_PROPERTY] == "appt-1"

    async def test_moves_event_and_frees_old_slot(self, service, provision):
        record = await provision()
        event_id = await service.create_event(
            record.calendar_id, session_spec(at(14), at(15)), "appt-1"
        )
        assert await service.check_conflicts(record.calendar_id, at(14), at(15))

        await service.update_event(
            record.calendar_id, event_id, EventPatch(start_at=at(16), end_at=at(17))
        )

        assert not await service.check_conflicts(record.calendar_id, at(14), at(15))
        assert await service.check_conflicts(record.calendar_id, at(16), at(17))

    async def test_moving_onto_busy_time_is_rejected(self, service, provider, provision):
        record = await provision()
        event_id = await service.create_event(
            record.calendar_id, session_spec(at(14), at(15)), "appt-1"
        )
        provider.add_busy(record.calendar_id, at(16), at(17), label="supervision")

        with pytest.raises(ConflictDetectedError) as excinfo:
            await service.update_event(
                record.calendar_id, event_id, EventPatch(start_at=at(16, 30), end_at=at(17, 30))
            )

        assert [(c.start, c.end) for c in excinfo.value.conflicts] == [(at(16), at(17))]
        current = await provider.get_event(record.calendar_id, event_id)
        assert (current.start_at, current.end_at) == (at(14), at(15))
        assert (await service.get_metrics()).conflicts_detected == 1

    async def test_extending_over_its_own_slot_is_allowed(self, service, provision):
        record = await provision()
        event_id = await service.create_event(
            record.calendar_id, session_spec(at(14), at(15)), "appt-1"
        )

        updated = await service.update_event(
            record.calendar_id, event_id, EventPatch(start_at=at(14, 30), end_at=at(15, 30))
        )

        assert (updated.start_at, updated.end_at) == (at(14, 30), at(15, 30))

    async def test_extending_into_the_next_session_is_rejected(self, service, provision):
        record = await provision()
        first = await service.create_event(
            record.calendar_id, session_spec(at(14), at(15)), "appt-1"
        )
        await service.create_event(record.calendar_id, session_spec(at(15), at(16)), "appt-2")

        with pytest.raises(ConflictDetectedError) as excinfo:
            await service.update_event(record.calendar_id, first, EventPatch(end_at=at(15, 30)))

        assert [(c.start, c.end) for c in excinfo.value.conflicts] == [(at(15), at(16))]

    async def test_rejects_patch_that_inverts_window(self, service, provision):
        record = await provision()
        event_id = await service.create_event(
            record.calendar_id, session_spec(at(14), at(15)), "appt-1"
        )

        with pytest.raises(ValueError):
            await service.update_event(record.calendar_id, event_id, EventPatch(end_at=at(13)))

    async def test_unknown_event(self, service, provision):
        record = await provision()

        with pytest.raises(CalendarNotFoundError):
            await service.update_event(record.calendar_id, "evt-missing", EventPatch(summary="x"))


class TestDeleteEvent:
    async def test_delete_frees_slot(self, service, provision):
        record = await provision()
        event_id = await service.create_event(
            record.calendar_id, session_spec(at(14), at(15)), "appt-1"
        )
        assert await service.check_conflicts(record.calendar_id, at(14), at(15))

        assert await service.delete_event(record.calendar_id, event_id) is True

        assert not await service.check_conflicts(record.calendar_id, at(14), at(15))

    async def test_delete_missing_event_reports_false(self, service, provision):
        record = await provision()
        event_id = await service.create_event(
            record.calendar_id, session_spec(at(14), at(15)), "appt-1"
        )
        await service.delete_event(record.calendar_id, event_id)

        assert await service.delete_event(record.calendar_id, event_id) is False

    async def test_delete_propagates_terminal_errors(self, service, provider, provision):
        record = await provision()
        provider.fail_next("delete_event", CalendarProviderError(status_code=403, message="no"))

        with pytest.raises(CalendarProviderError):
            await service.delete_event(record.calendar_id, "evt-1")
