"""Tests for batched practitioner availability checks."""

from __future__ import annotations

import pytest

from practice_calendar.calendar.batch import BatchAvailabilityChecker
from practice_calendar.calendar.models import AvailabilityRequest, IntegrationStatus
from tests.conftest import at, make_config, session_spec

pytestmark = pytest.mark.unit


def _request(practitioner_id: str, start_hour: int = 14, end_hour: int = 15):
    return AvailabilityRequest(
        practitioner_id=practitioner_id, start_at=at(start_hour), end_at=at(end_hour)
    )


class TestBatchAvailability:
    async def test_responses_follow_request_order(self, service, provision):
        busy = await provision("prac-1", "ada@clinic.test")
        await provision("prac-2", "bo@clinic.test")
        await service.create_event(busy.calendar_id, session_spec(at(14), at(15)), "appt-1")

        responses = await service.batch_check_availability(
            [_request("prac-2"), _request("prac-1"), _request("prac-2", 16, 17)]
        )

        assert [r.practitioner_id for r in responses] == ["prac-2", "prac-1", "prac-2"]
        assert [r.available for r in responses] == [True, False, True]
        assert responses[0].conflicts is None
        assert [(c.start, c.end) for c in responses[1].conflicts] == [(at(14), at(15))]

    async def test_unknown_practitioner_is_unavailable(self, service):
        [response] = await service.batch_check_availability([_request("nobody")])

        assert response.available is False
        assert response.error == "No active calendar for practitioner"

    async def test_inactive_calendar_is_unavailable(self, service, directory, provision):
        record = await provision()
        await directory.update_status(record.id, IntegrationStatus.ERROR)

        [response] = await service.batch_check_availability([_request("prac-1")])

        assert response.available is False
        assert response.error == "No active calendar for practitioner"

    async def test_runs_in_chunks(self, build_service, provider, monkeypatch):
        service = build_service(make_config(batch={"size": 2}))
        for i in range(1, 4):
            await service.create_managed_calendar(f"prac-{i}", f"p{i}@clinic.test")
        in_flight = 0
        peak = 0
        original = service.conflicts.find_conflicts

        async def _tracking(calendar_id, start_at, end_at):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            try:
                return await original(calendar_id, start_at, end_at)
            finally:
                in_flight -= 1

        monkeypatch.setattr(service.conflicts, "find_conflicts", _tracking)
        provider.latency = 0.001

        responses = await service.batch_check_availability(
            [_request(f"prac-{i}") for i in (1, 2, 3, 1, 2)]
        )

        assert len(responses) == 5
        assert all(r.available for r in responses)
        assert peak == 2

    async def test_one_failure_does_not_fail_the_batch(self, service, provision, monkeypatch):
        broken = await provision("prac-1", "ada@clinic.test")
        await provision("prac-2", "bo@clinic.test")
        original = service.conflicts.find_conflicts

        async def _flaky(calendar_id, start_at, end_at):
            if calendar_id == broken.calendar_id:
                raise RuntimeError("lookup exploded")
            return await original(calendar_id, start_at, end_at)

        monkeypatch.setattr(service.conflicts, "find_conflicts", _flaky)

        first, second = await service.batch_check_availability(
            [_request("prac-1"), _request("prac-2")]
        )

        assert (first.available, first.error) == (False, "lookup exploded")
        assert (second.available, second.error) == (True, None)

    async def test_empty_batch(self, service):
        assert await service.batch_check_availability([]) == []

    def test_rejects_non_positive_batch_size(self, service):
        with pytest.raises(ValueError):
            BatchAvailabilityChecker(service.directory, service.conflicts, batch_size=0)
