"""Tests for the calendar HTTP API."""

from __future__ import annotations

import httpx
import pytest
from fastapi import FastAPI

from practice_calendar.api.app import create_app
from practice_calendar.calendar.errors import CalendarProviderError
from tests.conftest import at, session_spec

pytestmark = pytest.mark.unit


def _iso(value) -> str:
    return value.isoformat()


@pytest.fixture
def app(service) -> FastAPI:
    return create_app(service, background_tasks=False)


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def _event_body(appointment_id: str = "appt-1", start_hour: int = 14, end_hour: int = 15):
    return {
        "appointment_id": appointment_id,
        "event": {
            "summary": "Therapy session",
            "start_at": _iso(at(start_hour)),
            "end_at": _iso(at(end_hour)),
        },
    }


class TestCalendarEndpoints:
    async def test_provision_returns_created_record(self, client):
        resp = await client.post(
            "/api/calendars",
            json={"practitioner_id": "prac-1", "email": "ada@clinic.test", "display_name": "Dr Ada"},
        )

        assert resp.status_code == 201
        data = resp.json()["data"]
        assert data["practitioner_id"] == "prac-1"
        assert data["integration_status"] == "active"
        assert data["channel"]["channel_id"]

    async def test_get_calendar(self, client, provision):
        record = await provision()

        resp = await client.get("/api/calendars/prac-1")

        assert resp.status_code == 200
        assert resp.json()["data"]["calendar_id"] == record.calendar_id

    async def test_get_unknown_calendar_is_404(self, client):
        resp = await client.get("/api/calendars/nobody")

        assert resp.status_code == 404

    async def test_teardown(self, client, provision):
        await provision()

        resp = await client.delete("/api/calendars/prac-1")

        assert resp.status_code == 200
        assert resp.json()["data"]["integration_status"] == "removed"
        assert (await client.delete("/api/calendars/prac-1")).status_code == 404

    async def test_channel_token_never_leaves_the_api(self, client, service):
        created = await client.post(
            "/api/calendars", json={"practitioner_id": "prac-1", "email": "ada@clinic.test"}
        )
        fetched = await client.get("/api/calendars/prac-1")
        record = await service.get_calendar("prac-1")
        removed = await client.delete("/api/calendars/prac-1")

        secret = record.channel.token
        assert secret
        assert "token" not in created.json()["data"]["channel"]
        assert "token" not in fetched.json()["data"]["channel"]
        for resp in (created, fetched, removed):
            assert resp.status_code in (200, 201)
            assert '"token"' not in resp.text
            assert secret not in resp.text
        assert secret not in repr(record.channel)


class TestAvailabilityEndpoints:
    async def test_busy_and_conflicts(self, client, service, provision):
        record = await provision()
        await service.create_event(record.calendar_id, session_spec(at(14), at(15)), "appt-1")
        window = {"start_at": _iso(at(9)), "end_at": _iso(at(17))}

        busy = await client.get(f"/api/calendars/{record.calendar_id}/busy", params=window)
        check = await client.get(
            f"/api/calendars/{record.calendar_id}/conflicts",
            params={"start_at": _iso(at(14, 30)), "end_at": _iso(at(15))},
        )

        assert busy.status_code == 200
        assert len(busy.json()["data"]) == 1
        assert check.json()["data"] == {
            "calendar_id": record.calendar_id,
            "has_conflicts": True,
        }

    async def test_inverted_window_is_400(self, client, provision):
        record = await provision()

        resp = await client.get(
            f"/api/calendars/{record.calendar_id}/busy",
            params={"start_at": _iso(at(15)), "end_at": _iso(at(14))},
        )

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"

    async def test_batch_reports_meta(self, client, provision):
        await provision()

        resp = await client.post(
            "/api/availability/batch",
            json={
                "requests": [
                    {"practitioner_id": "prac-1", "start_at": _iso(at(9)), "end_at": _iso(at(10))},
                    {"practitioner_id": "nobody", "start_at": _iso(at(9)), "end_at": _iso(at(10))},
                ]
            },
        )

        assert resp.status_code == 200
        body = resp.json()
        assert [r["available"] for r in body["data"]] == [True, False]
        assert body["meta"] == {"total": 2, "failed": 1}


class TestEventEndpoints:
    async def test_create_update_delete(self, client, provision):
        record = await provision()
        base = f"/api/calendars/{record.calendar_id}/events"

        created = await client.post(base, json=_event_body())
        assert created.status_code == 201
        event_id = created.json()["data"]["event_id"]

        patched = await client.patch(f"{base}/{event_id}", json={"summary": "Follow-up"})
        assert patched.status_code == 200
        assert patched.json()["data"]["summary"] == "Follow-up"

        deleted = await client.delete(f"{base}/{event_id}")
        assert deleted.json()["data"] == {"event_id": event_id, "deleted": True}
        again = await client.delete(f"{base}/{event_id}")
        assert again.json()["data"]["deleted"] is False

    async def test_conflicting_booking_is_409_with_windows(self, client, provision):
        record = await provision()
        base = f"/api/calendars/{record.calendar_id}/events"
        await client.post(base, json=_event_body("appt-1", 14, 15))

        resp = await client.post(base, json=_event_body("appt-2", 14, 16))

        assert resp.status_code == 409
        error = resp.json()["error"]
        assert error["code"] == "CONFLICTS_DETECTED"
        assert len(error["details"]["conflicts"]) == 1

    async def test_unknown_event_is_404(self, client, provision):
        record = await provision()

        resp = await client.patch(
            f"/api/calendars/{record.calendar_id}/events/evt-missing", json={"summary": "x"}
        )

        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "CALENDAR_NOT_FOUND"

    async def test_provider_failure_is_502(self, client, provider, provision):
        record = await provision()
        provider.fail_next("insert_event", CalendarProviderError(status_code=403, message="no"))

        resp = await client.post(f"/api/calendars/{record.calendar_id}/events", json=_event_body())

        assert resp.status_code == 502
        assert resp.json()["error"]["details"] == {"retryable": False, "attempts": 1}


class TestChannelAndWebhookEndpoints:
    async def test_renew_single_channel(self, client, provider, provision):
        record = await provision()

        resp = await client.post(
            "/api/channels/renew", json={"channel_id": record.channel.channel_id}
        )

        assert resp.status_code == 200
        assert resp.json()["data"]["renewed"] == 1
        assert provider.stopped_channels == [record.channel.channel_id]

    async def test_renew_expiring_without_body(self, client, provision):
        await provision()

        resp = await client.post("/api/channels/renew")

        assert resp.json()["data"] == {"renewed": 0, "failed": 0, "errors": []}

    async def test_channel_health(self, client, provision):
        await provision()

        resp = await client.get("/api/channels/health")

        data = resp.json()["data"]
        assert (data["total"], data["active"], data["degraded"]) == (1, 1, False)

    async def test_webhook_triggers_sync(self, client, provision):
        record = await provision()
        channel = record.channel

        resp = await client.post(
            "/api/webhooks/calendar",
            headers={
                "X-Goog-Channel-ID": channel.channel_id,
                "X-Goog-Resource-ID": channel.resource_id,
                "X-Goog-Resource-State": "exists",
                "X-Goog-Channel-Token": channel.token,
                "X-Goog-Message-Number": "2",
            },
        )

        assert resp.status_code == 200
        assert resp.json()["data"]["status"] == "synced"

    async def test_webhook_with_wrong_token_is_401(self, client, provision):
        record = await provision()

        resp = await client.post(
            "/api/webhooks/calendar",
            headers={
                "X-Goog-Channel-ID": record.channel.channel_id,
                "X-Goog-Channel-Token": "forged",
            },
        )

        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "WEBHOOK_UNAUTHORIZED"

    async def test_webhook_for_unknown_channel_is_acknowledged(self, client):
        resp = await client.post(
            "/api/webhooks/calendar", headers={"X-Goog-Channel-ID": "chan-gone"}
        )

        assert resp.status_code == 200
        assert resp.json()["data"]["status"] == "ignored"

    async def test_webhook_without_channel_header_is_422(self, client):
        resp = await client.post("/api/webhooks/calendar")

        assert resp.status_code == 422


class TestMonitoringEndpoints:
    async def test_health(self, client, provision):
        await provision()

        resp = await client.get("/api/health")

        assert resp.status_code == 200
        assert resp.json()["data"]["status"] == "healthy"

    async def test_unhealthy_is_503(self, client, provider):
        provider.probe_error = CalendarProviderError(status_code=503, message="Backend Error")

        resp = await client.get("/api/health")

        assert resp.status_code == 503
        assert resp.json()["data"]["status"] == "unhealthy"

    async def test_metrics(self, client, provision):
        await provision()

        resp = await client.get("/api/metrics")

        data = resp.json()["data"]
        assert data["total_calendars"] == 1
        assert data["active_channels"] == 1
        assert data["last_updated"].startswith("2026-03-02T09:00:00")


class TestUnwiredApp:
    async def test_routes_fail_with_error_envelope(self):
        app = create_app(background_tasks=False)
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            resp = await client.get("/api/metrics")

        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "INTERNAL_ERROR"
