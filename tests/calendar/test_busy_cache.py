"""Tests for the TTL cache and free/busy caching through the service."""

from __future__ import annotations

import pytest

from practice_calendar.calendar.cache import TTLCache, busy_cache_key
from practice_calendar.calendar.errors import CalendarProviderError
from tests.conftest import at, session_spec

pytestmark = pytest.mark.unit


@pytest.fixture
def cache(monotonic) -> TTLCache:
    return TTLCache(default_ttl=60, max_entries=4, compact_to=2, clock=monotonic)


class TestTTLCache:
    def test_miss_then_hit(self, cache):
        assert cache.get("k") is None
        cache.set("k", [1])
        assert cache.get("k") == [1]

        stats = cache.stats()
        assert (stats.hits, stats.misses) == (1, 1)
        assert stats.hit_ratio == pytest.approx(0.5)

    def test_entries_expire_lazily(self, cache, monotonic):
        cache.set("k", "v", ttl=10)
        monotonic.advance(9.9)
        assert cache.get("k") == "v"

        monotonic.advance(0.1)
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_contains_ignores_expired_entries(self, cache, monotonic):
        cache.set("k", "v", ttl=5)
        assert "k" in cache
        monotonic.advance(5)
        assert "k" not in cache

    def test_invalidate_by_scope(self, cache):
        cache.set("a", 1, scopes=["cal-1", "prac-1"])
        cache.set("b", 2, scopes=["cal-2", "prac-1"])
        cache.set("c", 3, scopes=["cal-3"])

        assert cache.invalidate("prac-1") == 2
        assert cache.keys() == ["c"]
        assert cache.invalidate("unknown") == 0

    def test_compacts_to_most_recent_entries(self, cache):
        for i in range(5):
            cache.set(f"k{i}", i)

        assert cache.keys() == ["k3", "k4"]

    def test_reinsert_counts_as_most_recent(self):
        cache = TTLCache(max_entries=3, compact_to=2)
        for key in ("a", "b", "c"):
            cache.set(key, key)
        cache.set("a", "again")
        cache.set("d", "d")

        assert cache.keys() == ["a", "d"]
        assert cache.get("a") == "again"

    def test_delete_and_clear(self, cache):
        cache.set("a", 1)
        cache.set("b", 2)
        assert cache.delete("a") is True
        assert cache.delete("a") is False

        cache.clear()
        assert len(cache) == 0

    def test_keys_limit(self, cache):
        for key in ("a", "b", "c"):
            cache.set(key, key)
        assert cache.keys(limit=2) == ["a", "b"]

    def test_hit_ratio_without_lookups_is_zero(self, cache):
        assert cache.stats().hit_ratio == 0.0

    def test_rejects_compact_target_above_cap(self):
        with pytest.raises(ValueError):
            TTLCache(max_entries=10, compact_to=11)

    def test_busy_key_is_window_specific(self):
        assert busy_cache_key("cal", at(9), at(10)) != busy_cache_key("cal", at(9), at(11))


class TestBusyCaching:
    async def test_repeated_lookups_hit_cache(self, service, provider, provision):
        record = await provision()

        await service.list_busy(record.calendar_id, at(9), at(17))
        await service.list_busy(record.calendar_id, at(9), at(17))

        assert provider.calls["query_free_busy"] == 1
        assert (await service.get_metrics()).cache_hit_ratio == pytest.approx(0.5)

    async def test_busy_entries_expire_after_ttl(self, service, provider, provision, monotonic):
        record = await provision()
        await service.list_busy(record.calendar_id, at(9), at(17))

        monotonic.advance(service.config.cache.busy_ttl_seconds)
        await service.list_busy(record.calendar_id, at(9), at(17))

        assert provider.calls["query_free_busy"] == 2

    async def test_booking_invalidates_calendar_entries(self, service, provision):
        record = await provision()
        assert await service.list_busy(record.calendar_id, at(9), at(17)) == []

        await service.create_event(record.calendar_id, session_spec(at(14), at(15)), "appt-1")

        busy = await service.list_busy(record.calendar_id, at(9), at(17))
        assert [(b.start, b.end) for b in busy] == [(at(14), at(15))]

    async def test_invalidate_by_practitioner(self, service, provider, provision):
        record = await provision()
        await service.list_busy(record.calendar_id, at(9), at(17))

        assert service.invalidate(record.practitioner_id) == 1
        await service.list_busy(record.calendar_id, at(9), at(17))
        assert provider.calls["query_free_busy"] == 2

    async def test_failed_lookup_is_not_cached(self, service, provider, provision):
        record = await provision()
        provider.fail_next(
            "query_free_busy", CalendarProviderError(status_code=400, message="bad request")
        )
        assert await service.list_busy(record.calendar_id, at(9), at(17)) == []

        provider.add_busy(record.calendar_id, at(10), at(11))
        busy = await service.list_busy(record.calendar_id, at(9), at(17))

        assert len(busy) == 1

    async def test_clear_cache(self, service, provider, provision):
        record = await provision()
        await service.list_busy(record.calendar_id, at(9), at(17))

        service.clear_cache()
        await service.list_busy(record.calendar_id, at(9), at(17))

        assert provider.calls["query_free_busy"] == 2
