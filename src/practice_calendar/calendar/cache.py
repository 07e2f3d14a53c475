"""In-process TTL cache for free/busy results and computed values.

Entries expire lazily: an expired entry is deleted by the ``get`` that finds
it and is never returned.  The store is bounded; once it grows past
``max_entries`` it is compacted to the ``compact_to`` most recently inserted
entries.  Each entry may be tagged with scopes (calendar id, practitioner
id) so that a push notification can drop everything belonging to one
practitioner in a single call.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300
BUSY_TTL_SECONDS = 120
DEFAULT_MAX_ENTRIES = 1000
DEFAULT_COMPACT_TO = 500


@dataclass
class CacheEntry:
    key: str
    value: Any
    stored_at: float
    ttl_seconds: float
    scopes: frozenset[str] = field(default_factory=frozenset)

    def is_expired(self, now: float) -> bool:
        return now - self.stored_at >= self.ttl_seconds


@dataclass
class CacheStats:
    size: int
    hits: int
    misses: int

    @property
    def hit_ratio(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0


def busy_cache_key(calendar_id: str, start_at: datetime, end_at: datetime) -> str:
    return f"busy:{calendar_id}:{start_at.isoformat()}:{end_at.isoformat()}"


class TTLCache:
    """Insertion-ordered TTL cache with scope tags and bounded size."""

    def __init__(
        self,
        *,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        compact_to: int = DEFAULT_COMPACT_TO,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if compact_to > max_entries:
            raise ValueError("compact_to must not exceed max_entries")

        self._clock = clock or time.monotonic
        self._default_ttl = default_ttl
        self._max_entries = max_entries
        self._compact_to = compact_to
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._hits = 0
        self._misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not entry.is_expired(self._clock())

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None
        if entry.is_expired(self._clock()):
            del self._entries[key]
            self._misses += 1
            return None
        self._hits += 1
        return entry.value

    def set(
        self,
        key: str,
        value: Any,
        *,
        ttl: float | None = None,
        scopes: Iterable[str] = (),
    ) -> None:
        # Re-inserting moves the key to the most-recent end.
        self._entries.pop(key, None)
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            stored_at=self._clock(),
            ttl_seconds=self._default_ttl if ttl is None else ttl,
            scopes=frozenset(s for s in scopes if s),
        )
        if len(self._entries) > self._max_entries:
            self._compact()

    def _compact(self) -> None:
        overflow = len(self._entries) - self._compact_to
        for _ in range(overflow):
            self._entries.popitem(last=False)
        logger.debug("Cache compacted: dropped %d oldest entries", overflow)

    def invalidate(self, scope: str) -> int:
        """Remove every entry tagged with *scope*; returns the number removed."""
        doomed = [key for key, entry in self._entries.items() if scope in entry.scopes]
        for key in doomed:
            del self._entries[key]
        if doomed:
            logger.debug("Cache invalidated %d entries for scope %s", len(doomed), scope)
        return len(doomed)

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def keys(self, limit: int | None = None) -> list[str]:
        keys = list(self._entries)
        return keys if limit is None else keys[:limit]

    def stats(self) -> CacheStats:
        return CacheStats(size=len(self._entries), hits=self._hits, misses=self._misses)
