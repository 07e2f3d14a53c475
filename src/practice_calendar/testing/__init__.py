"""Test support utilities for the practice_calendar package.

Helpers here have no dependency on pytest so they can also back local
development runs (``provider = "memory"``).
"""

from __future__ import annotations

from practice_calendar.testing.fake_provider import FakeCalendarProvider

__all__ = ["FakeCalendarProvider"]
