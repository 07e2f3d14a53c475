"""Calendar directory storage: in-memory and PostgreSQL implementations."""

from practice_calendar.storage.directory import CalendarDirectory, InMemoryCalendarDirectory

__all__ = ["CalendarDirectory", "InMemoryCalendarDirectory"]
