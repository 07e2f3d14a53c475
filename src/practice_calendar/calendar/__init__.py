"""Calendar integration and availability engine.

The entry point is ``practice_calendar.calendar.service.CalendarService``.
"""
