"""
Business-hours calendars for working-time conditions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Any, Iterable, Mapping
from zoneinfo import ZoneInfo

WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


def _parse_time(value: str) -> time | None:
    value = value.strip()
    if value in {"24:00", "23:59:59"}:
        return None
    return datetime.strptime(value, "%H:%M").time()


def _in_timeframe(local_time: time, start: str, end: str) -> bool:
    start_time = _parse_time(start) or time(0, 0)
    end_time = _parse_time(end)
    if end_time is None or end_time == time(0, 0):
        return local_time >= start_time
    return start_time <= local_time < end_time


def _parse_holiday(value: Any) -> date:
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip())


@dataclass
class BusinessHoursCalendar:
    timezone: str = "UTC"
    business_hours: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    public_holidays: Iterable[Any] = ()

    def __post_init__(self) -> None:
        self._zone = ZoneInfo(self.timezone)
        self._holidays = {_parse_holiday(value) for value in self.public_holidays}

    def is_working_time(self, instant: datetime) -> bool:
        """Return True when the instant falls in an active timeframe of a non-holiday."""
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=ZoneInfo("UTC"))
        local = instant.astimezone(self._zone)
        if local.date() in self._holidays:
            return False
        day = self.business_hours.get(WEEKDAYS[local.weekday()]) or {}
        if not day.get("active"):
            return False
        local_time = local.time().replace(tzinfo=None)
        return any(_in_timeframe(local_time, start, end) for start, end in day.get("timeframes") or [])


class StaticCalendarDirectory:
    """In-process calendar capability keyed by calendar id."""

    def __init__(self, calendars: Mapping[Any, BusinessHoursCalendar] | None = None) -> None:
        self.calendars = {str(key): value for key, value in (calendars or {}).items()}

    def add(self, calendar_id: Any, calendar: BusinessHoursCalendar) -> None:
        self.calendars[str(calendar_id)] = calendar

    async def is_working_time(self, calendar_id: Any, instant: datetime) -> bool:
        calendar = self.calendars.get(str(calendar_id))
        if calendar is None:
            raise LookupError(f"calendar {calendar_id} not found")
        return calendar.is_working_time(instant)
