"""
shared/utils/clock.py
Business-time helpers: the counter's local clock, shift resolution and
Sunday-first weekday numbering (0 = Sunday).
"""

from datetime import date, datetime, time
from typing import Callable
from zoneinfo import ZoneInfo

from config.settings import settings
from shared.schemas.entities import Shift

Clock = Callable[[], datetime]


def business_timezone() -> ZoneInfo:
    return ZoneInfo(settings.BUSINESS_TIMEZONE)


def business_now() -> datetime:
    """Current wall-clock time at the temple."""
    return datetime.now(business_timezone())


def parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def shift_for(moment: time) -> Shift:
    """Resolve the counter shift containing a local time of day."""
    if moment >= parse_hhmm(settings.EVENING_SHIFT_START):
        return Shift.EVENING
    if moment >= parse_hhmm(settings.AFTERNOON_SHIFT_START):
        return Shift.AFTERNOON
    return Shift.MORNING


def weekday_number(day: date) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return (day.weekday() + 1) % 7


def at_local(day: date, moment: time) -> datetime:
    return datetime.combine(day, moment, tzinfo=business_timezone())
