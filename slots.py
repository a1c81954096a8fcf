"""Booking slot rules.

A slot is legal when, in this order: the date and time parse, the clinic
is open that weekday, the time lies within opening hours and outside the
break, the time sits on a slot boundary counted from opening time, and
the instant is at least the booking buffer ahead of now.  The first rule
that fails decides the reason.  Whether the slot is already taken is a
store question and is checked by the booking flow.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta
from typing import Iterable, List, Optional

import config
from errors import ValidationError
from models import BusinessHours

DATE_FORMAT = "%Y-%m-%d"
TIME_FORMAT = "%H:%M"


def day_of_week(day: date) -> int:
    """Weekday number used by business hours: 0 = Sunday ... 6 = Saturday."""
    return (day.weekday() + 1) % 7


def parse_date(value: str) -> date:
    try:
        return datetime.strptime(value.strip(), DATE_FORMAT).date()
    except (AttributeError, ValueError):
        raise ValidationError("Date must be in YYYY-MM-DD format", {"date": value})


def parse_time(value: str) -> time:
    try:
        return datetime.strptime(value.strip(), TIME_FORMAT).time()
    except (AttributeError, ValueError):
        raise ValidationError("Time must be in HH:MM format", {"time": value})


def _minutes(t: time) -> int:
    return t.hour * 60 + t.minute


def _is_open(hours: Optional[BusinessHours]) -> bool:
    return bool(hours and hours.is_open and hours.open_time and hours.close_time)


def _in_break(hours: BusinessHours, t: time) -> bool:
    if hours.break_start is None or hours.break_end is None:
        return False
    return hours.break_start <= t < hours.break_end


def validate_slot(date_str: str, time_str: str, hours: Optional[BusinessHours],
                  now: datetime) -> datetime:
    """Return the requested instant, or raise :class:`ValidationError`."""
    day = parse_date(date_str)
    t = parse_time(time_str)
    scheduled = datetime.combine(day, t)

    if not _is_open(hours):
        raise ValidationError(
            f"The clinic is closed on {day.strftime('%A')}s",
            {"date": date_str},
        )

    if not (hours.open_time <= t < hours.close_time):
        raise ValidationError(
            "Appointments are only available between "
            f"{hours.open_time.strftime(TIME_FORMAT)} and {hours.close_time.strftime(TIME_FORMAT)}",
            {"time": time_str},
        )

    if _in_break(hours, t):
        raise ValidationError(
            "Appointments are not available during the break "
            f"({hours.break_start.strftime(TIME_FORMAT)} - {hours.break_end.strftime(TIME_FORMAT)})",
            {"time": time_str},
        )

    duration = hours.slot_duration or config.DEFAULT_SLOT_MINUTES
    if (_minutes(t) - _minutes(hours.open_time)) % duration != 0:
        raise ValidationError(
            f"Times must be on {duration}-minute intervals starting at "
            f"{hours.open_time.strftime(TIME_FORMAT)}",
            {"time": time_str},
        )

    earliest = now + timedelta(minutes=config.BOOKING_BUFFER_MINUTES)
    if scheduled < earliest:
        raise ValidationError(
            f"Appointment must be scheduled at least {config.BOOKING_BUFFER_MINUTES} minutes in the future",
            {"requested_time": scheduled.isoformat(), "minimum_time": earliest.isoformat()},
        )

    return scheduled


def slot_times(hours: Optional[BusinessHours]) -> List[time]:
    """All slot start times of a day, skipping the break."""
    if not _is_open(hours):
        return []
    duration = hours.slot_duration or config.DEFAULT_SLOT_MINUTES
    start = _minutes(hours.open_time)
    # A close time like 23:59:59 still admits the 23:45 slot.
    end = _minutes(hours.close_time) + (1 if hours.close_time.second else 0)
    times = []
    for m in range(start, end, duration):
        t = time(m // 60, m % 60)
        if not _in_break(hours, t):
            times.append(t)
    return times


def available_slots(hours: Optional[BusinessHours], day: date, taken: Iterable[datetime],
                    now: datetime) -> List[str]:
    """Bookable ``HH:MM`` times of ``day``."""
    if day < now.date():
        return []
    taken_set = set(taken)
    earliest = now + timedelta(minutes=config.BOOKING_BUFFER_MINUTES)
    slots = []
    for t in slot_times(hours):
        instant = datetime.combine(day, t)
        if instant in taken_set or instant < earliest:
            continue
        slots.append(t.strftime(TIME_FORMAT))
    return slots


def is_open_at(hours: Optional[BusinessHours], moment: datetime) -> bool:
    if not _is_open(hours):
        return False
    t = moment.time()
    return hours.open_time <= t < hours.close_time and not _in_break(hours, t)


def check_business_hours(rows: Iterable[BusinessHours]) -> None:
    """Validate a staff edit of the weekly hours."""
    seen = set()
    for row in rows:
        if not 0 <= row.day_of_week <= 6:
            raise ValidationError("Invalid day of week", {"day_of_week": row.day_of_week})
        if row.day_of_week in seen:
            raise ValidationError("Each day may appear only once", {"day_of_week": row.day_of_week})
        seen.add(row.day_of_week)
        if not config.MIN_SLOT_MINUTES <= row.slot_duration <= config.MAX_SLOT_MINUTES:
            raise ValidationError(
                f"Slot duration must be between {config.MIN_SLOT_MINUTES} and "
                f"{config.MAX_SLOT_MINUTES} minutes",
                {"day_of_week": row.day_of_week},
            )
        if not row.is_open:
            continue
        if row.open_time is None or row.close_time is None:
            raise ValidationError("Open and close times required when open",
                                  {"day_of_week": row.day_of_week})
        if row.open_time >= row.close_time:
            raise ValidationError("Open time must be before close time",
                                  {"day_of_week": row.day_of_week})
        if (row.break_start is None) != (row.break_end is None):
            raise ValidationError("A break needs both a start and an end",
                                  {"day_of_week": row.day_of_week})
        if row.break_start is not None and row.break_start >= row.break_end:
            raise ValidationError("Break start must be before break end",
                                  {"day_of_week": row.day_of_week})
