"""
shared/utils/timeslots.py
Pure helpers for HH:MM time windows: parsing, overlap tests, weekly
template validation, free-window derivation and derived lesson status.

Windows are half-open [start, end) in minutes of the day, so a window
ending at 10:00 does not collide with one starting at 10:00.
"""

import re
from datetime import date, datetime, timezone
from typing import Iterable, List, Optional, Sequence, Tuple

TIME_PATTERN = re.compile(r"^([01]?\d|2[0-3]):[0-5]\d$")

DAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")

Window = Tuple[int, int]


class TimeSlotError(ValueError):
    """Raised when a time window or weekly template is malformed."""


# ── Parsing ───────────────────────────────────────────────────

def is_valid_time(value: str) -> bool:
    return isinstance(value, str) and bool(TIME_PATTERN.match(value))


def time_to_minutes(value: str) -> int:
    if not is_valid_time(value):
        raise TimeSlotError(f"Invalid time format '{value}', expected HH:MM (24h)")
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def minutes_to_time(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def normalize_time(value: str) -> str:
    """'9:00' -> '09:00'."""
    return minutes_to_time(time_to_minutes(value))


def parse_window(start_time: str, end_time: str) -> Window:
    """Parse and validate a single window. Raises TimeSlotError when start >= end."""
    start = time_to_minutes(start_time)
    end = time_to_minutes(end_time)
    if start >= end:
        raise TimeSlotError(
            f"Start time {start_time} must be before end time {end_time}"
        )
    return start, end


def day_of_week(value: date) -> int:
    """Weekday index with Sunday = 0 ... Saturday = 6."""
    return (value.weekday() + 1) % 7


# ── Window arithmetic ─────────────────────────────────────────

def overlaps(a: Window, b: Window) -> bool:
    return a[0] < b[1] and b[0] < a[1]


def contains(outer: Window, inner: Window) -> bool:
    return outer[0] <= inner[0] and inner[1] <= outer[1]


def merge_windows(windows: Iterable[Window]) -> List[Window]:
    """Sort and merge overlapping or touching windows."""
    merged: List[Window] = []
    for start, end in sorted(windows):
        if merged and start <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


def subtract_windows(free: Iterable[Window], busy: Iterable[Window]) -> List[Window]:
    """
    Remove every busy window from the free windows.
    Result is ascending by start with adjacent pieces merged.
    """
    remaining = merge_windows(free)
    for b_start, b_end in merge_windows(busy):
        next_remaining: List[Window] = []
        for f_start, f_end in remaining:
            if not overlaps((f_start, f_end), (b_start, b_end)):
                next_remaining.append((f_start, f_end))
                continue
            if f_start < b_start:
                next_remaining.append((f_start, b_start))
            if b_end < f_end:
                next_remaining.append((b_end, f_end))
        remaining = next_remaining
    return merge_windows(remaining)


def is_window_free(window: Window, free: Sequence[Window]) -> bool:
    return any(contains(f, window) for f in free)


# ── Weekly template ───────────────────────────────────────────

def validate_weekly_template(slots: Sequence[dict]) -> None:
    """
    Validate a full weekly template before it is written.

    Each slot is a mapping with day_of_week, start_time and end_time.
    Raises TimeSlotError on the first malformed slot or overlapping pair,
    naming the day and both slots.
    """
    by_day: dict[int, List[Tuple[Window, dict]]] = {}
    for slot in slots:
        day = slot["day_of_week"]
        if not isinstance(day, int) or not 0 <= day <= 6:
            raise TimeSlotError(f"dayOfWeek must be between 0 and 6, got {day}")
        window = parse_window(slot["start_time"], slot["end_time"])
        by_day.setdefault(day, []).append((window, slot))

    for day in sorted(by_day):
        entries = sorted(by_day[day], key=lambda e: e[0])
        for (prev_window, prev), (window, current) in zip(entries, entries[1:]):
            if overlaps(prev_window, window):
                raise TimeSlotError(
                    f"Overlapping availability on {DAY_NAMES[day]}: "
                    f"{prev['start_time']}-{prev['end_time']} overlaps "
                    f"{current['start_time']}-{current['end_time']}"
                )


# ── Lesson status ─────────────────────────────────────────────

def ensure_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def slot_start(slot_date: date, start_time: str) -> datetime:
    minutes = time_to_minutes(start_time)
    return datetime(
        slot_date.year, slot_date.month, slot_date.day,
        minutes // 60, minutes % 60, tzinfo=timezone.utc,
    )


def slot_end(slot_date: date, end_time: str) -> datetime:
    return slot_start(slot_date, end_time)


def derive_slot_status(
    status: str,
    slot_date: date,
    end_time: str,
    now: Optional[datetime] = None,
) -> str:
    """
    Effective status of a lesson at `now`.
    Stored terminal statuses are returned as is; a scheduled lesson whose
    end has passed is reported as missed until someone confirms it.
    """
    if status != "scheduled":
        return status
    now = ensure_utc(now or datetime.now(timezone.utc))
    if slot_end(slot_date, end_time) <= now:
        return "missed"
    return "scheduled"
