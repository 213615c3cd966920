"""Clock helpers: medication windows, greetings and rotation dates."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from .config import CONFIG
from .schemas import TimeWindow


def parse_hour(value: Optional[str]) -> Optional[int]:
    """Return the hour of an ``HH:MM`` string, or None when unset/malformed."""
    if not value:
        return None
    head = value.strip().split(":")[0]
    try:
        hour = int(head)
    except ValueError:
        return None
    if not 0 <= hour <= 23:
        return None
    return hour


def hour_in_range(hour: int, start: int, end: int) -> bool:
    # start > end wraps across midnight, start == end is an empty range
    if start > end:
        return hour >= start or hour < end
    return start <= hour < end


@dataclass(frozen=True)
class WindowBounds:
    window: TimeWindow
    start: str
    end: str

    @property
    def label(self) -> str:
        return f"{self.start} - {self.end}"

    def contains(self, hour: int) -> bool:
        start = parse_hour(self.start)
        end = parse_hour(self.end)
        if start is None or end is None:
            return False
        return hour_in_range(hour, start, end)


def _bounds(window: TimeWindow, raw: str) -> WindowBounds:
    start, _, end = raw.partition("-")
    return WindowBounds(window=window, start=start.strip(), end=end.strip())


def window_bounds(window: TimeWindow) -> WindowBounds:
    if window is TimeWindow.MORNING:
        return _bounds(window, CONFIG.morning_window)
    return _bounds(window, CONFIG.evening_window)


def current_window(now: datetime) -> Optional[TimeWindow]:
    for window in (TimeWindow.MORNING, TimeWindow.EVENING):
        if window_bounds(window).contains(now.hour):
            return window
    return None


def is_late(window: TimeWindow, now: datetime) -> bool:
    return not window_bounds(window).contains(now.hour)


def greeting_period(now: datetime) -> str:
    if now.hour < 12:
        return "morning"
    if now.hour < 17:
        return "afternoon"
    if now.hour < 21:
        return "evening"
    return "night"


def next_friday(today: date) -> date:
    """Friday of the current week; Saturday rolls to the following Friday."""
    weekday = today.weekday()  # Monday=0 .. Sunday=6
    if weekday == 5:
        return today + timedelta(days=6)
    if weekday == 6:
        return today + timedelta(days=5)
    return today + timedelta(days=4 - weekday)


def is_weekend(day: date) -> bool:
    return day.weekday() in (4, 5)


def local_now(timezone: Optional[str] = None) -> datetime:
    return datetime.now(tz=ZoneInfo(timezone or CONFIG.default_timezone))
