"""US equity market calendar and timezone normalisation for trade events."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta, timezone
from typing import Literal

MarketSession = Literal["pre-market", "regular", "after-hours", "closed"]

DEFAULT_TIMEZONE = "EST"

_UTC_OFFSETS_HOURS = {
    "EST": -5,
    "EDT": -4,
    "CST": -6,
    "CDT": -5,
    "MST": -7,
    "MDT": -6,
    "PST": -8,
    "PDT": -7,
    "UTC": 0,
    "GMT": 0,
}

_PRE_MARKET_OPEN = time(4, 0)
_REGULAR_OPEN = time(9, 30)
_REGULAR_CLOSE = time(16, 0)
_AFTER_HOURS_CLOSE = time(20, 0)

# NYSE full-day closures.
_MARKET_HOLIDAYS = frozenset(
    date.fromisoformat(day)
    for day in (
        "2025-01-01",
        "2025-01-20",
        "2025-02-17",
        "2025-04-18",
        "2025-05-26",
        "2025-06-19",
        "2025-07-04",
        "2025-09-01",
        "2025-11-27",
        "2025-12-25",
        "2026-01-01",
        "2026-01-19",
        "2026-02-16",
        "2026-04-03",
        "2026-05-25",
        "2026-06-19",
        "2026-07-03",
        "2026-09-07",
        "2026-11-26",
        "2026-12-25",
    )
)

_EXECUTION_TIME_PATTERN = re.compile(
    r"(\d{1,2}):(\d{2})(?::(\d{2}))?\s*(AM|PM)", re.IGNORECASE
)


@dataclass(slots=True, frozen=True)
class MarketContext:
    """Where a moment falls in the trading day."""

    is_market_hours: bool
    is_weekend: bool
    is_holiday: bool
    session: MarketSession


def fixed_offset(name: str) -> timezone:
    """Return the fixed UTC offset for a timezone abbreviation such as ``EDT``."""
    key = name.strip().upper()
    try:
        hours = _UTC_OFFSETS_HOURS[key]
    except KeyError as exc:
        raise ValueError(f"Unknown timezone abbreviation: {name!r}") from exc
    return timezone(timedelta(hours=hours), key)


def parse_execution_time(value: str | None) -> time | None:
    """Parse a clock time such as ``"9:45:12 AM"``; ``None`` when unreadable."""
    if not value:
        return None
    match = _EXECUTION_TIME_PATTERN.search(value)
    if match is None:
        return None
    hours = int(match.group(1))
    minutes = int(match.group(2))
    seconds = int(match.group(3) or 0)
    meridiem = match.group(4).upper()
    if hours > 12 or minutes > 59 or seconds > 59:
        return None
    if meridiem == "PM" and hours != 12:
        hours += 12
    elif meridiem == "AM" and hours == 12:
        hours = 0
    return time(hours, minutes, seconds)


def localize(
    moment: datetime,
    timezone_name: str = DEFAULT_TIMEZONE,
    execution_time: str | None = None,
) -> datetime:
    """Attach a timezone to ``moment`` and apply an optional clock-time override.

    Naive datetimes are read as wall-clock time in ``timezone_name``; aware
    datetimes keep their own offset.
    """
    override = parse_execution_time(execution_time)
    if override is not None:
        moment = moment.replace(
            hour=override.hour,
            minute=override.minute,
            second=override.second,
            microsecond=0,
        )
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=fixed_offset(timezone_name))
    return moment


def to_utc(
    moment: datetime,
    timezone_name: str = DEFAULT_TIMEZONE,
    execution_time: str | None = None,
) -> datetime:
    """Return ``moment`` normalised to UTC, see :func:`localize`."""
    return localize(moment, timezone_name, execution_time).astimezone(UTC)


def to_eastern(moment: datetime) -> datetime:
    """Convert an aware ``moment`` to New York wall-clock time.

    The offset is EDT between 02:00 on the second Sunday of March and 02:00
    on the first Sunday of November, EST otherwise.
    """
    instant = moment.astimezone(UTC)
    daylight_start = datetime.combine(_nth_sunday(instant.year, 3, 2), time(7, 0), UTC)
    daylight_end = datetime.combine(_nth_sunday(instant.year, 11, 1), time(6, 0), UTC)
    zone = "EDT" if daylight_start <= instant < daylight_end else "EST"
    return instant.astimezone(fixed_offset(zone))


def is_market_holiday(day: date) -> bool:
    """Return ``True`` when the exchange is closed for a holiday on ``day``."""
    return day in _MARKET_HOLIDAYS


def market_context(moment: datetime) -> MarketContext:
    """Classify ``moment`` into a trading session on the New York clock.

    Aware moments are converted to Eastern time first; naive ones are taken
    as Eastern wall-clock time.
    """
    if moment.tzinfo is not None:
        moment = to_eastern(moment)
    day = moment.date()
    clock = moment.time()
    is_weekend = day.weekday() >= 5
    is_holiday = is_market_holiday(day)

    session: MarketSession = "closed"
    if not (is_weekend or is_holiday):
        if _PRE_MARKET_OPEN <= clock < _REGULAR_OPEN:
            session = "pre-market"
        elif _REGULAR_OPEN <= clock < _REGULAR_CLOSE:
            session = "regular"
        elif _REGULAR_CLOSE <= clock < _AFTER_HOURS_CLOSE:
            session = "after-hours"

    return MarketContext(
        is_market_hours=session != "closed",
        is_weekend=is_weekend,
        is_holiday=is_holiday,
        session=session,
    )


def _nth_sunday(year: int, month: int, nth: int) -> date:
    first = date(year, month, 1)
    return first + timedelta(days=(6 - first.weekday()) % 7 + 7 * (nth - 1))


__all__ = [
    "DEFAULT_TIMEZONE",
    "MarketContext",
    "MarketSession",
    "fixed_offset",
    "is_market_holiday",
    "localize",
    "market_context",
    "parse_execution_time",
    "to_eastern",
    "to_utc",
]
