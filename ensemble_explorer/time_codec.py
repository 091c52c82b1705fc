"""CF-convention time decoding.

Parses a ``units`` attribute (e.g. ``"days since 2005-1-1 00:00:00"``) and a
``calendar`` attribute, and turns raw numeric offsets into ``YYYY-MM-DD``
labels that can be compared by year across models using different calendars.

Supported calendars: standard/gregorian/proleptic_gregorian, julian,
365_day/noleap and 360_day. A missing calendar means 365_day, which is what
the ice-sheet model intercomparison data assumes.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Tuple, Union

from .constants import YEAR_LITERAL_MAX, YEAR_LITERAL_MIN

logger = logging.getLogger("ensemble_explorer.time")

UNPARSEABLE_LABEL = "NaT"


class Calendar(str, Enum):
    STANDARD = "standard"
    JULIAN = "julian"
    NOLEAP_365 = "365_day"
    DAY_360 = "360_day"


class TimeFormat(Enum):
    PACKED_DATE = "packed_date"


# Raw values encode the date itself, e.g. 20050115.5
PACKED_DATE = TimeFormat.PACKED_DATE


@dataclass(frozen=True)
class TimeEncoding:
    scale_to_days: float
    epoch: Tuple[int, int, int]
    calendar: Calendar


@dataclass(frozen=True)
class YearRange:
    min_year: int
    max_year: int


_UNITS_RE = re.compile(
    r"^\s*(days|hours|minutes|seconds|milliseconds)\s+since\s+(-?\d{1,4})-(\d{1,2})-(\d{1,2})",
    re.IGNORECASE,
)
_PACKED_DATE_RE = re.compile(r"^\s*day\s+as\s+%Y%m%d", re.IGNORECASE)
_YEAR_RE = re.compile(r"^\s*(-?\d+)")

UNIT_TO_DAYS = {
    "days": 1.0,
    "hours": 1.0 / 24,
    "minutes": 1.0 / 1440,
    "seconds": 1.0 / 86400,
    "milliseconds": 1.0 / 86400000,
}

NOLEAP_DAYS = (31, 28, 31, 30, 31, 30, 31, 31, 30, 31, 30, 31)

# Days after which a calendar repeats its month/day layout exactly
_CYCLE_DAYS = {
    Calendar.STANDARD: 146097,  # 400 gregorian years
    Calendar.JULIAN: 1461,
    Calendar.NOLEAP_365: 365,
    Calendar.DAY_360: 360,
}
_CYCLE_YEARS = {
    Calendar.STANDARD: 400,
    Calendar.JULIAN: 4,
    Calendar.NOLEAP_365: 1,
    Calendar.DAY_360: 1,
}


def normalize_calendar(calendar: Optional[str]) -> Calendar:
    if not calendar:
        return Calendar.NOLEAP_365
    name = re.sub(r"[^a-z0-9_]", "", str(calendar).lower())
    if name in ("noleap", "365_day"):
        return Calendar.NOLEAP_365
    if name == "360_day":
        return Calendar.DAY_360
    if name == "julian":
        return Calendar.JULIAN
    # standard, gregorian, proleptic_gregorian and anything unknown
    return Calendar.STANDARD


def parse_time_units(
    units: Optional[str],
    calendar: Optional[str] = None,
) -> Union[TimeEncoding, TimeFormat, None]:
    """Parse CF ``units``/``calendar`` into an encoding.

    Returns ``PACKED_DATE`` for ``"day as %Y%m%d..."`` and ``None`` when the
    units string is missing or not understood.
    """
    if not units or not isinstance(units, str):
        return None
    if _PACKED_DATE_RE.match(units):
        return PACKED_DATE
    m = _UNITS_RE.match(units)
    if not m:
        return None
    return TimeEncoding(
        scale_to_days=UNIT_TO_DAYS[m.group(1).lower()],
        epoch=(int(m.group(2)), int(m.group(3)), int(m.group(4))),
        calendar=normalize_calendar(calendar),
    )


def is_leap_year(year: int, calendar: Calendar = Calendar.STANDARD) -> bool:
    if calendar == Calendar.JULIAN:
        return year % 4 == 0
    if calendar == Calendar.STANDARD:
        return (year % 4 == 0 and year % 100 != 0) or year % 400 == 0
    return False


def days_in_month(year: int, month: int, calendar: Calendar) -> int:
    if calendar == Calendar.DAY_360:
        return 30
    if month == 2 and is_leap_year(year, calendar):
        return 29
    return NOLEAP_DAYS[month - 1]


def _walk_days(year: int, month: int, day: int, days: int, calendar: Calendar) -> Tuple[int, int, int]:
    """Add ``days`` to a date by walking months with the calendar's day table."""
    y, m, d = year, month, day
    # Bring out-of-range epochs (month 13, Feb 30, ...) back onto the calendar
    y += (m - 1) // 12
    m = (m - 1) % 12 + 1
    while d > days_in_month(y, m, calendar):
        d -= days_in_month(y, m, calendar)
        m += 1
        if m > 12:
            m = 1
            y += 1

    cycle = _CYCLE_DAYS[calendar]
    whole = int(abs(days) // cycle)
    remaining = int(abs(days) % cycle)
    if days < 0:
        y -= whole * _CYCLE_YEARS[calendar]
        remaining = -remaining
    else:
        y += whole * _CYCLE_YEARS[calendar]

    if remaining < 0:
        d += remaining
        while d < 1:
            m -= 1
            if m < 1:
                m = 12
                y -= 1
            d += days_in_month(y, m, calendar)
        return y, m, d

    while remaining > 0:
        left_in_month = days_in_month(y, m, calendar) - d
        if remaining <= left_in_month:
            d += remaining
            remaining = 0
        else:
            remaining -= left_in_month + 1
            d = 1
            m += 1
            if m > 12:
                m = 1
                y += 1
    return y, m, d


def add_days(epoch: Tuple[int, int, int], days: int, calendar: Calendar) -> Tuple[int, int, int]:
    year, month, day = epoch
    if calendar == Calendar.STANDARD:
        try:
            result = date(year, month, day) + timedelta(days=days)
            return result.year, result.month, result.day
        except (ValueError, OverflowError):
            # outside datetime's 1..9999 window: proleptic walk
            pass
    return _walk_days(year, month, day, days, calendar)


def format_label(year: int, month: int, day: int) -> str:
    sign = "-" if year < 0 else ""
    return f"{sign}{abs(year):04d}-{month:02d}-{day:02d}"


def decode_time_value(value: float, encoding: Union[TimeEncoding, TimeFormat]) -> str:
    """Decode one raw time value to a ``YYYY-MM-DD`` label (or ``"NaT"``)."""
    try:
        value = float(value)
    except (TypeError, ValueError):
        return UNPARSEABLE_LABEL
    if not math.isfinite(value):
        return UNPARSEABLE_LABEL

    if encoding is PACKED_DATE:
        packed = int(math.floor(value))
        y, rest = divmod(packed, 10000)
        m, d = divmod(rest, 100)
        return format_label(y, m, d)

    offset = math.floor(value * encoding.scale_to_days)
    y, m, d = add_days(encoding.epoch, offset, encoding.calendar)
    return format_label(y, m, d)


def decode_time_array(values: Iterable[float], encoding: Union[TimeEncoding, TimeFormat]) -> List[str]:
    return [decode_time_value(v, encoding) for v in values]


def year_from_label(label: Optional[str]) -> float:
    """Leading year of a label as an int, or NaN when there is none."""
    if not label:
        return math.nan
    m = _YEAR_RE.match(label)
    if not m:
        return math.nan
    return int(m.group(1))


def _valid_years(labels: Iterable[str]):
    for i, label in enumerate(labels):
        y = year_from_label(label)
        if isinstance(y, float) and math.isnan(y):
            continue
        yield i, y


def find_index_for_year(labels: Sequence[str], target_year: float) -> Optional[int]:
    """Index of the label whose year is closest to ``target_year``.

    Returns None when no label has a year or the target lies outside the
    labels' [min, max] year span. Ties resolve to the first occurrence.
    """
    years = list(_valid_years(labels or []))
    if not years:
        return None
    lo = min(y for _, y in years)
    hi = max(y for _, y in years)
    if target_year < lo or target_year > hi:
        return None

    best_idx, best_diff = None, math.inf
    for i, y in years:
        diff = abs(y - target_year)
        if diff < best_diff:
            best_idx, best_diff = i, diff
    return best_idx


def year_range(label_sets: Iterable[Optional[Sequence[str]]]) -> Optional[YearRange]:
    """Union min/max year across several label lists; None if none has a year."""
    lo, hi = math.inf, -math.inf
    for labels in label_sets:
        if not labels:
            continue
        for _, y in _valid_years(labels):
            lo = min(lo, y)
            hi = max(hi, y)
    if not math.isfinite(lo):
        return None
    return YearRange(min_year=int(lo), max_year=int(hi))


def labels_from_year_literals(values: Sequence[float]) -> Optional[List[str]]:
    """Treat raw values as years when every one is finite and within [1000, 3000]."""
    if len(values) == 0:
        return None
    labels = []
    for v in values:
        v = float(v)
        if not math.isfinite(v) or v < YEAR_LITERAL_MIN or v > YEAR_LITERAL_MAX:
            return None
        labels.append(format_label(int(math.floor(v + 0.5)), 1, 1))
    return labels


def decode_time_labels(
    values: Sequence[float],
    units: Optional[str],
    calendar: Optional[str] = None,
) -> Optional[List[str]]:
    """Full decode chain for one time axis: CF units, then year literals.

    Returns None when neither interpretation yields usable labels; callers
    then fall back to raw index stepping.
    """
    encoding = parse_time_units(units, calendar)
    if encoding is not None:
        labels = decode_time_array(values, encoding)
        if any(label != UNPARSEABLE_LABEL for label in labels):
            if labels:
                logger.debug("Decoded %d time labels, first=%s last=%s", len(labels), labels[0], labels[-1])
            return labels
        logger.warning("All %d time values decoded as unparseable (units=%r)", len(labels), units)

    labels = labels_from_year_literals(values)
    if labels is not None:
        logger.info("Time axis without usable units, using raw values as years (%d labels)", len(labels))
        return labels

    logger.warning("Could not interpret time axis: units=%r calendar=%r", units, calendar)
    return None
