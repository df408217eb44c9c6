import re
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings

MONTH_PATTERN = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")


class InvalidMonthFormat(ValueError):
    pass


def parse_month(month: str) -> tuple[int, int]:
    match = MONTH_PATTERN.match(month) if isinstance(month, str) else None
    if not match:
        raise InvalidMonthFormat(f"Invalid month format: {month!r}")
    year = int(match.group(1))
    if year < 1:
        raise InvalidMonthFormat(f"Invalid month format: {month!r}")
    return year, int(match.group(2))


def format_month(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def month_of(day: date) -> str:
    return format_month(day.year, day.month)


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def current_month(today: Optional[date] = None) -> str:
    return month_of(today or local_today())


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(month: str, offset: int) -> str:
    year, month_number = parse_month(month)
    total_months = month_number - 1 + offset
    return format_month(year + total_months // 12, total_months % 12 + 1)


def month_diff(start: str, end: str) -> int:
    """Signed number of month steps from ``start`` to ``end``."""
    start_year, start_month = parse_month(start)
    end_year, end_month = parse_month(end)
    return (end_year - start_year) * 12 + (end_month - start_month)


def month_to_date(month: str, day: int) -> date:
    """Place ``day`` inside ``month``, clamping to the month's first/last day."""
    year, month_number = parse_month(month)
    dim = days_in_month(year, month_number)
    return date(year, month_number, min(max(day, 1), dim))
