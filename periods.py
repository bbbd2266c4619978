from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, Union
from zoneinfo import ZoneInfo

from config import get_settings
from errors import ValidationError


@dataclass(frozen=True)
class MonthWindow:
    """Half-open date range ``start <= d < end`` covering one calendar month."""

    start: date
    end: date

    def contains(self, value: date) -> bool:
        return self.start <= value < self.end


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def month_start(value: date) -> date:
    return value.replace(day=1)


def add_months(value: date, months: int) -> date:
    total_months = value.month - 1 + months
    year = value.year + total_months // 12
    month = total_months % 12 + 1
    return date(year, month, 1)


def next_month(value: date) -> date:
    return add_months(value, 1)


def previous_month(value: date) -> date:
    return add_months(value, -1)


def month_window(value: date) -> MonthWindow:
    start = month_start(value)
    return MonthWindow(start, next_month(start))


def resolve_month(
    month: Optional[Union[str, date]], *, today: Optional[date] = None
) -> date:
    """Accept ``YYYY-MM``, ``YYYY-MM-DD`` or a date and return its first day."""
    if month is None or month == "":
        return month_start(today or local_today())
    if isinstance(month, date):
        return month_start(month)
    raw = month.strip()
    try:
        if len(raw) == 7:
            return date.fromisoformat(f"{raw}-01")
        return month_start(date.fromisoformat(raw))
    except ValueError as exc:
        raise ValidationError(f"Invalid month: {month!r}") from exc
