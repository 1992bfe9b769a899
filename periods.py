from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def contains(self, value: date) -> bool:
        return self.start <= value <= self.end


def local_now() -> datetime:
    settings = get_settings()
    return datetime.now(ZoneInfo(settings.timezone))


def local_today() -> date:
    return local_now().date()


def month_start(d: date) -> date:
    return d.replace(day=1)


def month_end(d: date) -> date:
    first = month_start(d)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return next_month - date.resolution


def add_months(d: date, count: int) -> date:
    """First day of the month ``count`` months away from ``d``."""
    month_index = (d.year * 12) + (d.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    return date(year, month, 1)


def shift_months(d: date, count: int) -> date:
    """Same day ``count`` months away, clamped to the end of the target month."""
    target = add_months(d, count)
    return min(target.replace(day=1) + timedelta(days=d.day - 1), month_end(target))


def trailing_days(today: date, days: int, slug: str = "trailing") -> Period:
    return Period(slug, today - timedelta(days=days - 1), today)


def previous_period(period: Period) -> Period:
    """Window of the same calendar shape immediately before ``period``."""
    if period.slug == "week":
        return Period("week", period.start - timedelta(weeks=1), period.end - timedelta(weeks=1))
    if period.slug == "month":
        prev_start = add_months(period.start, -1)
        return Period("month", prev_start, month_end(prev_start))
    if period.slug == "year":
        prev_start = period.start.replace(year=period.start.year - 1)
        return Period("year", prev_start, prev_start.replace(month=12, day=31))
    prev_end = period.start - timedelta(days=1)
    return Period("previous", prev_end - timedelta(days=period.days - 1), prev_end)


def resolve_period(
    period: Optional[str],
    start: Optional[str] = None,
    end: Optional[str] = None,
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or local_today()
    if period == "all":
        return Period("all", date(1970, 1, 1), today)
    if period == "week":
        week_start = today - timedelta(days=today.weekday())
        return Period("week", week_start, week_start + timedelta(days=6))
    if period == "year":
        return Period("year", date(today.year, 1, 1), date(today.year, 12, 31))
    if period == "last_month":
        last_month_start = add_months(today, -1)
        return Period("last_month", last_month_start, month_end(last_month_start))
    if period == "custom":
        if not start or not end:
            raise ValueError("Custom period requires start and end dates")
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
        if start_date > end_date:
            raise ValueError("Start date must be before end date")
        return Period("custom", start_date, end_date)
    if period and period != "month":
        raise ValueError(f"Unknown period: {period}")

    # this month
    first = month_start(today)
    return Period("month", first, month_end(first))
