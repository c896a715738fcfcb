from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    @property
    def key(self) -> str:
        return f"{self.start.year:04d}-{self.start.month:02d}"

    @property
    def start_at(self) -> datetime:
        return datetime.combine(self.start, time.min)

    @property
    def end_at(self) -> datetime:
        return datetime.combine(self.end, time.max)


def local_now() -> datetime:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).replace(tzinfo=None)


def to_local_naive(value: datetime) -> datetime:
    """Ledger timestamps are stored naive, in the configured timezone."""
    if value.tzinfo is None:
        return value
    tz = ZoneInfo(get_settings().timezone)
    return value.astimezone(tz).replace(tzinfo=None)


def month_end(year: int, month: int) -> date:
    if month == 12:
        return date(year + 1, 1, 1) - date.resolution
    return date(year, month + 1, 1) - date.resolution


def month_period(today: Optional[date] = None) -> Period:
    today = today or local_now().date()
    first = today.replace(day=1)
    return Period("this_month", first, month_end(first.year, first.month))


def period_key(moment: date) -> str:
    return f"{moment.year:04d}-{moment.month:02d}"


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or local_now().date()
    if not period or period == "all":
        return Period("all", date(1970, 1, 1), today)
    if period == "last_month":
        first_this = today.replace(day=1)
        last_month_end = first_this - date.resolution
        last_month_start = last_month_end.replace(day=1)
        return Period("last_month", last_month_start, last_month_end)
    if period == "custom":
        if not start or not end:
            raise ValueError("Custom period requires start and end dates")
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
        if start_date > end_date:
            raise ValueError("Start date must be before end date")
        return Period("custom", start_date, end_date)

    return month_period(today)
