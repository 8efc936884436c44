from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from models import BudgetPeriod


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


def local_today(timezone: Optional[str] = None) -> date:
    tz = ZoneInfo(timezone or get_settings().timezone)
    return datetime.now(tz).date()


def month_period(year: int, month: int) -> Period:
    first = date(year, month, 1)
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return Period("month", first, next_month - date.resolution)


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or local_today()
    if period == "all":
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

    # this month
    current = month_period(today.year, today.month)
    return Period("this_month", current.start, current.end)


def budget_window(
    period: BudgetPeriod,
    start_date: date,
    end_date: Optional[date],
    today: date,
) -> Period:
    """Return the instance of a recurring budget period that is current on ``today``.

    A budget that has not started yet is measured against its first instance,
    one that has ended against its last. ``end_date`` clips the window; a
    custom budget spans start to end.
    """
    reference = max(today, start_date)
    if end_date is not None and reference > end_date:
        reference = max(end_date, start_date)
    if period == BudgetPeriod.monthly:
        window = month_period(reference.year, reference.month)
    elif period == BudgetPeriod.yearly:
        window = Period("year", date(reference.year, 1, 1), date(reference.year, 12, 31))
    elif period == BudgetPeriod.weekly:
        weeks = (reference - start_date).days // 7
        week_start = start_date + timedelta(days=7 * weeks)
        window = Period("week", week_start, week_start + timedelta(days=6))
    else:
        if end_date is None:
            raise ValueError("Custom budgets require an end date")
        return Period("custom", start_date, end_date)

    end = window.end
    if end_date is not None and end_date < end:
        end = end_date
    return Period(period.value, window.start, end)
