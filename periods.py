from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

from errors import ValidationError
from models import BudgetPeriod
from recurrence import add_months


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or date.today()
    if period == "last_month":
        first_this = today.replace(day=1)
        last_month_end = first_this - date.resolution
        last_month_start = last_month_end.replace(day=1)
        return Period("last_month", last_month_start, last_month_end)
    if period == "this_year":
        return Period("this_year", date(today.year, 1, 1), date(today.year, 12, 31))
    if period == "custom" or (period is None and (start or end)):
        if not start or not end:
            raise ValidationError("Custom period requires start and end dates")
        try:
            start_date = date.fromisoformat(start)
            end_date = date.fromisoformat(end)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if start_date > end_date:
            raise ValidationError("Start date must be before end date")
        return Period("custom", start_date, end_date)
    if period not in (None, "", "this_month"):
        raise ValidationError(f"Unknown period: {period}")

    first = today.replace(day=1)
    end_this = add_months(first, 1) - date.resolution
    return Period("this_month", first, end_this)


def computed_end_date(start: date, period: BudgetPeriod) -> date:
    if period == BudgetPeriod.weekly:
        return start + timedelta(days=7)
    if period == BudgetPeriod.monthly:
        return add_months(start, 1)
    return add_months(start, 12)


def budget_window(
    start: date, period: BudgetPeriod, end: Optional[date] = None
) -> Period:
    return Period(period.value, start, end or computed_end_date(start, period))
