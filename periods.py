from dataclasses import dataclass
from datetime import date
from typing import Optional

from billing import days_in_month, local_today


@dataclass(frozen=True)
class Period:
    slug: str
    start: Optional[date]
    end: Optional[date]


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    """Map a period name to a date range; ``all`` leaves both ends open."""
    today = today or local_today()
    if not period or period == "all":
        return Period("all", None, None)
    if period == "last_month":
        first_this = today.replace(day=1)
        last_month_end = first_this - date.resolution
        last_month_start = last_month_end.replace(day=1)
        return Period("last_month", last_month_start, last_month_end)
    if period == "this_year":
        return Period("this_year", date(today.year, 1, 1), date(today.year, 12, 31))
    if period == "custom":
        if not start or not end:
            raise ValueError("Custom period requires start and end dates")
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
        if start_date > end_date:
            raise ValueError("Start date must be before end date")
        return Period("custom", start_date, end_date)
    if period != "this_month":
        raise ValueError(f"Unknown period '{period}'")

    first = today.replace(day=1)
    end_this = first.replace(day=days_in_month(first.year, first.month))
    return Period("this_month", first, end_this)
