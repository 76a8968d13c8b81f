from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from errors import ValidationFailed
from models import CardStatus

CLOSING_OFFSET_DAYS = 6


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def default_closing_offset() -> int:
    return get_settings().closing_offset_days


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def shift_month(year: int, month: int, months: int) -> tuple[int, int]:
    total_months = month - 1 + months
    return year + total_months // 12, total_months % 12 + 1


def add_months(base: date, months: int) -> date:
    """Same day-of-month ``months`` later, snapped to the last day of short months."""
    year, month = shift_month(base.year, base.month, months)
    return date(year, month, min(base.day, days_in_month(year, month)))


def _check_due_day(due_day: int) -> None:
    if due_day < 1 or due_day > 31:
        raise ValidationFailed("Due day must be between 1 and 31")


def closing_day(
    due_day: int, year: int, month: int, offset: int = CLOSING_OFFSET_DAYS
) -> int:
    """
    Day of month on which the statement of ``month`` closes.

    The statement closes ``offset`` days before the due day. When that lands
    at or before day zero the closing falls in the previous month and is
    counted back from that month's last day.
    """
    _check_due_day(due_day)
    day = due_day - offset
    if day <= 0:
        prev_year, prev_month = shift_month(year, month, -1)
        day = days_in_month(prev_year, prev_month) + day
    return day


def statement_month(
    due_day: int, txn_date: date, offset: int = CLOSING_OFFSET_DAYS
) -> tuple[int, int]:
    """Return ``(month, year)`` of the statement a card charge belongs to."""
    closing = closing_day(due_day, txn_date.year, txn_date.month, offset)
    if txn_date.day >= closing:
        year, month = shift_month(txn_date.year, txn_date.month, 1)
        return month, year
    return txn_date.month, txn_date.year


def due_date(due_day: int, year: int, month: int) -> date:
    _check_due_day(due_day)
    return date(year, month, min(due_day, days_in_month(year, month)))


def next_due_date(due_day: int, today: date) -> date:
    candidate = due_date(due_day, today.year, today.month)
    if candidate >= today:
        return candidate
    year, month = shift_month(today.year, today.month, 1)
    return due_date(due_day, year, month)


def derive_card_status(
    due_day: int,
    today: date,
    paid_at: Optional[datetime] = None,
    offset: int = CLOSING_OFFSET_DAYS,
) -> CardStatus:
    """
    Status of a card on ``today``.

    ``paid`` is pinned by the user and wins until the card is reopened.
    Otherwise the status follows the next due date on or after today:
    ``due`` on the due date itself, ``closed`` from the closing date until
    the day before it, ``open`` the rest of the time.
    """
    if paid_at is not None:
        return CardStatus.paid
    upcoming = next_due_date(due_day, today)
    if today == upcoming:
        return CardStatus.due
    if today >= upcoming - timedelta(days=offset):
        return CardStatus.closed
    return CardStatus.open
