from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo


@dataclass(frozen=True)
class Period:
    key: str
    start: date
    end: date  # exclusive


def local_today(timezone: str) -> date:
    return datetime.now(ZoneInfo(timezone)).date()


def period_key(value: date) -> str:
    """Calendar-month key shared by budgets and transactions, e.g. ``2024-06``."""
    return f"{value.year:04d}-{value.month:02d}"


def parse_period_key(key: str) -> tuple[int, int]:
    try:
        year_raw, month_raw = key.split("-")
        year = int(year_raw)
        month = int(month_raw)
    except (AttributeError, ValueError) as exc:
        raise ValueError(f"Invalid period key: {key!r}") from exc
    if len(year_raw) != 4 or len(month_raw) != 2 or not 1 <= month <= 12:
        raise ValueError(f"Invalid period key: {key!r}")
    return year, month


def period_for_key(key: str) -> Period:
    year, month = parse_period_key(key)
    start = date(year, month, 1)
    if month == 12:
        end = date(year + 1, 1, 1)
    else:
        end = date(year, month + 1, 1)
    return Period(key, start, end)


def shift_period_key(key: str, months: int) -> str:
    year, month = parse_period_key(key)
    total = year * 12 + (month - 1) + months
    return f"{total // 12:04d}-{total % 12 + 1:02d}"


def resolve_period(
    period: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or date.today()
    current = period_key(today)
    if not period or period == "this_month":
        return period_for_key(current)
    if period == "last_month":
        return period_for_key(shift_period_key(current, -1))
    if period == "next_month":
        return period_for_key(shift_period_key(current, 1))
    return period_for_key(period)
