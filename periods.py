from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from errors import InvalidInputError


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


def local_today() -> date:
    return datetime.now(ZoneInfo(get_settings().timezone)).date()


def trailing_window(days: int, *, today: Optional[date] = None) -> Period:
    """The last `days` calendar days, today included."""
    today = today or local_today()
    return Period(f"last_{days}_days", today - timedelta(days=days - 1), today)


def budget_window(
    start: date, end: Optional[date], *, today: Optional[date] = None
) -> Period:
    # Open-ended budgets accumulate spend up to today.
    today = today or local_today()
    return Period("budget", start, end or today)


def parse_date_param(value: Optional[str], name: str) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise InvalidInputError(f"{name} must be an ISO date (YYYY-MM-DD)") from exc
