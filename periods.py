from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from models import utcnow


MAX_PERIOD_DAYS = 36600


@dataclass(frozen=True)
class Period:
    slug: str
    start: datetime
    end: datetime


def _zone(tz: Optional[str]) -> ZoneInfo:
    return ZoneInfo(tz or get_settings().timezone)


def _naive_utc(value: datetime) -> datetime:
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def trailing_period(days: int, *, now: Optional[datetime] = None) -> Period:
    if days <= 0:
        raise ValueError("Period length must be positive")
    if days > MAX_PERIOD_DAYS:
        raise ValueError(f"Period length must be at most {MAX_PERIOD_DAYS} days")
    now = now or utcnow()
    return Period(f"last_{days}_days", now - timedelta(days=days), now)


def current_month(
    *, now: Optional[datetime] = None, tz: Optional[str] = None
) -> Period:
    """Calendar month containing ``now`` in the ledger's zone.

    ``now`` and the returned bounds are naive UTC, like stored timestamps.
    """
    now = now or utcnow()
    local = now.replace(tzinfo=timezone.utc).astimezone(_zone(tz))
    first = local.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return Period(
        "this_month",
        _naive_utc(first),
        _naive_utc(next_month) - timedelta(microseconds=1),
    )


def resolve_period(
    start: Optional[str],
    end: Optional[str],
) -> tuple[Optional[datetime], Optional[datetime]]:
    start_at = datetime.fromisoformat(start) if start else None
    end_at = datetime.fromisoformat(end) if end else None
    if start_at and end_at and start_at > end_at:
        raise ValueError("Start date must be before end date")
    return start_at, end_at
