from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from errors import InvalidRequest

Clock = Callable[[], datetime]

# Smallest step of datetime; closes each window just before the next one opens.
RESOLUTION = timedelta(microseconds=1)


class SummaryPeriod(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"
    custom = "custom"


@dataclass(frozen=True)
class Period:
    slug: str
    start: datetime
    end: datetime


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _midnight(value: datetime) -> datetime:
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)


def _first_of_next_month(first: datetime) -> datetime:
    if first.month == 12:
        return first.replace(year=first.year + 1, month=1)
    return first.replace(month=first.month + 1)


def resolve_period(
    period: Optional[str],
    start: Optional[datetime],
    end: Optional[datetime],
    *,
    now: Optional[datetime] = None,
) -> Period:
    """Map a period selector to an inclusive ``[start, end]`` UTC window.

    ``now`` pins the clock; it defaults to the current UTC instant. For
    ``custom`` the caller's bounds are returned as given (converted to UTC),
    even when ``start`` falls after ``end``.
    """
    try:
        slug = SummaryPeriod(period)
    except ValueError as exc:
        raise InvalidRequest(f"Invalid period: {period!r}") from exc

    now = as_utc(now or utc_now())

    if slug == SummaryPeriod.daily:
        first = _midnight(now)
        return Period(slug.value, first, first + timedelta(days=1) - RESOLUTION)
    if slug == SummaryPeriod.weekly:
        first = _midnight(now) - timedelta(days=now.isoweekday() - 1)
        return Period(slug.value, first, first + timedelta(days=7) - RESOLUTION)
    if slug == SummaryPeriod.monthly:
        first = _midnight(now).replace(day=1)
        return Period(slug.value, first, _first_of_next_month(first) - RESOLUTION)
    if slug == SummaryPeriod.yearly:
        first = datetime(now.year, 1, 1, tzinfo=timezone.utc)
        return Period(
            slug.value, first, first.replace(year=first.year + 1) - RESOLUTION
        )

    if start is None or end is None:
        raise InvalidRequest("start and end required for custom period")
    return Period(slug.value, as_utc(start), as_utc(end))
