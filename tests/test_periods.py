from datetime import datetime, timedelta, timezone

import pytest

from errors import InvalidRequest
from periods import resolve_period

UTC = timezone.utc
NOW = datetime(2024, 3, 15, 10, 0, tzinfo=UTC)  # a Friday


def _end_of_day(year: int, month: int, day: int) -> datetime:
    return datetime(year, month, day, 23, 59, 59, 999999, tzinfo=UTC)


def test_daily_covers_current_utc_day():
    period = resolve_period("daily", None, None, now=NOW)
    assert period.slug == "daily"
    assert period.start == datetime(2024, 3, 15, tzinfo=UTC)
    assert period.end == _end_of_day(2024, 3, 15)


def test_weekly_starts_on_monday():
    period = resolve_period("weekly", None, None, now=NOW)
    assert period.start == datetime(2024, 3, 11, tzinfo=UTC)
    assert period.start.isoweekday() == 1
    assert period.end == _end_of_day(2024, 3, 17)


def test_weekly_on_sunday_belongs_to_preceding_monday():
    sunday = datetime(2024, 3, 17, 22, 30, tzinfo=UTC)
    period = resolve_period("weekly", None, None, now=sunday)
    assert period.start == datetime(2024, 3, 11, tzinfo=UTC)
    assert period.end == _end_of_day(2024, 3, 17)


def test_monthly_handles_leap_february_and_december():
    period = resolve_period("monthly", None, None, now=NOW)
    assert period.start == datetime(2024, 3, 1, tzinfo=UTC)
    assert period.end == _end_of_day(2024, 3, 31)

    feb = resolve_period("monthly", None, None, now=datetime(2024, 2, 10, tzinfo=UTC))
    assert feb.end == _end_of_day(2024, 2, 29)

    dec = resolve_period("monthly", None, None, now=datetime(2024, 12, 31, tzinfo=UTC))
    assert dec.start == datetime(2024, 12, 1, tzinfo=UTC)
    assert dec.end == _end_of_day(2024, 12, 31)


def test_yearly_covers_calendar_year():
    period = resolve_period("yearly", None, None, now=NOW)
    assert period.start == datetime(2024, 1, 1, tzinfo=UTC)
    assert period.end == _end_of_day(2024, 12, 31)


def test_window_end_is_one_step_before_next_window():
    daily = resolve_period("daily", None, None, now=NOW)
    tomorrow = resolve_period("daily", None, None, now=NOW + timedelta(days=1))
    assert tomorrow.start - daily.end == timedelta(microseconds=1)


def test_now_in_other_timezone_is_normalized_to_utc():
    # 01:00 in UTC+3 on the 16th is still the 15th in UTC.
    local = datetime(2024, 3, 16, 1, 0, tzinfo=timezone(timedelta(hours=3)))
    period = resolve_period("daily", None, None, now=local)
    assert period.start == datetime(2024, 3, 15, tzinfo=UTC)


def test_custom_returns_caller_bounds():
    start = datetime(2024, 1, 10)
    end = datetime(2024, 2, 20, 12, 0, tzinfo=UTC)
    period = resolve_period("custom", start, end, now=NOW)
    assert period.slug == "custom"
    assert period.start == datetime(2024, 1, 10, tzinfo=UTC)
    assert period.end == end


def test_custom_inverted_bounds_are_kept_verbatim():
    start = datetime(2024, 5, 1, tzinfo=UTC)
    end = datetime(2024, 4, 1, tzinfo=UTC)
    period = resolve_period("custom", start, end, now=NOW)
    assert period.start > period.end


@pytest.mark.parametrize(
    "start,end",
    [
        (datetime(2024, 1, 1, tzinfo=UTC), None),
        (None, datetime(2024, 1, 1, tzinfo=UTC)),
        (None, None),
    ],
)
def test_custom_requires_both_bounds(start, end):
    with pytest.raises(InvalidRequest):
        resolve_period("custom", start, end, now=NOW)


@pytest.mark.parametrize("selector", ["fortnightly", "", None, "Daily"])
def test_unknown_selector_is_invalid(selector):
    with pytest.raises(InvalidRequest):
        resolve_period(selector, None, None, now=NOW)


def test_default_clock_is_current_utc_instant():
    period = resolve_period("daily", None, None)
    today = datetime.now(UTC)
    assert period.start.date() in {today.date(), (today - timedelta(days=1)).date()}
    assert period.start.tzinfo == UTC
