"""
Tests for cron expression parsing and next fire time computation.
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from cronjobs.errors import InvalidScheduleError
from cronjobs.schedule import is_valid, parse, resolve_timezone

UTC = timezone.utc


def _assert_matches(schedule, fire_time):
    """Check a fire time against every field of the schedule."""
    local = fire_time.astimezone(schedule.zone)
    assert local.second in schedule.second
    assert local.minute in schedule.minute
    assert local.hour in schedule.hour
    assert local.month in schedule.month
    assert local.year in schedule.year
    assert schedule.matches_day(local.date())


@pytest.mark.parametrize("expression, timezone_name", [
    ("* * * * * ?", "UTC"),
    ("0 */5 * * * ?", "Europe/Amsterdam"),
    ("30 15 10 ? * MON-FRI", "America/New_York"),
    ("0 0 12 1,15 * ?", "GMT+5:30"),
    ("0 0 0 L * ?", "UTC"),
    ("0 0 9 ? * 6#3", "UTC"),
    ("*/15 9-17 * * 1-5", "Asia/Tokyo"),
])
def test_next_fire_time_is_later_and_matches(expression, timezone_name):
    schedule = parse(expression, timezone_name)
    after = datetime(2024, 3, 9, 23, 59, 58, tzinfo=UTC)

    previous = after
    for _ in range(5):
        fire_time = schedule.next_fire_time(previous)
        assert fire_time is not None
        assert fire_time > previous
        _assert_matches(schedule, fire_time)
        previous = fire_time


def test_every_second():
    schedule = parse("* * * * * ?")
    after = datetime(2024, 1, 1, 12, 0, 0, 500000, tzinfo=UTC)

    assert schedule.next_fire_time(after) == datetime(2024, 1, 1, 12, 0, 1, tzinfo=UTC)


def test_far_future_year():
    schedule = parse("0 0 0 1 1 ? 2099", "GMT+5:30")

    fire_time = schedule.next_fire_time(datetime(2024, 6, 1, tzinfo=UTC))

    assert fire_time.year == 2099
    assert (fire_time.month, fire_time.day, fire_time.hour) == (1, 1, 0)
    assert fire_time.utcoffset() == timedelta(hours=5, minutes=30)
    assert schedule.next_fire_time(fire_time) is None


def test_past_year_has_no_fire_time():
    schedule = parse("0 0 0 1 1 ? 2000")

    assert schedule.next_fire_time(datetime(2024, 1, 1, tzinfo=UTC)) is None


def test_unix_five_field_form():
    # Sunday may be written 0 or 7
    schedule = parse("30 6 * * 0")
    same = parse("30 6 * * 7")
    after = datetime(2024, 5, 1, tzinfo=UTC)  # a Wednesday

    fire_time = schedule.next_fire_time(after)

    assert fire_time == datetime(2024, 5, 5, 6, 30, 0, tzinfo=UTC)
    assert same.next_fire_time(after) == fire_time


def test_quartz_day_of_week_numbering():
    # Quartz numbers Sunday as 1
    schedule = parse("0 0 8 ? * 1")

    fire_time = schedule.next_fire_time(datetime(2024, 5, 1, tzinfo=UTC))

    assert fire_time.date() == date(2024, 5, 5)


def test_last_day_of_month():
    schedule = parse("0 0 0 L * ?")

    assert schedule.next_fire_time(datetime(2024, 2, 10, tzinfo=UTC)).day == 29
    assert schedule.next_fire_time(datetime(2023, 2, 10, tzinfo=UTC)).day == 28


def test_nearest_weekday():
    # 2024-06-15 is a Saturday, so 15W fires on Friday the 14th
    schedule = parse("0 0 0 15W * ?")

    assert schedule.next_fire_time(datetime(2024, 6, 1, tzinfo=UTC)).date() == date(2024, 6, 14)


def test_last_weekday_of_month():
    # 2024-03-31 is a Sunday
    schedule = parse("0 0 0 LW * ?")

    assert schedule.next_fire_time(datetime(2024, 3, 1, tzinfo=UTC)).date() == date(2024, 3, 29)


def test_nth_and_last_weekday_of_month():
    third_friday = parse("0 0 0 ? * FRI#3")
    last_friday = parse("0 0 0 ? * 6L")
    after = datetime(2024, 5, 1, tzinfo=UTC)

    assert third_friday.next_fire_time(after).date() == date(2024, 5, 17)
    assert last_friday.next_fire_time(after).date() == date(2024, 5, 31)


def test_day_fields_combine_with_or():
    # 13th of the month or any Friday
    schedule = parse("0 0 0 13 * FRI")
    after = datetime(2024, 5, 1, tzinfo=UTC)

    first = schedule.next_fire_time(after)
    second = schedule.next_fire_time(first)

    assert first.date() == date(2024, 5, 3)
    assert second.date() == date(2024, 5, 10)
    assert schedule.next_fire_time(second).date() == date(2024, 5, 13)


def test_wrapping_range():
    schedule = parse("0 0 22-2 * * ?")
    hours = set()
    fire_time = datetime(2024, 1, 1, tzinfo=UTC)
    for _ in range(10):
        fire_time = schedule.next_fire_time(fire_time)
        hours.add(fire_time.hour)

    assert hours == {22, 23, 0, 1, 2}


def test_dst_gap_is_skipped():
    # Clocks in Amsterdam jump from 02:00 to 03:00 on 2024-03-31
    schedule = parse("0 30 2 * * ?", "Europe/Amsterdam")

    fire_time = schedule.next_fire_time(datetime(2024, 3, 30, 12, 0, tzinfo=UTC))

    assert fire_time.date() == date(2024, 4, 1)


def test_dst_repeat_fires_once():
    # Clocks in Amsterdam fall back from 03:00 to 02:00 on 2024-10-27
    schedule = parse("0 30 2 * * ?", "Europe/Amsterdam")

    first = schedule.next_fire_time(datetime(2024, 10, 26, 12, 0, tzinfo=UTC))
    second = schedule.next_fire_time(first)

    assert first.date() == date(2024, 10, 27)
    assert first.astimezone(UTC) == datetime(2024, 10, 27, 0, 30, tzinfo=UTC)
    assert second.date() == date(2024, 10, 28)


def test_naive_reference_uses_schedule_timezone():
    schedule = parse("0 0 9 * * ?", "Asia/Tokyo")

    fire_time = schedule.next_fire_time(datetime(2024, 1, 1, 8, 0, 0))

    assert fire_time.astimezone(UTC) == datetime(2024, 1, 1, 0, 0, tzinfo=UTC)


def test_to_cron_round_trip():
    for expression in ("0 0 12 ? * MON-FRI", "0 15 10 L-2 * ?", "0 0 0 ? * 2#1 2025-2030"):
        schedule = parse(expression, "Europe/London")
        assert parse(schedule.to_cron(), schedule.timezone) == schedule


@pytest.mark.parametrize("expression", [
    "",
    "not a cron",
    "* * *",
    "60 * * * * ?",
    "0 0 25 * * ?",
    "0 0 0 32 * ?",
    "0 0 0 ? 13 *",
    "0 0 0 ? * 8",
    "0 */0 * * * ?",
    "0 0 0 1 1 ? 2300",
    "? * * * * *",
    "0 0 0 ? * MON#6",
    "0 0 ² * * ?",
    "0 */² * * * ?",
    "0 0 0 ١٥W * ?",
    "0 0 0 ? * 6#³",
])
def test_invalid_expressions(expression):
    with pytest.raises(InvalidScheduleError):
        parse(expression)
    assert not is_valid(expression)


def test_timezones():
    assert resolve_timezone("UTC") is UTC
    assert resolve_timezone(None) is UTC
    assert resolve_timezone("GMT+5:30").utcoffset(None) == timedelta(hours=5, minutes=30)
    assert resolve_timezone("UTC-03:00").utcoffset(None) == timedelta(hours=-3)
    with pytest.raises(InvalidScheduleError):
        resolve_timezone("Mars/Olympus_Mons")
    with pytest.raises(InvalidScheduleError):
        parse("* * * * * ?", "GMT+25")
    with pytest.raises(InvalidScheduleError):
        parse("* * * * * ?", "GMT+٥")
