from datetime import date, datetime, time, timezone

import pytest

from sitehub.services.time_rules import (
    combine_date_time,
    effective_checkout,
    ensure_utc,
    hours_between,
    local_date,
    parse_hhmm,
    window_hours,
)


def test_parse_hhmm():
    assert parse_hhmm("09:30") == time(9, 30)
    assert parse_hhmm("18:00:15") == time(18, 0, 15)
    for bad in ("9", "25:00", "ab:cd", "1:2:3:4"):
        with pytest.raises(ValueError):
            parse_hhmm(bad)


def test_naive_values_are_read_as_utc():
    naive = datetime(2024, 3, 15, 3, 30)
    assert ensure_utc(naive) == datetime(2024, 3, 15, 3, 30, tzinfo=timezone.utc)


def test_local_date_crosses_midnight():
    # 20:00 UTC is 01:30 the next day in Kolkata
    assert local_date(datetime(2024, 3, 15, 20, 0, tzinfo=timezone.utc), "Asia/Kolkata") == date(2024, 3, 16)


def test_combine_local_time_to_utc():
    assert combine_date_time(date(2024, 3, 15), time(18, 0), "Asia/Kolkata") == datetime(
        2024, 3, 15, 12, 30, tzinfo=timezone.utc
    )


def test_effective_checkout_takes_earliest():
    day = date(2024, 3, 15)
    late = datetime(2024, 3, 15, 17, 30, tzinfo=timezone.utc)
    early = datetime(2024, 3, 15, 7, 30, tzinfo=timezone.utc)

    # Ceiling only
    assert effective_checkout(day, "Asia/Kolkata") == datetime(2024, 3, 15, 12, 30, tzinfo=timezone.utc)
    # Project closes before the ceiling
    assert effective_checkout(day, "Asia/Kolkata", late, time(17, 0)) == datetime(
        2024, 3, 15, 11, 30, tzinfo=timezone.utc
    )
    # Actual checkout before both
    assert effective_checkout(day, "Asia/Kolkata", early, time(17, 0)) == early


def test_hours_between_is_never_negative():
    start = datetime(2024, 3, 15, 10, 0, tzinfo=timezone.utc)
    assert hours_between(start, datetime(2024, 3, 15, 11, 30, tzinfo=timezone.utc)) == 1.5
    assert hours_between(start, datetime(2024, 3, 15, 9, 0, tzinfo=timezone.utc)) == 0


def test_window_hours():
    assert window_hours(time(9, 0), time(18, 0)) == 9
    assert window_hours(None, time(18, 0)) is None
