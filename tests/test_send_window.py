import datetime

import pytest

from newsletter.send_window import clamp_tolerance, is_due, local_time, minutes_apart, slot_date

UTC = datetime.timezone.utc


def at(hour, minute, day=datetime.date(2024, 6, 1)):
    return datetime.datetime.combine(day, datetime.time(hour, minute), tzinfo=UTC)


def test_midnight_wraparound():
    assert minutes_apart(0, 5, 23, 58) == 7
    assert is_due(0, 5, "UTC", at(23, 58), 15)


def test_outside_tolerance():
    assert not is_due(12, 0, "UTC", at(12, 20), 15)


@pytest.mark.parametrize("hour,minute,expected", [
    (9, 0, True),
    (9, 20, True),   # exactly at the edge
    (9, 21, False),
    (8, 50, True),
    (14, 0, False),
])
def test_tolerance_edges(hour, minute, expected):
    assert is_due(hour, minute, "UTC", at(9, 5), 15) is expected


def test_converts_to_local_time():
    # 07:00 UTC is 09:00 in Helsinki during summer time
    assert is_due(9, 0, "Europe/Helsinki", at(7, 0), 5)
    assert not is_due(9, 0, "Europe/Helsinki", at(9, 0), 5)


def test_daylight_saving_transition():
    # New York switches to EDT on 2024-03-10
    before = at(14, 0, datetime.date(2024, 3, 9))
    after = at(13, 0, datetime.date(2024, 3, 10))
    assert is_due(9, 0, "America/New_York", before, 1)
    assert is_due(9, 0, "America/New_York", after, 1)
    assert not is_due(9, 0, "America/New_York", at(14, 0, datetime.date(2024, 3, 10)), 15)


def test_unknown_timezone_falls_back_to_utc():
    assert is_due(9, 0, "Mars/Olympus_Mons", at(9, 0), 1)
    assert is_due(9, 0, None, at(9, 0), 1)


def test_naive_now_rejected():
    with pytest.raises(ValueError):
        local_time(datetime.datetime(2024, 6, 1, 9, 0), "UTC")


@pytest.mark.parametrize("raw,expected", [
    (None, 15), ("", 15), ("abc", 15), ("0", 1), ("5", 5), ("500", 60), (30, 30),
])
def test_clamp_tolerance(raw, expected):
    assert clamp_tolerance(raw) == expected


@pytest.mark.parametrize("now,expected", [
    (at(23, 55, datetime.date(2024, 6, 1)), datetime.date(2024, 6, 2)),
    (at(0, 10, datetime.date(2024, 6, 2)), datetime.date(2024, 6, 2)),
    (at(12, 0, datetime.date(2024, 6, 2)), datetime.date(2024, 6, 2)),
])
def test_slot_date_near_midnight(now, expected):
    assert slot_date(0, 5, "UTC", now) == expected


def test_slot_date_late_evening_slot():
    # 23:50 slot seen just after midnight belongs to the previous day
    assert slot_date(23, 50, "UTC", at(0, 2, datetime.date(2024, 6, 2))) == datetime.date(2024, 6, 1)


def test_slot_date_uses_local_calendar():
    # 22:30 UTC on 1 June is 01:30 on 2 June in Helsinki
    assert slot_date(1, 30, "Europe/Helsinki", at(22, 30)) == datetime.date(2024, 6, 2)
