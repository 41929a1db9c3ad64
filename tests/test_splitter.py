"""
Tests for midnight splitting and fixed-offset day attribution.
"""

import datetime

import pytest

from conftest import USER, utc
from daytrack.domain.errors import ValidationError
from daytrack.domain.models import TimeEntry
from daytrack.domain.splitter import crosses_midnight, split_at_midnight
from daytrack.domain.timezones import (
    TIMEZONES, day_end, day_start, get_zone, local_date, to_local,
)


def _open_entry(start, zone, comment="fixing"):
    return TimeEntry(
        user_id=USER,
        task_id="task-1",
        start_time=start,
        comment=comment,
        date=local_date(start, zone),
    )


def test_split_at_tokyo_midnight(tokyo):
    """23:30 JST start, split at the end of the day"""
    entry = _open_entry(utc(2026, 3, 1, 14, 30), tokyo)
    assert entry.date == datetime.date(2026, 3, 1)

    closed, new = split_at_midnight(entry, tokyo, new_entry_id="next")

    assert closed.id == entry.id
    assert closed.end_time == utc(2026, 3, 1, 14, 59, 59, 999000)
    assert to_local(closed.end_time, tokyo).time() == datetime.time(23, 59, 59, 999000)
    assert closed.date == datetime.date(2026, 3, 1)
    assert closed.comment == "fixing"

    assert new.id == "next"
    assert new.start_time == utc(2026, 3, 1, 15, 0)
    assert new.end_time is None
    assert new.date == datetime.date(2026, 3, 2)
    assert new.task_id == entry.task_id
    assert new.user_id == entry.user_id
    assert new.comment == "fixing"


@pytest.mark.parametrize("key", sorted(TIMEZONES))
def test_split_halves_are_continuous(key):
    zone = get_zone(key)
    start = day_start(datetime.date(2026, 7, 10), zone) + datetime.timedelta(hours=22)
    closed, new = split_at_midnight(_open_entry(start, zone), zone)

    gap = new.start_time - closed.end_time
    assert gap == datetime.timedelta(milliseconds=1)
    assert closed.start_time <= closed.end_time < new.start_time
    assert new.date == closed.date + datetime.timedelta(days=1)


def test_split_generates_fresh_id(tokyo):
    entry = _open_entry(utc(2026, 3, 1, 14, 30), tokyo)
    _, new = split_at_midnight(entry, tokyo)
    assert new.id and new.id != entry.id


def test_split_closed_entry_raises(tokyo):
    entry = _open_entry(utc(2026, 3, 1, 10), tokyo).model_copy(
        update={"end_time": utc(2026, 3, 1, 11)}
    )
    with pytest.raises(ValidationError):
        split_at_midnight(entry, tokyo)


def test_crosses_midnight_same_day(tokyo):
    entry = _open_entry(utc(2026, 3, 1, 0, 0), tokyo)  # 09:00 JST
    assert not crosses_midnight(entry, utc(2026, 3, 1, 14, 59, 59), tokyo)
    assert crosses_midnight(entry, utc(2026, 3, 1, 15, 0, 0), tokyo)


def test_crosses_midnight_depends_on_zone():
    # 22:00 UTC on Mar 1 is already Mar 2 in Tokyo but still Mar 1 in London
    start = utc(2026, 3, 1, 12)
    now = utc(2026, 3, 1, 22)
    tokyo, london = get_zone("Asia/Tokyo"), get_zone("Europe/London")
    assert crosses_midnight(_open_entry(start, tokyo), now, tokyo)
    assert not crosses_midnight(_open_entry(start, london), now, london)


def test_half_hour_offset_day_bounds():
    kolkata = get_zone("Asia/Kolkata")
    day = datetime.date(2026, 1, 15)
    assert day_start(day, kolkata) == utc(2026, 1, 14, 18, 30)
    assert day_end(day, kolkata) == utc(2026, 1, 15, 18, 29, 59, 999000)


def test_unknown_zone_rejected():
    with pytest.raises(ValidationError):
        get_zone("Mars/Olympus")


def test_local_date_treats_naive_as_utc(tokyo):
    assert local_date(datetime.datetime(2026, 3, 1, 20), tokyo) == datetime.date(2026, 3, 2)


def test_entry_rejects_end_before_start(tokyo):
    with pytest.raises(ValueError):
        TimeEntry(
            user_id=USER,
            task_id="t",
            start_time=utc(2026, 3, 1, 10),
            end_time=utc(2026, 3, 1, 9),
            date=datetime.date(2026, 3, 1),
        )
