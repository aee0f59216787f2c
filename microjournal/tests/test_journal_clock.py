from datetime import date, datetime, timezone

import pytest

from microjournal.core.errors import InvalidTimezone, ValidationError
from microjournal.features.journal.clock import compute_journal_date, local_time, resolve_timezone


def test_before_cutoff_belongs_to_previous_day():
    # 10:30 UTC == 05:30 in New York (EST)
    instant = datetime(2024, 1, 10, 10, 30, tzinfo=timezone.utc)
    assert compute_journal_date(instant, "America/New_York", 6) == date(2024, 1, 9)


def test_after_cutoff_belongs_to_current_day():
    instant = datetime(2024, 1, 10, 11, 30, tzinfo=timezone.utc)  # 06:30 local
    assert compute_journal_date(instant, "America/New_York", 6) == date(2024, 1, 10)


def test_cutoff_boundary_is_inclusive_of_cutoff_hour():
    instant = datetime(2024, 1, 10, 11, 0, tzinfo=timezone.utc)  # exactly 06:00 local
    assert compute_journal_date(instant, "America/New_York", 6) == date(2024, 1, 10)


def test_cutoff_zero_is_plain_local_date():
    instant = datetime(2024, 1, 10, 4, 59, tzinfo=timezone.utc)  # 23:59 on the 9th
    assert compute_journal_date(instant, "America/New_York", 0) == date(2024, 1, 9)


def test_same_instant_differs_by_zone():
    instant = datetime(2024, 1, 10, 3, 0, tzinfo=timezone.utc)
    assert compute_journal_date(instant, "Asia/Tokyo", 6) == date(2024, 1, 10)  # 12:00 local
    assert compute_journal_date(instant, "America/Los_Angeles", 6) == date(2024, 1, 9)  # 19:00 on the 9th


def test_naive_instant_is_treated_as_utc():
    aware = datetime(2024, 1, 10, 10, 30, tzinfo=timezone.utc)
    naive = datetime(2024, 1, 10, 10, 30)
    assert compute_journal_date(naive, "America/New_York", 6) == compute_journal_date(aware, "America/New_York", 6)


def test_dst_transition_uses_local_offset():
    # 2024-03-10 is the spring-forward day in New York; 10:30 UTC is 06:30 EDT
    instant = datetime(2024, 3, 10, 10, 30, tzinfo=timezone.utc)
    assert local_time(instant, "America/New_York").hour == 6
    assert compute_journal_date(instant, "America/New_York", 6) == date(2024, 3, 10)


@pytest.mark.parametrize(
    "tz", [None, "", "   ", "Mars/Olympus_Mons", "../etc/passwd", "America", "Europe/" + "A" * 300]
)
def test_invalid_timezone_raises(tz):
    with pytest.raises(InvalidTimezone):
        compute_journal_date(datetime(2024, 1, 10, tzinfo=timezone.utc), tz, 6)


@pytest.mark.parametrize("cutoff", [-1, 24])
def test_cutoff_out_of_range_rejected(cutoff):
    with pytest.raises(ValidationError):
        compute_journal_date(datetime(2024, 1, 10, tzinfo=timezone.utc), "UTC", cutoff)


def test_resolve_timezone_is_cached():
    assert resolve_timezone("Europe/Berlin") is resolve_timezone("Europe/Berlin")
