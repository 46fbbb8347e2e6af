from datetime import date

import pytest

from clinic_ops.models import ConflictCandidate
from clinic_ops.services.conflicts import check_conflict

from conftest import make_appt

DAY = date(2024, 3, 4)


def _candidate(start, *, duration=None, appt_id=None, staff_id="staff-lina", day=DAY):
    hours, minutes = (int(part) for part in start.split(":"))
    return ConflictCandidate(staff_id=staff_id, day=day, start=hours * 60 + minutes, duration_minutes=duration, id=appt_id)


@pytest.mark.parametrize(
    "start, duration, expected",
    [
        ("10:00", 30, True),
        ("09:45", 30, True),
        ("10:15", None, True),
        ("09:30", 30, False),
        ("10:30", 30, False),
        ("09:00", 120, True),
    ],
)
def test_overlap_is_half_open(start, duration, expected):
    existing = [make_appt("a1", "10:00", day=DAY, duration=30)]
    assert check_conflict(existing, _candidate(start, duration=duration)).has_conflict is expected


def test_self_comparison_is_excluded():
    existing = [make_appt("a1", "10:00", day=DAY)]
    result = check_conflict(existing, _candidate("10:00", appt_id="a1"))
    assert not result.has_conflict
    assert result.conflicts == []


def test_cancelled_other_staff_and_other_dates_never_conflict():
    existing = [
        make_appt("c1", "10:00", day=DAY, status="cancelled"),
        make_appt("o1", "10:00", day=DAY, staff_id="staff-omar"),
        make_appt("d1", "10:00", day=date(2024, 3, 5)),
    ]
    assert not check_conflict(existing, _candidate("10:00")).has_conflict


def test_returns_every_overlap_sorted():
    existing = [
        make_appt("late", "11:00", day=DAY),
        make_appt("early", "10:00", day=DAY, duration=60),
        make_appt("far", "15:00", day=DAY),
    ]
    result = check_conflict(existing, _candidate("10:30", duration=60))
    assert [appt.id for appt in result.conflicts] == ["early", "late"]
    payload = result.to_dict()
    assert payload["has_conflict"] is True
    assert payload["conflicts"][0]["time"] == "10:00"


def test_short_duration_counts_as_one_slot():
    existing = [make_appt("a1", "10:00", day=DAY, duration=10)]
    assert check_conflict(existing, _candidate("10:20", duration=10)).has_conflict
