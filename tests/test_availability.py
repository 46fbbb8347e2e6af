from datetime import date, datetime

import pytest

from clinic_ops.services.availability import (
    AvailabilityPolicy,
    DateOverride,
    StaffAvailability,
    TimeRange,
    clear_date_override,
    copy_override_to_dates,
    ensure_available,
    load_staff_availability,
    normalize_date,
    parse_clock,
    resolve_availability,
    resolve_for_staff,
    set_date_override,
)
from clinic_ops.services.appointments import book_appointment
from clinic_ops.services.errors import ConflictDetected, InvalidInput, NoAvailability, StaffNotFound

from conftest import MONDAY, SUNDAY


def _staff(**overrides):
    return StaffAvailability(staff_id="staff-lina", overrides=overrides)


def test_default_policy_opens_working_hours():
    effective = resolve_availability(_staff(), MONDAY)
    assert effective.enabled
    assert effective.open_ranges == [TimeRange(9 * 60, 18 * 60)]
    assert effective.unavailable_ranges == []


def test_rest_day_is_closed_even_with_override():
    staff = _staff(**{SUNDAY.isoformat(): DateOverride.with_exceptions([TimeRange(600, 660)])})
    effective = resolve_availability(staff, SUNDAY)
    assert not effective.enabled
    assert effective.open_ranges == []


def test_unavailable_override_closes_date():
    staff = _staff(**{MONDAY.isoformat(): DateOverride.off()})
    assert not resolve_availability(staff, MONDAY).enabled


def test_partial_override_keeps_day_with_exceptions():
    lunch = TimeRange.parse("13:00", "14:00")
    staff = _staff(**{MONDAY.isoformat(): DateOverride.with_exceptions([lunch])})
    effective = resolve_availability(staff, MONDAY)
    assert effective.enabled
    assert effective.unavailable_ranges == [lunch]
    assert [rng.to_dict() for rng in effective.free_ranges()] == [
        {"start": "09:00", "end": "13:00"},
        {"start": "14:00", "end": "18:00"},
    ]
    assert effective.covers(parse_clock("12:30"), parse_clock("13:00"))
    assert not effective.covers(parse_clock("12:30"), parse_clock("13:30"))


def test_override_lookup_ignores_timezone_suffix():
    staff = _staff(**{MONDAY.isoformat(): DateOverride.off()})
    # Late-evening local timestamp must not drift to the next day.
    assert not resolve_availability(staff, "2030-03-04T23:30:00-05:00").enabled
    assert resolve_availability(staff, "2030-03-05T00:30:00+09:00").enabled


@pytest.mark.parametrize(
    "value, expected",
    [
        ("2030-03-04", date(2030, 3, 4)),
        ("2030-3-4", date(2030, 3, 4)),
        ("2030-03-04T23:59:59Z", date(2030, 3, 4)),
        (datetime(2030, 3, 4, 23, 59), date(2030, 3, 4)),
        (date(2030, 3, 4), date(2030, 3, 4)),
    ],
)
def test_normalize_date_keeps_calendar_component(value, expected):
    assert normalize_date(value) == expected


@pytest.mark.parametrize(
    "value", ["", None, "04/03/2030", "2030-02-30", "2030-03-041", "2030-03-04junk", "2030-03-4x", "2030-03-04T9am"]
)
def test_normalize_date_rejects_malformed(value):
    with pytest.raises(InvalidInput):
        normalize_date(value)


@pytest.mark.parametrize("value", ["24:00", "9", "09:60", "nine"])
def test_parse_clock_rejects_malformed(value):
    with pytest.raises(InvalidInput):
        parse_clock(value)


def test_time_range_requires_start_before_end():
    with pytest.raises(InvalidInput):
        TimeRange.parse("14:00", "13:00")


def test_ensure_available_reasons():
    closed = resolve_availability(_staff(), SUNDAY)
    with pytest.raises(NoAvailability) as exc:
        ensure_available(closed, 600, 630)
    assert exc.value.reason == "no_availability_on_date"

    open_day = resolve_availability(_staff(), MONDAY)
    with pytest.raises(NoAvailability) as exc:
        ensure_available(open_day, parse_clock("17:45"), parse_clock("18:15"))
    assert exc.value.reason == "time_outside_availability"
    ensure_available(open_day, parse_clock("17:30"), parse_clock("18:00"))


def test_policy_reads_app_config():
    policy = AvailabilityPolicy.from_config(
        {"SCHEDULING_DAY_START": "08:00", "SCHEDULING_DAY_END": "12:00", "SCHEDULING_REST_WEEKDAY": 4}
    )
    assert policy.default_range == TimeRange(480, 720)
    assert policy.is_rest_day(date(2030, 3, 8))


def test_set_override_round_trips_through_store(therapist):
    set_date_override(therapist["id"], MONDAY, unavailable_ranges=[("13:00", "14:00")])
    effective = resolve_for_staff(therapist["id"], MONDAY)
    assert effective.to_dict()["unavailable_ranges"] == [{"start": "13:00", "end": "14:00"}]

    set_date_override(therapist["id"], MONDAY)
    assert load_staff_availability(therapist["id"]).overrides == {}


def test_override_on_rest_day_is_rejected(therapist):
    with pytest.raises(InvalidInput):
        set_date_override(therapist["id"], SUNDAY, unavailable=True)


def test_override_for_unknown_staff(app):
    with pytest.raises(StaffNotFound):
        set_date_override("nobody", MONDAY, unavailable=True)


def test_booked_date_cannot_be_closed(therapist):
    booked = book_appointment(therapist["id"], day=MONDAY, start_time="10:00", patient_name="Sara")
    with pytest.raises(ConflictDetected) as exc:
        set_date_override(therapist["id"], MONDAY, unavailable=True)
    assert exc.value.conflicts == [booked.id]
    assert resolve_for_staff(therapist["id"], MONDAY).enabled


def test_clear_override_restores_default(therapist):
    set_date_override(therapist["id"], MONDAY, unavailable=True)
    assert not resolve_for_staff(therapist["id"], MONDAY).enabled
    clear_date_override(therapist["id"], MONDAY)
    assert resolve_for_staff(therapist["id"], MONDAY).enabled


def test_booked_dates_can_return_to_default(therapist):
    book_appointment(therapist["id"], day=MONDAY, start_time="10:00", patient_name="Sara")
    book_appointment(therapist["id"], day="2030-03-05", start_time="10:00", patient_name="Hala")
    set_date_override(therapist["id"], MONDAY, unavailable_ranges=[("13:00", "14:00")])
    set_date_override(therapist["id"], "2030-03-05", unavailable_ranges=[("15:00", "16:00")])

    clear_date_override(therapist["id"], MONDAY)
    assert copy_override_to_dates(therapist["id"], "2030-03-06", ["2030-03-05"]) == ["2030-03-05"]

    assert load_staff_availability(therapist["id"]).overrides == {}


def test_copy_override_skips_rest_days(therapist):
    set_date_override(therapist["id"], MONDAY, unavailable=True)
    written = copy_override_to_dates(therapist["id"], MONDAY, ["2030-03-05", SUNDAY, "2030-03-06"])
    assert written == ["2030-03-05", "2030-03-06"]
    overrides = load_staff_availability(therapist["id"]).overrides
    assert overrides["2030-03-05"].unavailable
    assert SUNDAY.isoformat() not in overrides
