"""Bookable slot generation for one clinician and one date."""

from __future__ import annotations

from datetime import date, datetime, time
from typing import Any, Iterable

from clinic_ops.models import Appointment, CandidateSlot
from clinic_ops.services.availability import StaffAvailability, normalize_date, resolve_availability
from clinic_ops.services.clock import SystemClock, current_clock


def _as_datetime(day: date, minutes: int) -> datetime:
    return datetime.combine(day, time(minutes // 60, minutes % 60))


def booked_intervals(
    appointments: Iterable[Appointment],
    day: date,
    *,
    slot_minutes: int,
    exclude_id: str | None = None,
) -> list[tuple[int, int]]:
    """Occupied ``[start, end)`` intervals on ``day``, rounded up to whole slots."""

    intervals = []
    for appt in appointments:
        if not appt.is_active or appt.day != day:
            continue
        if exclude_id and appt.id == exclude_id:
            continue
        intervals.append((appt.start, appt.start + appt.blocks(slot_minutes) * slot_minutes))
    return sorted(intervals)


def latest_appointment_before(
    appointments: Iterable[Appointment],
    day: date,
    *,
    slot_minutes: int,
    exclude_id: str | None = None,
) -> Appointment | None:
    """Chronologically last active appointment on or before ``day``."""

    latest: Appointment | None = None
    for appt in appointments:
        if not appt.is_active or appt.day > day:
            continue
        if exclude_id and appt.id == exclude_id:
            continue
        if latest is None or (appt.day, appt.end(slot_minutes)) > (latest.day, latest.end(slot_minutes)):
            latest = appt
    return latest


def generate_slots(
    staff: StaffAvailability,
    day: Any,
    appointments: Iterable[Appointment],
    *,
    exclude_id: str | None = None,
    clock: SystemClock | None = None,
) -> list[CandidateSlot]:
    """Start times that can be offered for a new booking on ``day``.

    ``appointments`` must hold the clinician's bookings on every date, not
    just ``day``: a booking is never placed before the end of the latest
    existing appointment, and that appointment may sit on an earlier date.
    ``exclude_id`` names the appointment being moved, which occupies nothing.
    """

    target = normalize_date(day)
    policy = staff.policy
    step = policy.slot_minutes
    effective = resolve_availability(staff, target)
    if not effective.enabled or not effective.open_ranges:
        return []

    appointments = [appt for appt in appointments if appt.staff_id == staff.staff_id]
    booked = booked_intervals(appointments, target, slot_minutes=step, exclude_id=exclude_id)

    cutoff: int | None = None
    latest = latest_appointment_before(appointments, target, slot_minutes=step, exclude_id=exclude_id)
    if latest is not None and latest.day == target:
        cutoff = latest.end(step)

    now = (clock or current_clock()).now()
    is_today = now.date() == target

    found: set[CandidateSlot] = set()
    for open_range in effective.open_ranges:
        start = open_range.start
        while start + step <= open_range.end:
            end = start + step
            candidate = start
            start += step
            if any(blocked.overlaps(candidate, end) for blocked in effective.unavailable_ranges):
                continue
            if any(b_start < end and b_end > candidate for b_start, b_end in booked):
                continue
            if cutoff is not None and candidate < cutoff:
                continue
            if is_today:
                if _as_datetime(target, end) <= now:
                    continue
                if not policy.offer_in_progress_slots and _as_datetime(target, candidate) < now:
                    continue
            found.add(CandidateSlot(target, candidate))
    return sorted(found)
