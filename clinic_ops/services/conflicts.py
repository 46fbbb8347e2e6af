"""Authoritative overlap check run before every scheduling commit."""

from __future__ import annotations

from typing import Iterable

from clinic_ops.models import SLOT_MINUTES, Appointment, ConflictCandidate, ConflictResult


def check_conflict(
    appointments: Iterable[Appointment],
    candidate: ConflictCandidate,
    *,
    slot_minutes: int = SLOT_MINUTES,
) -> ConflictResult:
    """Every active booking of the same staff member that overlaps ``candidate``.

    The candidate's own row (same id) never conflicts with itself.
    """

    start = candidate.start
    end = start + max(slot_minutes, candidate.duration_minutes or slot_minutes)
    conflicts = []
    for appt in appointments:
        if appt.staff_id != candidate.staff_id or appt.day != candidate.day:
            continue
        if not appt.is_active:
            continue
        if candidate.id is not None and appt.id == candidate.id:
            continue
        if appt.start < end and appt.end(slot_minutes) > start:
            conflicts.append(appt)
    conflicts.sort(key=lambda appt: appt.start)
    return ConflictResult(conflicts=conflicts)
