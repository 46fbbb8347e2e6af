"""Appointment store: booking, reschedule, transfer and status changes.

Every write that must stay conflict-free runs inside ``BEGIN IMMEDIATE`` and
re-reads the clinician's bookings there before re-running the conflict
check, so a decision made against an earlier snapshot is never committed.
"""

from __future__ import annotations

import sqlite3
import uuid
from datetime import date
from typing import Any, Sequence

from flask import current_app

from clinic_ops.models import APPOINTMENT_STATUSES, Appointment, ConflictCandidate, ConflictResult, format_clock
from clinic_ops.services.audit import write_event
from clinic_ops.services.billing import bill_completed_session
from clinic_ops.services.availability import (
    StaffAvailability,
    current_policy,
    ensure_available,
    load_overrides,
    load_staff_availability,
    normalize_date,
    parse_clock,
    resolve_availability,
)
from clinic_ops.services.conflicts import check_conflict
from clinic_ops.services.database import db, immediate
from clinic_ops.services.errors import (
    AppointmentNotFound,
    ConflictDetected,
    InvalidInput,
    NoAvailability,
    StaffNotFound,
)
from clinic_ops.services.staff import clinical_roles, list_transfer_targets

_TERMINAL = {"cancelled", "completed"}


def _row_to_appointment(row: sqlite3.Row) -> Appointment:
    return Appointment(
        id=row["id"],
        staff_id=row["staff_id"],
        staff_label=row["staff_label"] or "",
        patient_id=row["patient_id"],
        patient_name=row["patient_name"] or "",
        day=date.fromisoformat(row["day"]),
        start=parse_clock(row["start_time"]),
        duration_minutes=row["duration_minutes"],
        status=row["status"] or "pending",
        is_extra_treatment=bool(row["is_extra_treatment"]),
        program_key=row["program_key"],
    )


def _appointment_id(value: Any) -> str:
    appt_id = getattr(value, "id", value)
    appt_id = (str(appt_id) if appt_id is not None else "").strip()
    if not appt_id:
        raise InvalidInput("appointment_id_required")
    return appt_id


def _validate_duration(duration_minutes: Any, slot_minutes: int) -> int | None:
    if duration_minutes in (None, ""):
        return None
    try:
        minutes = int(duration_minutes)
    except (TypeError, ValueError) as exc:
        raise InvalidInput(f"invalid_duration:{duration_minutes!r}") from exc
    if minutes <= 0 or minutes > 24 * 60:
        raise InvalidInput(f"invalid_duration:{duration_minutes!r}")
    return minutes


def duration_for_slots(times: Sequence[Any], slot_minutes: int | None = None) -> int:
    """Duration of a booking made of several adjacent slots."""

    step = slot_minutes or current_policy().slot_minutes
    if not times:
        raise InvalidInput("no_slots_selected")
    starts = sorted({parse_clock(value) for value in times})
    for previous, following in zip(starts, starts[1:]):
        if following - previous != step:
            raise InvalidInput("slots_not_contiguous")
    return len(starts) * step


def first_slot(times: Sequence[Any]) -> str:
    """Earliest of the selected slot times, as ``HH:MM``."""

    if not times:
        raise InvalidInput("no_slots_selected")
    return format_clock(min(parse_clock(value) for value in times))


def _fetch(conn: sqlite3.Connection, appt_id: str) -> Appointment:
    row = conn.execute("SELECT * FROM appointments WHERE id=?", (appt_id,)).fetchone()
    if not row:
        raise AppointmentNotFound(appt_id)
    return _row_to_appointment(row)


def _staff_row(conn: sqlite3.Connection, staff_id: str) -> sqlite3.Row:
    row = conn.execute(
        "SELECT id, display_name, role, is_active FROM staff WHERE id=?",
        (staff_id,),
    ).fetchone()
    if not row:
        raise StaffNotFound(staff_id)
    return row


def _staff_bookings(conn: sqlite3.Connection, staff_id: str, day: date | None = None) -> list[Appointment]:
    sql = "SELECT * FROM appointments WHERE staff_id=?"
    params: list[str] = [staff_id]
    if day is not None:
        sql += " AND day=?"
        params.append(day.isoformat())
    sql += " ORDER BY day ASC, start_time ASC"
    return [_row_to_appointment(row) for row in conn.execute(sql, params).fetchall()]


def _guard_commit(
    conn: sqlite3.Connection,
    staff_id: str,
    day: date,
    start: int,
    duration_minutes: int | None,
    *,
    exclude_id: str | None = None,
) -> None:
    """Availability and conflict check against rows read in this transaction."""

    policy = current_policy()
    staff = StaffAvailability(staff_id=staff_id, overrides=load_overrides(conn, staff_id), policy=policy)
    effective = resolve_availability(staff, day)
    end = start + max(policy.slot_minutes, duration_minutes or policy.slot_minutes)
    ensure_available(effective, start, end)
    result = check_conflict(
        _staff_bookings(conn, staff_id, day),
        ConflictCandidate(staff_id=staff_id, day=day, start=start, duration_minutes=duration_minutes, id=exclude_id),
        slot_minutes=policy.slot_minutes,
    )
    if result.has_conflict:
        raise ConflictDetected(result.conflicts)


def list_for_staff(staff_id: str, *, day: Any = None) -> list[Appointment]:
    """Bookings of one clinician (every date unless ``day`` is given)."""

    target = normalize_date(day) if day is not None else None
    conn = db()
    try:
        _staff_row(conn, staff_id)
        return _staff_bookings(conn, staff_id, target)
    finally:
        conn.close()


def get_appointment(appt_id: Any) -> Appointment:
    conn = db()
    try:
        return _fetch(conn, _appointment_id(appt_id))
    finally:
        conn.close()


def check_candidate(
    staff_id: str,
    day: Any,
    start_time: Any,
    *,
    duration_minutes: Any = None,
    appointment_id: str | None = None,
) -> ConflictResult:
    """Conflict check against the bookings as they are right now."""

    policy = current_policy()
    candidate = ConflictCandidate(
        staff_id=staff_id,
        day=normalize_date(day),
        start=parse_clock(start_time),
        duration_minutes=_validate_duration(duration_minutes, policy.slot_minutes),
        id=appointment_id,
    )
    return check_conflict(
        list_for_staff(staff_id, day=candidate.day),
        candidate,
        slot_minutes=policy.slot_minutes,
    )


def book_appointment(
    staff_id: str,
    *,
    day: Any,
    start_time: Any,
    patient_id: str | None = None,
    patient_name: str = "",
    duration_minutes: Any = None,
    is_extra_treatment: bool = False,
    program_key: str | None = None,
    actor_id: str | None = None,
) -> Appointment:
    policy = current_policy()
    target = normalize_date(day)
    start = parse_clock(start_time)
    duration = _validate_duration(duration_minutes, policy.slot_minutes)
    if not (patient_id or (patient_name or "").strip()):
        raise InvalidInput("patient_required")
    program = program_key or current_app.config.get("BILLING_DEFAULT_PROGRAM")

    appt_id = str(uuid.uuid4())
    conn = db()
    try:
        with immediate(conn):
            staff = _staff_row(conn, staff_id)
            _guard_commit(conn, staff_id, target, start, duration)
            conn.execute(
                """
                INSERT INTO appointments(
                    id, staff_id, staff_label, patient_id, patient_name, day, start_time,
                    duration_minutes, status, is_extra_treatment, program_key, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?, datetime('now'), datetime('now'))
                """,
                (
                    appt_id,
                    staff_id,
                    staff["display_name"],
                    patient_id,
                    (patient_name or "").strip(),
                    target.isoformat(),
                    format_clock(start),
                    duration,
                    1 if is_extra_treatment else 0,
                    program,
                ),
            )
            booked = _fetch(conn, appt_id)
    except ConflictDetected as exc:
        current_app.logger.warning(
            "booking for %s on %s %s refused: %d conflict(s)", staff_id, target, format_clock(start), len(exc.conflicts)
        )
        raise
    finally:
        conn.close()
    current_app.logger.info("booked appointment %s for %s on %s %s", appt_id, staff_id, target, booked.start_time)
    write_event(actor_id, "appointment.book", entity="appointment", entity_id=appt_id, meta=booked.to_dict())
    return booked


def reschedule_appointment(
    appointment: Any,
    new_day: Any,
    new_time: Any,
    *,
    actor_id: str | None = None,
) -> Appointment:
    """Move an appointment to another date/time for the same clinician.

    An unchanged date and time is returned as-is without a conflict check.
    """

    appt_id = _appointment_id(appointment)
    target = normalize_date(new_day)
    start = parse_clock(new_time)

    conn = db()
    try:
        with immediate(conn):
            current = _fetch(conn, appt_id)
            if current.status in _TERMINAL:
                raise InvalidInput(f"appointment_{current.status}")
            if current.day == target and current.start == start:
                return current
            _guard_commit(conn, current.staff_id, target, start, current.duration_minutes, exclude_id=appt_id)
            conn.execute(
                "UPDATE appointments SET day=?, start_time=?, updated_at=datetime('now') WHERE id=?",
                (target.isoformat(), format_clock(start), appt_id),
            )
            moved = _fetch(conn, appt_id)
    except (ConflictDetected, NoAvailability) as exc:
        current_app.logger.warning("reschedule of %s to %s %s refused: %s", appt_id, target, format_clock(start), exc)
        raise
    finally:
        conn.close()
    current_app.logger.info("rescheduled appointment %s to %s %s", appt_id, moved.day, moved.start_time)
    write_event(
        actor_id,
        "appointment.reschedule",
        entity="appointment",
        entity_id=appt_id,
        meta={"from": f"{current.day} {current.start_time}", "to": f"{moved.day} {moved.start_time}"},
    )
    return moved


def transfer_appointment(appointment: Any, new_staff_id: str, *, actor_id: str | None = None) -> Appointment:
    """Hand an appointment to another clinician at the same date and time."""

    appt_id = _appointment_id(appointment)
    new_staff_id = (new_staff_id or "").strip()
    if not new_staff_id:
        raise InvalidInput("target_staff_required")

    conn = db()
    try:
        with immediate(conn):
            current = _fetch(conn, appt_id)
            if current.status in _TERMINAL:
                raise InvalidInput(f"appointment_{current.status}")
            if current.staff_id == new_staff_id:
                raise InvalidInput("target_is_current_assignee")
            target = _staff_row(conn, new_staff_id)
            if not target["is_active"] or target["role"] not in clinical_roles():
                raise InvalidInput("target_not_clinical_staff")
            _guard_commit(
                conn,
                new_staff_id,
                current.day,
                current.start,
                current.duration_minutes,
                exclude_id=appt_id,
            )
            conn.execute(
                "UPDATE appointments SET staff_id=?, staff_label=?, updated_at=datetime('now') WHERE id=?",
                (new_staff_id, target["display_name"], appt_id),
            )
            moved = _fetch(conn, appt_id)
    except (ConflictDetected, NoAvailability) as exc:
        current_app.logger.warning("transfer of %s to %s refused: %s", appt_id, new_staff_id, exc)
        raise
    finally:
        conn.close()
    current_app.logger.info("transferred appointment %s from %s to %s", appt_id, current.staff_id, new_staff_id)
    write_event(
        actor_id,
        "appointment.transfer",
        entity="appointment",
        entity_id=appt_id,
        meta={"from_staff": current.staff_id, "to_staff": new_staff_id},
    )
    return moved


def update_status(appointment: Any, status: str, *, actor_id: str | None = None) -> Appointment:
    """Move an appointment along its lifecycle; terminal states are final."""

    appt_id = _appointment_id(appointment)
    if status not in APPOINTMENT_STATUSES:
        raise InvalidInput("invalid_status")
    conn = db()
    try:
        with immediate(conn):
            current = _fetch(conn, appt_id)
            if current.status == status:
                return current
            if current.status in _TERMINAL:
                raise InvalidInput(f"appointment_{current.status}")
            conn.execute(
                "UPDATE appointments SET status=?, updated_at=datetime('now') WHERE id=?",
                (status, appt_id),
            )
            updated = _fetch(conn, appt_id)
    finally:
        conn.close()
    current_app.logger.info("appointment %s is now %s", appt_id, status)
    write_event(actor_id, f"appointment.{status}", entity="appointment", entity_id=appt_id)
    return updated


def confirm_appointment(appointment: Any, *, actor_id: str | None = None) -> Appointment:
    return update_status(appointment, "confirmed", actor_id=actor_id)


def cancel_appointment(appointment: Any, *, actor_id: str | None = None) -> Appointment:
    """Cancel without deleting; the row stays for audit but occupies nothing."""

    return update_status(appointment, "cancelled", actor_id=actor_id)


def complete_appointment(appointment: Any, *, actor_id: str | None = None):
    """Mark the session completed and bill it.

    Safe to retry: an already completed appointment is billed again through
    the idempotent billing path, which skips duplicates.
    """

    completed = update_status(appointment, "completed", actor_id=actor_id)
    classification = bill_completed_session(completed, actor_id=actor_id)
    return completed, classification


def transfer_candidates(appointment: Any) -> list[dict]:
    """Active clinical staff the appointment could be handed to."""

    current = appointment if isinstance(appointment, Appointment) else get_appointment(appointment)
    return list_transfer_targets(current.staff_id)


class AppointmentStore:
    """Store collaborator handed to the scheduling workflows."""

    def staff_availability(self, staff_id: str) -> StaffAvailability:
        return load_staff_availability(staff_id)

    def appointments_for(self, staff_id: str) -> list[Appointment]:
        return list_for_staff(staff_id)

    def get(self, appt_id: str) -> Appointment:
        return get_appointment(appt_id)

    def reschedule(self, appointment: Appointment, new_day: date, new_time: str) -> Appointment:
        return reschedule_appointment(appointment, new_day, new_time)

    def transfer(self, appointment: Appointment, new_staff_id: str) -> Appointment:
        return transfer_appointment(appointment, new_staff_id)

    def transfer_targets(self, appointment: Appointment) -> list[dict]:
        return transfer_candidates(appointment)

