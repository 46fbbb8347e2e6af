"""Booking, conflict checks, reschedule and transfer endpoints."""

from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request
from werkzeug.exceptions import BadRequest

from clinic_ops.extensions import csrf, limiter
from clinic_ops.services.appointments import (
    book_appointment,
    cancel_appointment,
    check_candidate,
    complete_appointment,
    confirm_appointment,
    duration_for_slots,
    first_slot,
    get_appointment,
    reschedule_appointment,
    transfer_appointment,
    transfer_candidates,
)
from clinic_ops.services.errors import SchedulingError, record_exception
from clinic_ops.services.security import current_actor, require_permission

bp = Blueprint("appointments", __name__, url_prefix="/appointments")
csrf.exempt(bp)


def _slot_minutes() -> int:
    return int(current_app.config.get("SCHEDULING_SLOT_MINUTES", 30))


def _payload() -> dict:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise BadRequest("Expected a JSON object body")
    return payload


def _require(payload: dict, *fields: str) -> None:
    missing = [name for name in fields if not str(payload.get(name) or "").strip()]
    if missing:
        raise BadRequest(f"Missing required fields: {', '.join(missing)}")


def _ok(appointment, status: int = 200):
    return jsonify({"success": True, "appointment": appointment.to_dict(_slot_minutes())}), status


@bp.route("", methods=["POST"])
@limiter.limit("60 per minute")
@require_permission("appointments:edit")
def book():
    payload = _payload()
    _require(payload, "staff_id", "date")
    times = payload.get("slots") or []
    if not isinstance(times, list):
        raise BadRequest("slots must be a list of times")
    duration = payload.get("duration_minutes")
    if times:
        duration = duration_for_slots(times, _slot_minutes())
        start_time = first_slot(times)
    else:
        _require(payload, "time")
        start_time = payload["time"]
    try:
        appointment = book_appointment(
            payload["staff_id"],
            day=payload["date"],
            start_time=start_time,
            patient_id=payload.get("patient_id"),
            patient_name=payload.get("patient_name") or "",
            duration_minutes=duration,
            is_extra_treatment=bool(payload.get("is_extra_treatment")),
            program_key=payload.get("program_key"),
            actor_id=current_actor(),
        )
    except SchedulingError:
        raise
    except Exception as exc:  # pragma: no cover - defensive logging
        record_exception("appointments.book", exc)
        return jsonify({"success": False, "error": "Internal server error"}), 500
    return _ok(appointment, 201)


@bp.route("/<appt_id>", methods=["GET"])
@require_permission("appointments:view")
def show(appt_id: str):
    return _ok(get_appointment(appt_id))


@bp.route("/check-conflict", methods=["POST"])
@require_permission("appointments:view")
def check_conflict_view():
    payload = _payload()
    _require(payload, "staff_id", "date", "time")
    result = check_candidate(
        payload["staff_id"],
        payload["date"],
        payload["time"],
        duration_minutes=payload.get("duration_minutes"),
        appointment_id=payload.get("appointment_id"),
    )
    return jsonify({"success": True, **result.to_dict(_slot_minutes())})


@bp.route("/<appt_id>/reschedule", methods=["POST"])
@limiter.limit("60 per minute")
@require_permission("appointments:edit")
def reschedule(appt_id: str):
    payload = _payload()
    _require(payload, "date", "time")
    try:
        moved = reschedule_appointment(appt_id, payload["date"], payload["time"], actor_id=current_actor())
    except SchedulingError:
        raise
    except Exception as exc:  # pragma: no cover - defensive logging
        record_exception("appointments.reschedule", exc)
        return jsonify({"success": False, "error": "Internal server error"}), 500
    return _ok(moved)


@bp.route("/<appt_id>/transfer-candidates", methods=["GET"])
@require_permission("appointments:transfer")
def transfer_candidates_view(appt_id: str):
    return jsonify({"success": True, "staff": transfer_candidates(appt_id)})


@bp.route("/<appt_id>/transfer", methods=["POST"])
@limiter.limit("60 per minute")
@require_permission("appointments:transfer")
def transfer(appt_id: str):
    payload = _payload()
    _require(payload, "staff_id")
    try:
        moved = transfer_appointment(appt_id, payload["staff_id"], actor_id=current_actor())
    except SchedulingError:
        raise
    except Exception as exc:  # pragma: no cover - defensive logging
        record_exception("appointments.transfer", exc)
        return jsonify({"success": False, "error": "Internal server error"}), 500
    return _ok(moved)


@bp.route("/<appt_id>/confirm", methods=["POST"])
@require_permission("appointments:edit")
def confirm(appt_id: str):
    return _ok(confirm_appointment(appt_id, actor_id=current_actor()))


@bp.route("/<appt_id>/cancel", methods=["POST"])
@require_permission("appointments:edit")
def cancel(appt_id: str):
    return _ok(cancel_appointment(appt_id, actor_id=current_actor()))


@bp.route("/<appt_id>/complete", methods=["POST"])
@require_permission("appointments:complete")
def complete(appt_id: str):
    completed, billing = complete_appointment(appt_id, actor_id=current_actor())
    return jsonify(
        {
            "success": True,
            "appointment": completed.to_dict(_slot_minutes()),
            "billing": billing.to_dict(),
        }
    )
