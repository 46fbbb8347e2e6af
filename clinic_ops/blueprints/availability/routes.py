"""Availability, overrides and slot listing for one staff member."""

from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request
from werkzeug.exceptions import BadRequest

from clinic_ops.extensions import csrf, limiter
from clinic_ops.services.appointments import list_for_staff
from clinic_ops.services.availability import (
    clear_date_override,
    copy_override_to_dates,
    load_staff_availability,
    normalize_date,
    resolve_availability,
    set_date_override,
)
from clinic_ops.services.errors import SchedulingError, record_exception
from clinic_ops.services.security import require_permission
from clinic_ops.services.slots import generate_slots

bp = Blueprint("availability", __name__, url_prefix="/staff")
csrf.exempt(bp)


def _required_date() -> str:
    value = (request.args.get("date") or "").strip()
    if not value:
        raise BadRequest("Missing required query parameter: date")
    return value


@bp.route("/<staff_id>/availability", methods=["GET"])
@require_permission("appointments:view")
def availability(staff_id: str):
    day = normalize_date(_required_date())
    staff = load_staff_availability(staff_id)
    effective = resolve_availability(staff, day)
    return jsonify({"success": True, "staff_id": staff_id, "date": day.isoformat(), **effective.to_dict()})


@bp.route("/<staff_id>/slots", methods=["GET"])
@require_permission("appointments:view")
def slots(staff_id: str):
    day = normalize_date(_required_date())
    exclude = (request.args.get("exclude") or "").strip() or None
    try:
        staff = load_staff_availability(staff_id)
        offered = generate_slots(staff, day, list_for_staff(staff_id), exclude_id=exclude)
    except SchedulingError:
        raise
    except Exception as exc:  # pragma: no cover - defensive logging
        record_exception("availability.slots", exc)
        return jsonify({"success": False, "error": "Internal server error"}), 500
    step = staff.policy.slot_minutes
    return jsonify(
        {
            "success": True,
            "staff_id": staff_id,
            "date": day.isoformat(),
            "slots": [slot.to_dict(step) for slot in offered],
            "no_slots": not offered,
        }
    )


@bp.route("/<staff_id>/overrides/<day>", methods=["PUT"])
@limiter.limit("60 per minute")
@require_permission("availability:edit")
def put_override(staff_id: str, day: str):
    payload = request.get_json(silent=True) or {}
    ranges = [(item.get("start"), item.get("end")) for item in payload.get("unavailable_ranges") or []]
    override = set_date_override(
        staff_id,
        day,
        unavailable=bool(payload.get("unavailable")),
        unavailable_ranges=ranges,
    )
    return jsonify(
        {
            "success": True,
            "date": normalize_date(day).isoformat(),
            "override": override.to_dict() if override else None,
        }
    )


@bp.route("/<staff_id>/overrides/<day>", methods=["DELETE"])
@limiter.limit("60 per minute")
@require_permission("availability:edit")
def delete_override(staff_id: str, day: str):
    clear_date_override(staff_id, day)
    return jsonify({"success": True, "date": normalize_date(day).isoformat(), "override": None})


@bp.route("/<staff_id>/overrides/<day>/copy", methods=["POST"])
@limiter.limit("30 per minute")
@require_permission("availability:edit")
def copy_override(staff_id: str, day: str):
    payload = request.get_json(silent=True) or {}
    targets = payload.get("targets") or []
    if not isinstance(targets, list) or not targets:
        raise BadRequest("Missing required field: targets")
    written = copy_override_to_dates(staff_id, day, targets)
    current_app.logger.debug("copy override wrote %d date(s)", len(written))
    return jsonify({"success": True, "written": written})
