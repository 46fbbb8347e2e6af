"""Session counter and billing record lookups."""

from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request
from werkzeug.exceptions import BadRequest

from clinic_ops.extensions import csrf, limiter
from clinic_ops.services.billing import classify_session_for_billing, get_billing, list_billing
from clinic_ops.services.clock import current_clock
from clinic_ops.services.security import current_actor, require_permission
from clinic_ops.services.session_counter import capacity_threshold, current_session_count

bp = Blueprint("billing", __name__, url_prefix="/billing")
csrf.exempt(bp)


@bp.route("", methods=["GET"])
@require_permission("billing:view")
def index():
    status = (request.args.get("status") or "").strip() or None
    return jsonify({"success": True, "billing": list_billing(status)})


@bp.route("/counters/<program_key>/<int:year>", methods=["GET"])
@require_permission("billing:view")
def counter(program_key: str, year: int):
    count = current_session_count(program_key, year)
    threshold = capacity_threshold()
    return jsonify(
        {
            "success": True,
            "program_key": program_key,
            "year": year,
            "count": count,
            "capacity_threshold": threshold,
            "remaining_free": max(threshold - count, 0),
        }
    )


@bp.route("/appointments/<appointment_id>", methods=["GET"])
@require_permission("billing:view")
def for_appointment(appointment_id: str):
    record = get_billing(appointment_id)
    if record is None:
        return jsonify({"success": False, "error": "not_found"}), 404
    return jsonify({"success": True, "billing": record})


@bp.route("/sessions", methods=["POST"])
@limiter.limit("120 per minute")
@require_permission("billing:create")
def classify_session():
    payload = request.get_json(silent=True) or {}
    appointment_id = (payload.get("appointment_id") or "").strip()
    if not appointment_id:
        raise BadRequest("Missing required field: appointment_id")
    program_key = payload.get("program_key") or current_app.config.get("BILLING_DEFAULT_PROGRAM", "")
    result = classify_session_for_billing(
        program_key,
        payload.get("year") or current_clock().today().year,
        appointment_id,
        bool(payload.get("is_extra_treatment")),
        actor_id=current_actor(),
    )
    return jsonify({"success": True, "billing": result.to_dict()}), (200 if result.duplicate else 201)
