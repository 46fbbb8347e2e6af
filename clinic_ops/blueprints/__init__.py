"""Blueprint registration and the JSON error mapping shared by routes."""

from __future__ import annotations

from flask import Flask, current_app, jsonify, request
from werkzeug.exceptions import InternalServerError

from clinic_ops.services.errors import (
    AppointmentNotFound,
    ConflictDetected,
    InvalidInput,
    NoAvailability,
    SchedulingError,
    StaffNotFound,
    StoreUnavailable,
    record_exception,
)


def _conflict_payload(conflicts) -> list:
    slot = int(current_app.config.get("SCHEDULING_SLOT_MINUTES", 30))
    return [item.to_dict(slot) if hasattr(item, "to_dict") else {"id": item} for item in conflicts]


def error_response(exc: SchedulingError):
    body = {"success": False, "error": exc.code, "detail": str(exc)}
    if isinstance(exc, (AppointmentNotFound, StaffNotFound)):
        return jsonify(body), 404
    if isinstance(exc, InvalidInput):
        return jsonify(body), 400
    if isinstance(exc, NoAvailability):
        body["reason"] = exc.reason
        return jsonify(body), 422
    if isinstance(exc, ConflictDetected):
        body["conflicts"] = _conflict_payload(exc.conflicts)
        return jsonify(body), 409
    if isinstance(exc, StoreUnavailable):
        body["retryable"] = True
        return jsonify(body), 503
    return jsonify(body), 400


def internal_error(exc: InternalServerError):
    record_exception(f"{request.method} {request.path}", exc.original_exception or exc)
    return jsonify({"success": False, "error": "internal_error"}), 500


def register_blueprints(app: Flask) -> None:
    from .appointments.routes import bp as appointments_bp
    from .availability.routes import bp as availability_bp
    from .billing.routes import bp as billing_bp

    app.register_blueprint(availability_bp)
    app.register_blueprint(appointments_bp)
    app.register_blueprint(billing_bp)
    app.register_error_handler(SchedulingError, error_response)
    app.register_error_handler(InternalServerError, internal_error)
