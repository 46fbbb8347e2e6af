"""Capability gate for scheduling routes.

Authentication and role management live outside this service; the app is
handed a ``CAPABILITY_CHECK`` callable that answers whether the caller may
use a capability. Without one every capability is granted.
"""

from __future__ import annotations

from functools import wraps
from typing import Any, Callable, Mapping

from flask import current_app, has_request_context, jsonify, request

from clinic_ops.services.audit import write_event

CapabilityCheck = Callable[[str, Mapping[str, Any]], bool]


def allow_all(capability: str, view_args: Mapping[str, Any]) -> bool:
    return True


def current_actor() -> str | None:
    if not has_request_context():
        return None
    return (request.headers.get("X-Actor-Id") or "").strip() or None


def require_permission(capability: str):
    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            check: CapabilityCheck = current_app.config.get("CAPABILITY_CHECK") or allow_all
            actor = current_actor()
            if not check(capability, request.view_args or {}):
                current_app.logger.warning("capability %s denied for %s on %s", capability, actor, request.path)
                write_event(actor, capability, result="denied", meta={"path": request.path})
                return jsonify({"success": False, "error": "forbidden"}), 403
            return view(*args, **kwargs)

        return wrapped

    return decorator
