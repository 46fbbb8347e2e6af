"""Clinic scheduling and billing service exposing the Flask application factory."""

from __future__ import annotations

import os
import sys
from pathlib import Path

from flask import Flask, jsonify
from flask_wtf.csrf import CSRFError

from .blueprints import register_blueprints
from .cli import register_cli
from .extensions import init_extensions
from .services.bootstrap import ensure_base_tables
from .services.clock import SystemClock
from .services.payments import cents_guard, parse_money_to_cents
from .services.security import allow_all
from .services.staff import DEFAULT_CLINICAL_ROLES

APP_HOST = "127.0.0.1"
APP_PORT = 8080


def _data_root(base_dir: Path, override: Path | None = None) -> Path:
    root = override if override else base_dir / "data"
    root.mkdir(parents=True, exist_ok=True)
    for sub in ("logs", "backups"):
        (root / sub).mkdir(parents=True, exist_ok=True)
    return root


def _default_user_data_root() -> Path:
    """Writable per-user data root when running from a packaged build."""
    if os.name == "nt":
        base = os.getenv("LOCALAPPDATA")
        if base:
            return Path(base) / "ClinicOps"
        return Path.home() / "AppData" / "Local" / "ClinicOps"
    base = os.getenv("XDG_DATA_HOME")
    if base:
        return Path(base) / "ClinicOps"
    return Path.home() / ".local" / "share" / "ClinicOps"


def _standard_rate_cents() -> int:
    # BILLING_STANDARD_RATE ("500.00") wins over the raw cents value.
    text_rate = os.getenv("BILLING_STANDARD_RATE")
    if text_rate:
        cents = parse_money_to_cents(text_rate)
    else:
        cents = int(os.getenv("BILLING_STANDARD_RATE_CENTS", "50000"))
    return cents_guard(cents, "Standard rate")


def create_app() -> Flask:
    base_dir = Path(__file__).resolve().parent.parent
    db_override = os.getenv("CLINIC_DB_PATH")
    if db_override:
        override_root = Path(db_override).parent
    elif getattr(sys, "frozen", False):
        override_root = _default_user_data_root()
    else:
        override_root = None
    data_root = _data_root(base_dir, override_root)
    db_path = Path(db_override) if db_override else data_root / "app.db"

    app = Flask(__name__)

    secret_key = os.getenv("CLINIC_SECRET_KEY")
    if not secret_key:
        secret_key = os.urandom(32)

    clinical_roles = tuple(
        role.strip()
        for role in os.getenv("CLINICAL_ROLES", ",".join(DEFAULT_CLINICAL_ROLES)).split(",")
        if role.strip()
    )
    if not clinical_roles:
        clinical_roles = DEFAULT_CLINICAL_ROLES

    app.config.update(
        SECRET_KEY=secret_key,
        SQLALCHEMY_DATABASE_URI=f"sqlite:///{db_path}",
        SQLALCHEMY_ENGINE_OPTIONS={"connect_args": {"check_same_thread": False, "timeout": 5}},
        RATELIMIT_STORAGE_URI=os.getenv("RATELIMIT_STORAGE_URI", "memory://"),
        RATELIMIT_ENABLED=os.getenv("RATELIMIT_ENABLED", "1") != "0",
        DATA_ROOT=str(data_root),
        CLINIC_DB=str(db_path),
        SCHEDULING_SLOT_MINUTES=int(os.getenv("SCHEDULING_SLOT_MINUTES", "30")),
        SCHEDULING_DAY_START=os.getenv("SCHEDULING_DAY_START", "09:00"),
        SCHEDULING_DAY_END=os.getenv("SCHEDULING_DAY_END", "18:00"),
        SCHEDULING_REST_WEEKDAY=int(os.getenv("SCHEDULING_REST_WEEKDAY", "6")),
        SCHEDULING_OFFER_IN_PROGRESS_SLOTS=os.getenv("SCHEDULING_OFFER_IN_PROGRESS_SLOTS", "0") == "1",
        SCHEDULING_DEBOUNCE_SECONDS=float(os.getenv("SCHEDULING_DEBOUNCE_SECONDS", "0.5")),
        SCHEDULING_CLOCK=SystemClock(),
        BILLING_CAPACITY_THRESHOLD=int(os.getenv("BILLING_CAPACITY_THRESHOLD", "500")),
        BILLING_STANDARD_RATE_CENTS=_standard_rate_cents(),
        BILLING_DEFAULT_PROGRAM=os.getenv("BILLING_DEFAULT_PROGRAM", "DYES"),
        CLINICAL_ROLES=clinical_roles,
        CAPABILITY_CHECK=allow_all,
    )

    init_extensions(app)
    ensure_base_tables(Path(app.config["CLINIC_DB"]))
    register_blueprints(app)
    register_cli(app)

    @app.errorhandler(CSRFError)
    def handle_csrf_error(e):
        app.logger.warning("CSRF validation failed: %s", e)
        return jsonify({"success": False, "error": "csrf_failed", "detail": str(e)}), 400

    @app.errorhandler(400)
    def handle_bad_request(e):
        return jsonify({"success": False, "error": "invalid_input", "detail": getattr(e, "description", str(e))}), 400

    return app


__all__ = ["create_app", "APP_HOST", "APP_PORT"]
