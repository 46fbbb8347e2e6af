"""Scheduling error taxonomy and lightweight error logging for diagnostics."""

from __future__ import annotations

from datetime import datetime, UTC
from pathlib import Path
import traceback
from typing import Any, Sequence

from flask import current_app


class SchedulingError(Exception):
    """Base exception for scheduling and billing operations."""

    code = "scheduling_error"


class InvalidInput(SchedulingError):
    """Malformed date/time/duration or an unknown reference."""

    code = "invalid_input"


class AppointmentNotFound(InvalidInput):
    """Raised when an appointment cannot be located."""

    code = "appointment_not_found"


class StaffNotFound(InvalidInput):
    """Raised when a staff record cannot be located."""

    code = "staff_not_found"


class NoAvailability(SchedulingError):
    """The staff member is not available at the requested date or time."""

    code = "no_availability"

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class ConflictDetected(SchedulingError):
    """The candidate overlaps one or more existing bookings."""

    code = "conflict"

    def __init__(self, conflicts: Sequence[Any], message: str = "conflict") -> None:
        super().__init__(message)
        self.conflicts = list(conflicts)


class StoreUnavailable(SchedulingError):
    """Retryable infrastructure failure; nothing was written."""

    code = "store_unavailable"


def record_exception(context: str, exc: BaseException) -> None:
    """Append exception details to data/logs/app_errors.log for offline inspection."""

    try:
        root = Path(current_app.config["DATA_ROOT"]) / "logs"
        root.mkdir(parents=True, exist_ok=True)
        log_path = root / "app_errors.log"
        with log_path.open("a", encoding="utf-8") as handle:
            handle.write(f"[{datetime.now(UTC).isoformat()}Z] {context}\n")
            handle.write("".join(traceback.format_exception(exc)))
            handle.write("\n")
    except Exception:
        # Never let logging failures break the request cycle.
        current_app.logger.exception("failed to record exception for %s", context)
