"""Staff availability: default weekly policy layered with per-date overrides.

Lookup is two-level. A date first consults the staff member's override map;
dates absent from the map fall back to the clinic-wide
:class:`AvailabilityPolicy` (open every day but the rest day, fixed hours).
"""

from __future__ import annotations

import json
import re
import sqlite3
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable, Mapping, Sequence

from flask import current_app, has_app_context

from clinic_ops.models import SLOT_MINUTES, format_clock
from clinic_ops.services.database import db, immediate
from clinic_ops.services.errors import ConflictDetected, InvalidInput, NoAvailability, StaffNotFound

_DATE_RE = re.compile(r"^\s*(\d{4})-(\d{1,2})-(\d{1,2})(?:[T ][0-9:.+\-Z]*)?\s*$")
_CLOCK_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})(?::\d{2})?\s*$")


def normalize_date(value: Any) -> date:
    """Return the local calendar date named by ``value``.

    Only the calendar component is used: ``2024-03-04T23:30:00-05:00`` is
    the 4th, never shifted through UTC.
    """

    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    match = _DATE_RE.match(str(value or ""))
    if not match:
        raise InvalidInput(f"invalid_date:{value!r}")
    year, month, day = (int(part) for part in match.groups())
    try:
        return date(year, month, day)
    except ValueError as exc:
        raise InvalidInput(f"invalid_date:{value!r}") from exc


def date_key(value: Any) -> str:
    return normalize_date(value).isoformat()


def parse_clock(value: Any) -> int:
    """``HH:MM`` (or minutes) to minute-of-day."""

    if isinstance(value, int) and not isinstance(value, bool):
        minutes = value
    else:
        match = _CLOCK_RE.match(str(value or ""))
        if not match:
            raise InvalidInput(f"invalid_time:{value!r}")
        hours, mins = int(match.group(1)), int(match.group(2))
        if hours > 23 or mins > 59:
            raise InvalidInput(f"invalid_time:{value!r}")
        minutes = hours * 60 + mins
    if not 0 <= minutes < 24 * 60:
        raise InvalidInput(f"invalid_time:{value!r}")
    return minutes


@dataclass(frozen=True, order=True)
class TimeRange:
    """Half-open ``[start, end)`` interval in minutes of the day."""

    start: int
    end: int

    @classmethod
    def parse(cls, start: Any, end: Any) -> "TimeRange":
        start_min, end_min = parse_clock(start), parse_clock(end)
        if end_min <= start_min:
            raise InvalidInput(f"invalid_range:{format_clock(start_min)}-{format_clock(end_min)}")
        return cls(start_min, end_min)

    def overlaps(self, start: int, end: int) -> bool:
        return self.start < end and self.end > start

    def contains(self, start: int, end: int) -> bool:
        return self.start <= start and end <= self.end

    def to_dict(self) -> dict[str, str]:
        return {"start": format_clock(self.start), "end": format_clock(self.end)}


@dataclass(frozen=True)
class AvailabilityPolicy:
    day_start: int = 9 * 60
    day_end: int = 18 * 60
    rest_weekday: int = 6
    slot_minutes: int = SLOT_MINUTES
    offer_in_progress_slots: bool = False

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "AvailabilityPolicy":
        return cls(
            day_start=parse_clock(config.get("SCHEDULING_DAY_START", "09:00")),
            day_end=parse_clock(config.get("SCHEDULING_DAY_END", "18:00")),
            rest_weekday=int(config.get("SCHEDULING_REST_WEEKDAY", 6)),
            slot_minutes=int(config.get("SCHEDULING_SLOT_MINUTES", SLOT_MINUTES)),
            offer_in_progress_slots=bool(config.get("SCHEDULING_OFFER_IN_PROGRESS_SLOTS", False)),
        )

    @property
    def default_range(self) -> TimeRange:
        return TimeRange(self.day_start, self.day_end)

    def is_rest_day(self, day: date) -> bool:
        return day.weekday() == self.rest_weekday


def current_policy() -> AvailabilityPolicy:
    if has_app_context():
        return AvailabilityPolicy.from_config(current_app.config)
    return AvailabilityPolicy()


@dataclass(frozen=True)
class DateOverride:
    """Either the whole date is off, or default hours minus some ranges."""

    unavailable: bool = False
    unavailable_ranges: tuple[TimeRange, ...] = ()

    @classmethod
    def off(cls) -> "DateOverride":
        return cls(unavailable=True)

    @classmethod
    def with_exceptions(cls, ranges: Iterable[TimeRange]) -> "DateOverride":
        return cls(unavailable=False, unavailable_ranges=tuple(sorted(ranges)))

    def to_dict(self) -> dict[str, Any]:
        return {
            "unavailable": self.unavailable,
            "unavailable_ranges": [rng.to_dict() for rng in self.unavailable_ranges],
        }


@dataclass
class StaffAvailability:
    staff_id: str
    overrides: dict[str, DateOverride] = field(default_factory=dict)
    policy: AvailabilityPolicy = field(default_factory=AvailabilityPolicy)

    def override_for(self, day: Any) -> DateOverride | None:
        return self.overrides.get(date_key(day))


@dataclass
class EffectiveAvailability:
    enabled: bool
    open_ranges: list[TimeRange] = field(default_factory=list)
    unavailable_ranges: list[TimeRange] = field(default_factory=list)

    def free_ranges(self) -> list[TimeRange]:
        """Open ranges with the unavailable sub-ranges cut out."""

        if not self.enabled:
            return []
        pieces = list(self.open_ranges)
        for blocked in sorted(self.unavailable_ranges):
            next_pieces: list[TimeRange] = []
            for piece in pieces:
                if not piece.overlaps(blocked.start, blocked.end):
                    next_pieces.append(piece)
                    continue
                if piece.start < blocked.start:
                    next_pieces.append(TimeRange(piece.start, blocked.start))
                if blocked.end < piece.end:
                    next_pieces.append(TimeRange(blocked.end, piece.end))
            pieces = next_pieces
        return sorted(pieces)

    def covers(self, start: int, end: int) -> bool:
        return any(rng.contains(start, end) for rng in self.free_ranges())

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "open_ranges": [rng.to_dict() for rng in self.open_ranges],
            "unavailable_ranges": [rng.to_dict() for rng in self.unavailable_ranges],
        }


def resolve_availability(staff: StaffAvailability, day: Any) -> EffectiveAvailability:
    """Effective availability of ``staff`` on ``day``."""

    target = normalize_date(day)
    policy = staff.policy
    if policy.is_rest_day(target):
        return EffectiveAvailability(enabled=False)
    override = staff.override_for(target)
    if override is not None and override.unavailable:
        return EffectiveAvailability(enabled=False)
    unavailable = list(override.unavailable_ranges) if override is not None else []
    return EffectiveAvailability(
        enabled=True,
        open_ranges=[policy.default_range],
        unavailable_ranges=unavailable,
    )


def ensure_available(effective: EffectiveAvailability, start: int, end: int) -> None:
    """Raise :class:`NoAvailability` unless ``[start, end)`` is bookable."""

    if not effective.enabled or not effective.open_ranges:
        raise NoAvailability("no_availability_on_date")
    if not effective.covers(start, end):
        raise NoAvailability("time_outside_availability")


# --- persistence ---------------------------------------------------------


def _row_to_override(row: sqlite3.Row) -> DateOverride:
    if row["unavailable_all"]:
        return DateOverride.off()
    raw = json.loads(row["unavailable_ranges_json"] or "[]")
    return DateOverride.with_exceptions(TimeRange.parse(item["start"], item["end"]) for item in raw)


def _ensure_staff(conn: sqlite3.Connection, staff_id: str) -> None:
    row = conn.execute("SELECT id FROM staff WHERE id=?", (staff_id,)).fetchone()
    if not row:
        raise StaffNotFound(staff_id)


def load_overrides(conn: sqlite3.Connection, staff_id: str) -> dict[str, DateOverride]:
    rows = conn.execute(
        "SELECT date_key, unavailable_all, unavailable_ranges_json FROM staff_date_overrides WHERE staff_id=?",
        (staff_id,),
    ).fetchall()
    return {row["date_key"]: _row_to_override(row) for row in rows}


def load_staff_availability(
    staff_id: str,
    *,
    conn: sqlite3.Connection | None = None,
    policy: AvailabilityPolicy | None = None,
) -> StaffAvailability:
    own = conn is None
    conn = conn or db()
    try:
        _ensure_staff(conn, staff_id)
        overrides = load_overrides(conn, staff_id)
    finally:
        if own:
            conn.close()
    return StaffAvailability(staff_id=staff_id, overrides=overrides, policy=policy or current_policy())


def resolve_for_staff(staff_id: str, day: Any) -> EffectiveAvailability:
    target = normalize_date(day)
    return resolve_availability(load_staff_availability(staff_id), target)


def _active_bookings_on(conn: sqlite3.Connection, staff_id: str, key: str) -> list[sqlite3.Row]:
    return conn.execute(
        """
        SELECT id, start_time FROM appointments
        WHERE staff_id=? AND day=? AND status != 'cancelled'
        ORDER BY start_time
        """,
        (staff_id, key),
    ).fetchall()


def _write_override(conn: sqlite3.Connection, staff_id: str, key: str, override: DateOverride | None) -> None:
    conn.execute("DELETE FROM staff_date_overrides WHERE staff_id=? AND date_key=?", (staff_id, key))
    if override is None:
        return
    conn.execute(
        """
        INSERT INTO staff_date_overrides(staff_id, date_key, unavailable_all, unavailable_ranges_json, updated_at)
        VALUES (?, ?, ?, ?, datetime('now'))
        """,
        (
            staff_id,
            key,
            1 if override.unavailable else 0,
            json.dumps([rng.to_dict() for rng in override.unavailable_ranges]),
        ),
    )


def _guard_bookings(conn: sqlite3.Connection, staff_id: str, key: str) -> None:
    booked = _active_bookings_on(conn, staff_id, key)
    if booked:
        raise ConflictDetected([row["id"] for row in booked], "appointments_on_date")


def set_date_override(
    staff_id: str,
    day: Any,
    *,
    unavailable: bool = False,
    unavailable_ranges: Sequence[tuple[Any, Any]] | None = None,
) -> DateOverride | None:
    """Store an override for one date; returns what is now in effect.

    An available date with no excluded ranges is the default, so its row is
    removed. Marking a booked date unavailable is refused.
    """

    target = normalize_date(day)
    policy = current_policy()
    if policy.is_rest_day(target):
        raise InvalidInput("rest_day_not_configurable")
    ranges = [TimeRange.parse(start, end) for start, end in (unavailable_ranges or [])]
    if unavailable:
        override: DateOverride | None = DateOverride.off()
    elif ranges:
        override = DateOverride.with_exceptions(ranges)
    else:
        override = None

    key = target.isoformat()
    conn = db()
    try:
        with immediate(conn):
            _ensure_staff(conn, staff_id)
            if unavailable:
                _guard_bookings(conn, staff_id, key)
            _write_override(conn, staff_id, key, override)
    finally:
        conn.close()
    current_app.logger.info("availability override for %s on %s: %s", staff_id, key, override)
    return override


def clear_date_override(staff_id: str, day: Any) -> None:
    """Drop the override so the date follows the default policy again.

    Clearing only widens availability, so booked dates may be cleared.
    """

    target = normalize_date(day)
    if current_policy().is_rest_day(target):
        raise InvalidInput("rest_day_not_configurable")
    key = target.isoformat()
    conn = db()
    try:
        with immediate(conn):
            _ensure_staff(conn, staff_id)
            _write_override(conn, staff_id, key, None)
    finally:
        conn.close()
    current_app.logger.info("availability override cleared for %s on %s", staff_id, key)


def copy_override_to_dates(staff_id: str, source_day: Any, target_days: Iterable[Any]) -> list[str]:
    """Apply the source date's unavailable/default state to other dates.

    Rest days are skipped. Returns the date keys that were written.
    """

    policy = current_policy()
    source_key = date_key(source_day)
    targets = [normalize_date(day) for day in target_days]
    written: list[str] = []
    conn = db()
    try:
        with immediate(conn):
            _ensure_staff(conn, staff_id)
            source = load_overrides(conn, staff_id).get(source_key)
            source_off = source is not None and source.unavailable
            for target in targets:
                if policy.is_rest_day(target):
                    continue
                key = target.isoformat()
                if source_off:
                    _guard_bookings(conn, staff_id, key)
                    _write_override(conn, staff_id, key, DateOverride.off())
                else:
                    _write_override(conn, staff_id, key, None)
                written.append(key)
    finally:
        conn.close()
    current_app.logger.info("copied availability of %s from %s to %s", staff_id, source_key, written)
    return written
