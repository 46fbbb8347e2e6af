"""Scheduling value types plus the staff and audit ORM models."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from sqlalchemy import Boolean, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

SLOT_MINUTES = 30

APPOINTMENT_STATUSES = ("pending", "confirmed", "cancelled", "completed")


def format_clock(minutes: int) -> str:
    """Render minute-of-day as ``HH:MM`` (wrapping past midnight)."""

    normalized = minutes % (24 * 60)
    return f"{normalized // 60:02d}:{normalized % 60:02d}"


class Base(DeclarativeBase):
    pass


class Staff(Base):
    """Clinician or desk staff member; ``display_name`` is a projection only."""

    __tablename__ = "staff"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    display_name: Mapped[str] = mapped_column(String, nullable=False)
    role: Mapped[str] = mapped_column(String, nullable=False, default="ClinicalTeam")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[str] = mapped_column(String, nullable=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "role": self.role,
            "is_active": bool(self.is_active),
        }


class AuditEvent(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    action: Mapped[str] = mapped_column(String, nullable=False)
    entity: Mapped[str | None] = mapped_column(String, nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String, nullable=True)
    ts: Mapped[str] = mapped_column(String, nullable=False)
    result: Mapped[str] = mapped_column(String, nullable=False, default="ok")
    meta_json_redacted: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "actor_user_id": self.actor_user_id,
            "action": self.action,
            "entity": self.entity,
            "entity_id": self.entity_id,
            "ts": self.ts,
            "result": self.result,
            "meta": json.loads(self.meta_json_redacted or "{}"),
        }


@dataclass(frozen=True)
class Appointment:
    """A booked session for one staff member on one calendar day."""

    id: str
    staff_id: str
    day: date
    start: int
    duration_minutes: int | None = None
    status: str = "pending"
    staff_label: str = ""
    patient_id: str | None = None
    patient_name: str = ""
    is_extra_treatment: bool = False
    program_key: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status != "cancelled"

    @property
    def start_time(self) -> str:
        return format_clock(self.start)

    def span(self, slot_minutes: int = SLOT_MINUTES) -> int:
        """Occupied minutes: never less than one slot."""

        return max(slot_minutes, self.duration_minutes or slot_minutes)

    def end(self, slot_minutes: int = SLOT_MINUTES) -> int:
        return self.start + self.span(slot_minutes)

    def blocks(self, slot_minutes: int = SLOT_MINUTES) -> int:
        return math.ceil(self.span(slot_minutes) / slot_minutes)

    def to_dict(self, slot_minutes: int = SLOT_MINUTES) -> dict[str, Any]:
        return {
            "id": self.id,
            "staff_id": self.staff_id,
            "staff_label": self.staff_label,
            "patient_id": self.patient_id,
            "patient_name": self.patient_name,
            "date": self.day.isoformat(),
            "time": self.start_time,
            "end_time": format_clock(self.end(slot_minutes)),
            "duration_minutes": self.span(slot_minutes),
            "status": self.status,
            "is_extra_treatment": self.is_extra_treatment,
            "program_key": self.program_key,
        }


@dataclass(frozen=True, order=True)
class CandidateSlot:
    """A bookable start time; never persisted."""

    day: date
    start: int

    @property
    def time(self) -> str:
        return format_clock(self.start)

    def to_dict(self, slot_minutes: int = SLOT_MINUTES) -> dict[str, str]:
        return {
            "date": self.day.isoformat(),
            "time": self.time,
            "end_time": format_clock(self.start + slot_minutes),
        }


@dataclass(frozen=True)
class ConflictCandidate:
    """Proposed placement checked against existing bookings."""

    staff_id: str
    day: date
    start: int
    duration_minutes: int | None = None
    id: str | None = None


@dataclass
class ConflictResult:
    conflicts: list[Appointment] = field(default_factory=list)

    @property
    def has_conflict(self) -> bool:
        return bool(self.conflicts)

    def to_dict(self, slot_minutes: int = SLOT_MINUTES) -> dict[str, Any]:
        return {
            "has_conflict": self.has_conflict,
            "conflicts": [appt.to_dict(slot_minutes) for appt in self.conflicts],
        }


@dataclass(frozen=True)
class BillingClassification:
    """Outcome of billing a completed session."""

    appointment_id: str
    status: str
    payment_mode: str | None
    amount_cents: int
    ordinal: int | None
    over_cap: bool
    duplicate: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "appointment_id": self.appointment_id,
            "status": self.status,
            "payment_mode": self.payment_mode,
            "amount_cents": self.amount_cents,
            "ordinal": self.ordinal,
            "over_cap": self.over_cap,
            "duplicate": self.duplicate,
        }
