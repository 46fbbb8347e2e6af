"""Staff records and the clinical transfer pool."""

from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from flask import current_app
from sqlalchemy import select, text

from clinic_ops.models import Staff
from clinic_ops.services.database import session_scope
from clinic_ops.services.errors import InvalidInput, StaffNotFound

DEFAULT_CLINICAL_ROLES = ("Physiotherapist", "StrengthAndConditioning", "ClinicalTeam")


def clinical_roles() -> tuple[str, ...]:
    roles = current_app.config.get("CLINICAL_ROLES") or DEFAULT_CLINICAL_ROLES
    return tuple(roles)


def add_staff(display_name: str, *, role: str = "ClinicalTeam", staff_id: str | None = None) -> dict:
    name = (display_name or "").strip()
    if not name:
        raise InvalidInput("display_name_required")
    with session_scope() as session:
        member = Staff(
            id=staff_id or str(uuid4()),
            display_name=name,
            role=(role or "ClinicalTeam").strip(),
            is_active=True,
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        session.add(member)
        session.flush()
        return member.to_dict()


def get_staff(staff_id: str) -> dict:
    with session_scope() as session:
        member = session.get(Staff, staff_id)
        if member is None:
            raise StaffNotFound(staff_id)
        return member.to_dict()


def rename_staff(staff_id: str, display_name: str) -> dict:
    """Change the display name; bookings follow ``staff_id`` so none are orphaned."""

    name = (display_name or "").strip()
    if not name:
        raise InvalidInput("display_name_required")
    with session_scope() as session:
        member = session.get(Staff, staff_id)
        if member is None:
            raise StaffNotFound(staff_id)
        member.display_name = name
        session.execute(
            text("UPDATE appointments SET staff_label=:label WHERE staff_id=:staff_id"),
            {"label": name, "staff_id": staff_id},
        )
        session.flush()
        return member.to_dict()


def list_transfer_targets(exclude_staff_id: str | None) -> list[dict]:
    """Active clinicians who may take over a session, minus the current assignee."""

    with session_scope() as session:
        rows = (
            session.execute(
                select(Staff)
                .where(Staff.is_active.is_(True))
                .where(Staff.role.in_(clinical_roles()))
                .order_by(Staff.display_name.asc())
            )
            .scalars()
            .all()
        )
        return [member.to_dict() for member in rows if member.id != exclude_staff_id]
