"""Append-only audit trail of scheduling and billing events."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Mapping

from sqlalchemy import select

from clinic_ops.models import AuditEvent
from clinic_ops.services.database import session_scope

# Patient-identifying free text never reaches the audit table.
REDACTED_KEYS = frozenset({"patient_name", "notes", "note", "diagnosis", "treatment"})


def redact(meta: Mapping[str, Any] | None) -> dict[str, Any]:
    return {
        key: "[redacted]" if key.lower() in REDACTED_KEYS else value
        for key, value in (meta or {}).items()
    }


def write_event(
    actor_user_id: str | None,
    action: str,
    *,
    entity: str | None = None,
    entity_id: str | None = None,
    result: str = "ok",
    meta: Mapping[str, Any] | None = None,
) -> None:
    event = AuditEvent(
        actor_user_id=actor_user_id,
        action=action,
        entity=entity,
        entity_id=entity_id,
        ts=datetime.now(timezone.utc).isoformat(),
        result=result,
        meta_json_redacted=json.dumps(redact(meta), ensure_ascii=False, default=str),
    )
    with session_scope() as session:
        session.add(event)


def events_for(entity_id: str) -> list[dict[str, Any]]:
    """Audit trail of one appointment or billing record, oldest first."""

    with session_scope() as session:
        rows = session.execute(
            select(AuditEvent).where(AuditEvent.entity_id == entity_id).order_by(AuditEvent.id.asc())
        ).scalars()
        return [row.to_dict() for row in rows]
