"""Billing for completed sessions under the yearly capacity program.

Regular sessions claim an ordinal from the program's yearly counter and are
free up to the capacity threshold, auto-paid at the standard rate beyond it.
Extra treatments never touch the counter and are always left pending for
the patient to pay. Creation is idempotent per appointment: the existence
check, the counter increment and the insert share one ``BEGIN IMMEDIATE``
transaction, with a UNIQUE constraint on ``appointment_id`` behind it.
"""

from __future__ import annotations

import sqlite3
from datetime import date
from typing import Any

from flask import current_app

from clinic_ops.models import Appointment, BillingClassification
from clinic_ops.services.audit import write_event
from clinic_ops.services.clock import current_clock
from clinic_ops.services.database import db, immediate
from clinic_ops.services.errors import InvalidInput
from clinic_ops.services.payments import cents_guard, money
from clinic_ops.services.session_counter import capacity_threshold, increment_and_classify

STATUS_FREE = "completed"
STATUS_AUTO_PAID = "auto_paid"
STATUS_PENDING = "pending"

DEFAULT_STANDARD_RATE_CENTS = 500 * 100


class _AlreadyBilled(Exception):
    pass


def standard_rate_cents() -> int:
    rate = current_app.config.get("BILLING_STANDARD_RATE_CENTS", DEFAULT_STANDARD_RATE_CENTS)
    return cents_guard(int(rate), "Standard rate")


def _from_row(row: sqlite3.Row, *, duplicate: bool) -> BillingClassification:
    return BillingClassification(
        appointment_id=row["appointment_id"],
        status=row["status"],
        payment_mode=row["payment_mode"],
        amount_cents=int(row["amount_cents"] or 0),
        ordinal=row["session_ordinal"],
        over_cap=row["status"] == STATUS_AUTO_PAID,
        duplicate=duplicate,
    )


def _existing(conn: sqlite3.Connection, appointment_id: str) -> sqlite3.Row | None:
    return conn.execute("SELECT * FROM billing WHERE appointment_id=?", (appointment_id,)).fetchone()


def classify_session_for_billing(
    program_key: str,
    year: int,
    appointment_id: str,
    is_extra_treatment: bool,
    *,
    patient_id: str | None = None,
    staff_id: str | None = None,
    billed_on: date | None = None,
    actor_id: str | None = None,
) -> BillingClassification:
    """Create the billing record for one completed session, at most once."""

    appointment_id = (appointment_id or "").strip()
    program_key = (program_key or "").strip()
    if not appointment_id:
        raise InvalidInput("appointment_id_required")
    if not program_key and not is_extra_treatment:
        raise InvalidInput("program_key_required")
    try:
        year = int(year)
    except (TypeError, ValueError) as exc:
        raise InvalidInput(f"invalid_year:{year!r}") from exc

    rate = standard_rate_cents()
    billed_on = billed_on or current_clock().today()

    conn = db()
    try:
        try:
            with immediate(conn):
                existing = _existing(conn, appointment_id)
                if existing is not None:
                    raise _AlreadyBilled()
                if is_extra_treatment:
                    result = BillingClassification(
                        appointment_id=appointment_id,
                        status=STATUS_PENDING,
                        payment_mode=None,
                        amount_cents=rate,
                        ordinal=None,
                        over_cap=False,
                    )
                else:
                    claimed = increment_and_classify(program_key, year, threshold=capacity_threshold(), conn=conn)
                    result = BillingClassification(
                        appointment_id=appointment_id,
                        status=STATUS_AUTO_PAID if claimed.over_cap else STATUS_FREE,
                        payment_mode="Auto-Paid" if claimed.over_cap else None,
                        amount_cents=rate if claimed.over_cap else 0,
                        ordinal=claimed.ordinal,
                        over_cap=claimed.over_cap,
                    )
                inserted = conn.execute(
                    """
                    INSERT INTO billing(
                        id, appointment_id, patient_id, staff_id, program_key, amount_cents,
                        status, payment_mode, session_ordinal, billed_on, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, datetime('now'))
                    ON CONFLICT(appointment_id) DO NOTHING
                    """,
                    (
                        f"BILL-{appointment_id}",
                        appointment_id,
                        patient_id,
                        staff_id,
                        program_key or None,
                        result.amount_cents,
                        result.status,
                        result.payment_mode,
                        result.ordinal,
                        billed_on.isoformat(),
                    ),
                )
                if inserted.rowcount == 0:
                    # Rolls the counter increment back with it.
                    raise _AlreadyBilled()
        except _AlreadyBilled:
            row = _existing(conn, appointment_id)
            current_app.logger.info("billing for appointment %s already exists; skipped", appointment_id)
            return _from_row(row, duplicate=True)
    finally:
        conn.close()

    current_app.logger.info(
        "billed appointment %s: %s %s (session %s of %s/%s)",
        appointment_id,
        result.status,
        money(result.amount_cents),
        result.ordinal,
        program_key,
        year,
    )
    write_event(
        actor_id,
        "billing.create",
        entity="billing",
        entity_id=appointment_id,
        meta=result.to_dict(),
    )
    return result


def bill_completed_session(appointment: Appointment, *, actor_id: str | None = None) -> BillingClassification:
    """Bill a completed appointment under its program for the appointment's year."""

    if appointment.status != "completed":
        raise InvalidInput("appointment_not_completed")
    program = appointment.program_key or current_app.config.get("BILLING_DEFAULT_PROGRAM", "")
    return classify_session_for_billing(
        program,
        appointment.day.year,
        appointment.id,
        appointment.is_extra_treatment,
        patient_id=appointment.patient_id,
        staff_id=appointment.staff_id,
        billed_on=appointment.day,
        actor_id=actor_id,
    )


def get_billing(appointment_id: str) -> dict[str, Any] | None:
    conn = db()
    try:
        row = _existing(conn, appointment_id)
        if row is None:
            return None
        record = dict(row)
        record["amount"] = money(record["amount_cents"])
        return record
    finally:
        conn.close()


def list_billing(status: str | None = None) -> list[dict[str, Any]]:
    conn = db()
    try:
        sql = "SELECT * FROM billing"
        params: list[str] = []
        if status:
            sql += " WHERE status=?"
            params.append(status)
        sql += " ORDER BY billed_on DESC, created_at DESC"
        rows = conn.execute(sql, params).fetchall()
        return [dict(row, amount=money(row["amount_cents"])) for row in rows]
    finally:
        conn.close()
