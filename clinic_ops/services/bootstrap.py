"""Bootstrap helper to ensure the scheduling tables exist for first-time runs."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Iterable


def _execute_statements(conn: sqlite3.Connection, statements: Iterable[str]) -> None:
    for stmt in statements:
        conn.execute(stmt)


def ensure_base_tables(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.execute("PRAGMA foreign_keys=ON")
    try:
        _execute_statements(
            conn,
            [
                """
                CREATE TABLE IF NOT EXISTS staff (
                    id TEXT PRIMARY KEY,
                    display_name TEXT NOT NULL,
                    role TEXT NOT NULL DEFAULT 'ClinicalTeam',
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL DEFAULT (datetime('now'))
                )
                """,
                """
                CREATE TABLE IF NOT EXISTS staff_date_overrides (
                    staff_id TEXT NOT NULL,
                    date_key TEXT NOT NULL,
                    unavailable_all INTEGER NOT NULL DEFAULT 0,
                    unavailable_ranges_json TEXT NOT NULL DEFAULT '[]',
                    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
                    PRIMARY KEY (staff_id, date_key),
                    FOREIGN KEY(staff_id) REFERENCES staff(id) ON DELETE CASCADE
                )
                """,
                """
                CREATE TABLE IF NOT EXISTS appointments (
                    id TEXT PRIMARY KEY,
                    staff_id TEXT NOT NULL,
                    staff_label TEXT NOT NULL,
                    patient_id TEXT,
                    patient_name TEXT,
                    day TEXT NOT NULL,
                    start_time TEXT NOT NULL,
                    duration_minutes INTEGER,
                    status TEXT NOT NULL DEFAULT 'pending',
                    is_extra_treatment INTEGER NOT NULL DEFAULT 0,
                    program_key TEXT,
                    created_at TEXT NOT NULL DEFAULT (datetime('now')),
                    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
                    FOREIGN KEY(staff_id) REFERENCES staff(id),
                    CHECK(status IN ('pending','confirmed','cancelled','completed'))
                )
                """,
                """
                CREATE INDEX IF NOT EXISTS idx_appointments_staff_day
                ON appointments(staff_id, day)
                """,
                """
                CREATE TABLE IF NOT EXISTS session_counters (
                    program_key TEXT NOT NULL,
                    year INTEGER NOT NULL,
                    count INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
                    PRIMARY KEY (program_key, year)
                )
                """,
                """
                CREATE TABLE IF NOT EXISTS billing (
                    id TEXT PRIMARY KEY,
                    appointment_id TEXT NOT NULL UNIQUE,
                    patient_id TEXT,
                    staff_id TEXT,
                    program_key TEXT,
                    amount_cents INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL,
                    payment_mode TEXT,
                    session_ordinal INTEGER,
                    billed_on TEXT NOT NULL,
                    created_at TEXT NOT NULL DEFAULT (datetime('now')),
                    CHECK(status IN ('completed','auto_paid','pending'))
                )
                """,
                """
                CREATE TABLE IF NOT EXISTS audit_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    actor_user_id TEXT,
                    action TEXT NOT NULL,
                    entity TEXT,
                    entity_id TEXT,
                    ts TEXT NOT NULL,
                    result TEXT NOT NULL DEFAULT 'ok',
                    meta_json_redacted TEXT NOT NULL DEFAULT '{}'
                )
                """,
            ],
        )
        conn.commit()
    finally:
        conn.close()
