"""Yearly session counters shared by every clinician of a program."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass

from flask import current_app, has_app_context

from clinic_ops.services.database import db, immediate

DEFAULT_CAPACITY_THRESHOLD = 500


@dataclass(frozen=True)
class SessionOrdinal:
    ordinal: int
    over_cap: bool


def capacity_threshold() -> int:
    if has_app_context():
        return int(current_app.config.get("BILLING_CAPACITY_THRESHOLD", DEFAULT_CAPACITY_THRESHOLD))
    return DEFAULT_CAPACITY_THRESHOLD


class AtomicCounter:
    """Counter keyed by (program, year) with a single atomic increment.

    The increment is one ``INSERT ... ON CONFLICT DO UPDATE ... RETURNING``
    statement, so concurrent writers are serialised by SQLite and each gets
    its own ordinal. A missing year row starts at zero.
    """

    def increment_and_get(self, program_key: str, year: int, *, conn: sqlite3.Connection | None = None) -> int:
        if conn is not None:
            return self._increment(conn, program_key, year)
        own = db()
        try:
            with immediate(own):
                return self._increment(own, program_key, year)
        finally:
            own.close()

    def current(self, program_key: str, year: int) -> int:
        conn = db()
        try:
            row = conn.execute(
                "SELECT count FROM session_counters WHERE program_key=? AND year=?",
                (program_key, int(year)),
            ).fetchone()
            return int(row["count"]) if row else 0
        finally:
            conn.close()

    @staticmethod
    def _increment(conn: sqlite3.Connection, program_key: str, year: int) -> int:
        rows = conn.execute(
            """
            INSERT INTO session_counters(program_key, year, count, updated_at)
            VALUES (?, ?, 1, datetime('now'))
            ON CONFLICT(program_key, year)
            DO UPDATE SET count = count + 1, updated_at = datetime('now')
            RETURNING count
            """,
            (program_key, int(year)),
        ).fetchall()
        return int(rows[0][0])


session_counter = AtomicCounter()


def increment_and_classify(
    program_key: str,
    year: int,
    *,
    threshold: int | None = None,
    conn: sqlite3.Connection | None = None,
) -> SessionOrdinal:
    """Claim the next session ordinal; anything past the threshold is over cap."""

    limit = threshold if threshold is not None else capacity_threshold()
    ordinal = session_counter.increment_and_get(program_key, year, conn=conn)
    return SessionOrdinal(ordinal=ordinal, over_cap=ordinal > limit)


def current_session_count(program_key: str, year: int) -> int:
    return session_counter.current(program_key, year)
