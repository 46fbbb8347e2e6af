"""Database helpers backed by SQLAlchemy."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.exc import OperationalError as SAOperationalError

from clinic_ops.extensions import db as sa_db
from clinic_ops.services.errors import StoreUnavailable


def db() -> sqlite3.Connection:
    """Return a raw sqlite3 connection with PRAGMAs applied."""

    try:
        return sa_db.raw_connection()
    except SAOperationalError as exc:
        raise StoreUnavailable(str(exc)) from exc


@contextmanager
def immediate(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block inside ``BEGIN IMMEDIATE``; roll back on any error.

    SQLite lock and I/O failures surface as :class:`StoreUnavailable` so
    callers can retry the same submission.
    """

    try:
        conn.execute("BEGIN IMMEDIATE")
    except sqlite3.OperationalError as exc:
        raise StoreUnavailable(str(exc)) from exc
    try:
        yield conn
        conn.commit()
    except sqlite3.OperationalError as exc:
        conn.rollback()
        raise StoreUnavailable(str(exc)) from exc
    except Exception:
        conn.rollback()
        raise


@contextmanager
def session_scope():
    """Provide a transactional scope for ORM usage."""

    session = sa_db.session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
