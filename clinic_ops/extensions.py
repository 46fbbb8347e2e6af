"""Shared extensions: the SQLite engine, CSRF protection and rate limiting."""

from __future__ import annotations

import os
import sqlite3

from flask import Flask
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_wtf import CSRFProtect
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, scoped_session, sessionmaker

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA busy_timeout=5000",
    "PRAGMA foreign_keys=ON",
)


def _configure_sqlite(dbapi_connection, connection_record) -> None:
    # Autocommit at the driver level; services open transactions themselves.
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    try:
        for pragma in SQLITE_PRAGMAS:
            cursor.execute(pragma)
    finally:
        cursor.close()


class ClinicDatabase:
    """One engine per app, handing out ORM sessions and raw sqlite3 connections."""

    def __init__(self) -> None:
        self._engine: Engine | None = None
        self._sessions: scoped_session[Session] | None = None

    def init_app(self, app: Flask) -> None:
        self.dispose()
        self._engine = create_engine(
            app.config["SQLALCHEMY_DATABASE_URI"],
            **app.config.get("SQLALCHEMY_ENGINE_OPTIONS", {}),
        )
        event.listen(self._engine, "connect", _configure_sqlite)
        self._sessions = scoped_session(sessionmaker(bind=self._engine, autoflush=False))
        app.extensions["clinic_db"] = self
        app.teardown_appcontext(self._remove_session)

    def _remove_session(self, exception: BaseException | None) -> None:
        if self._sessions is not None:
            self._sessions.remove()

    def dispose(self) -> None:
        if self._sessions is not None:
            self._sessions.remove()
        if self._engine is not None:
            self._engine.dispose()
        self._engine = None
        self._sessions = None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("database is not initialised; call init_app first")
        return self._engine

    def session(self) -> Session:
        if self._sessions is None:
            raise RuntimeError("database is not initialised; call init_app first")
        return self._sessions()

    def raw_connection(self) -> sqlite3.Connection:
        """Pooled DB-API connection; ``close()`` hands it back to the pool."""

        proxied = self.engine.raw_connection()
        proxied.driver_connection.row_factory = sqlite3.Row
        return proxied


db = ClinicDatabase()
csrf = CSRFProtect()
limiter = Limiter(get_remote_address, storage_uri=os.getenv("RATELIMIT_STORAGE_URI", "memory://"))


def init_extensions(app: Flask) -> None:
    db.init_app(app)
    csrf.init_app(app)
    limiter.init_app(app)
