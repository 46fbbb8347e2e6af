"""Injectable wall clock used by slot generation and billing."""

from __future__ import annotations

from datetime import date, datetime, timedelta

from flask import current_app, has_app_context


class SystemClock:
    """Local wall-clock time of the clinic."""

    def now(self) -> datetime:
        return datetime.now().replace(microsecond=0)

    def today(self) -> date:
        return self.now().date()


class FixedClock(SystemClock):
    """Clock frozen at a given instant; ``advance`` moves it forward."""

    def __init__(self, instant: datetime) -> None:
        self._instant = instant

    def now(self) -> datetime:
        return self._instant

    def advance(self, **delta: float) -> None:
        self._instant = self._instant + timedelta(**delta)


def current_clock() -> SystemClock:
    if has_app_context():
        clock = current_app.config.get("SCHEDULING_CLOCK")
        if clock is not None:
            return clock
    return SystemClock()
