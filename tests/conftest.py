import pathlib
import sys
from datetime import date, datetime

import pytest

root = pathlib.Path(__file__).resolve().parents[1]
if str(root) not in sys.path:
    sys.path.insert(0, str(root))

from clinic_ops import create_app
from clinic_ops.models import Appointment
from clinic_ops.services.clock import FixedClock
from clinic_ops.services.staff import add_staff

# A Monday well away from the wall clock so "today" filtering stays off.
MONDAY = date(2030, 3, 4)
SUNDAY = date(2030, 3, 10)


@pytest.fixture
def clock():
    return FixedClock(datetime(2030, 3, 1, 8, 0))


@pytest.fixture
def app(tmp_path, monkeypatch, clock):
    db_path = tmp_path / "app.db"
    monkeypatch.setenv("CLINIC_DB_PATH", str(db_path))
    monkeypatch.setenv("CLINIC_SECRET_KEY", "test-secret")
    monkeypatch.setenv("RATELIMIT_ENABLED", "0")
    app = create_app()
    app.config.update(
        TESTING=True,
        SCHEDULING_CLOCK=clock,
        SCHEDULING_DEBOUNCE_SECONDS=0.0,
    )
    with app.app_context():
        yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def therapist(app):
    return add_staff("Dr. Lina", role="Physiotherapist", staff_id="staff-lina")


@pytest.fixture
def second_therapist(app):
    return add_staff("Dr. Omar", role="Physiotherapist", staff_id="staff-omar")


def make_appt(appt_id, start, *, staff_id="staff-lina", day=MONDAY, duration=None, status="pending"):
    """In-memory appointment for the pure scheduling core."""

    hours, minutes = (int(part) for part in start.split(":"))
    return Appointment(
        id=appt_id,
        staff_id=staff_id,
        day=day,
        start=hours * 60 + minutes,
        duration_minutes=duration,
        status=status,
    )
