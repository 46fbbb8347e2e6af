from clinic_ops.services.appointments import book_appointment, get_appointment
from clinic_ops.services.billing import classify_session_for_billing
from clinic_ops.services.staff import get_staff

from conftest import MONDAY


def test_db_init_is_idempotent(app):
    runner = app.test_cli_runner()
    first = runner.invoke(args=["db", "init"])
    second = runner.invoke(args=["db", "init"])
    assert first.exit_code == 0
    assert second.exit_code == 0
    assert "Schema ready" in second.output


def test_staff_add(app):
    runner = app.test_cli_runner()
    result = runner.invoke(args=["staff", "add", "Dr. Noor", "--role", "Physiotherapist", "--id", "staff-noor"])
    assert result.exit_code == 0
    assert result.output.startswith("staff-noor\tDr. Noor\tPhysiotherapist")
    assert get_staff("staff-noor")["role"] == "Physiotherapist"


def test_counter_show(app):
    classify_session_for_billing("DYES", 2030, "appt-1", False)
    result = app.test_cli_runner().invoke(args=["counter", "show", "DYES", "2030"])
    assert result.exit_code == 0
    assert "DYES 2030: 1 session(s), 499 free remaining" in result.output


def test_slots_command(app, therapist):
    runner = app.test_cli_runner()
    result = runner.invoke(args=["slots", therapist["id"], "2030-03-04"])
    assert result.exit_code == 0
    assert result.output.splitlines()[0] == "09:00"
    closed = runner.invoke(args=["slots", therapist["id"], "2030-03-10"])
    assert "No slots available." in closed.output
    missing = runner.invoke(args=["slots", "ghost", "2030-03-04"])
    assert missing.exit_code != 0


def test_staff_rename_relabels_bookings(app, therapist):
    appt = book_appointment(therapist["id"], day=MONDAY, start_time="10:00", patient_name="Sara")
    runner = app.test_cli_runner()
    result = runner.invoke(args=["staff", "rename", therapist["id"], "Dr. Lina Haddad"])
    assert result.exit_code == 0
    assert get_appointment(appt.id).staff_label == "Dr. Lina Haddad"
    shown = runner.invoke(args=["staff", "show", therapist["id"]])
    assert shown.output.strip() == f"{therapist['id']}\tDr. Lina Haddad\t{therapist['role']}\tactive"


def test_staff_commands_report_unknown_staff(app):
    runner = app.test_cli_runner()
    assert runner.invoke(args=["staff", "show", "ghost"]).exit_code != 0
    assert runner.invoke(args=["staff", "rename", "ghost", "Someone"]).exit_code != 0
