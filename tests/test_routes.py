from clinic_ops.services.availability import set_date_override
from clinic_ops.services.audit import events_for
from clinic_ops.services.database import db


def _book(client, staff_id, time, date="2030-03-04", **extra):
    payload = {"staff_id": staff_id, "date": date, "time": time, "patient_name": "Sara Ali", **extra}
    return client.post("/appointments", json=payload)


def test_availability_and_slots(client, therapist):
    resp = client.get(f"/staff/{therapist['id']}/availability?date=2030-03-04")
    assert resp.status_code == 200
    assert resp.get_json()["enabled"] is True

    _book(client, therapist["id"], "14:00")
    slots = client.get(f"/staff/{therapist['id']}/slots?date=2030-03-04").get_json()
    times = [slot["time"] for slot in slots["slots"]]
    assert times[0] == "14:30"
    assert slots["no_slots"] is False

    sunday = client.get(f"/staff/{therapist['id']}/slots?date=2030-03-10").get_json()
    assert sunday["slots"] == []
    assert sunday["no_slots"] is True


def test_slots_require_date(client, therapist):
    resp = client.get(f"/staff/{therapist['id']}/slots")
    assert resp.status_code == 400
    assert resp.get_json()["success"] is False


def test_unknown_staff_is_404(client):
    resp = client.get("/staff/ghost/slots?date=2030-03-04")
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "staff_not_found"


def test_override_endpoints(client, therapist):
    url = f"/staff/{therapist['id']}/overrides/2030-03-05"
    resp = client.put(url, json={"unavailable_ranges": [{"start": "12:00", "end": "13:00"}]})
    assert resp.status_code == 200
    assert resp.get_json()["override"]["unavailable_ranges"] == [{"start": "12:00", "end": "13:00"}]

    resp = client.post(f"{url}/copy", json={"targets": ["2030-03-06", "2030-03-10"]})
    assert resp.get_json()["written"] == ["2030-03-06"]

    assert client.delete(url).status_code == 200
    bad = client.put(url, json={"unavailable_ranges": [{"start": "13:00", "end": "12:00"}]})
    assert bad.status_code == 400


def test_closing_booked_date_is_409(client, therapist):
    booked = _book(client, therapist["id"], "10:00").get_json()["appointment"]
    resp = client.put(f"/staff/{therapist['id']}/overrides/2030-03-04", json={"unavailable": True})
    assert resp.status_code == 409
    assert resp.get_json()["conflicts"] == [{"id": booked["id"]}]


def test_book_and_conflict(client, therapist):
    resp = _book(client, therapist["id"], "10:00")
    assert resp.status_code == 201
    body = resp.get_json()["appointment"]
    assert body["status"] == "pending"
    assert body["end_time"] == "10:30"

    clash = _book(client, therapist["id"], "10:00")
    assert clash.status_code == 409
    data = clash.get_json()
    assert data["error"] == "conflict"
    assert data["conflicts"][0]["id"] == body["id"]


def test_book_consecutive_slots(client, therapist):
    resp = _book(client, therapist["id"], None, slots=["10:30", "10:00", "11:00"])
    assert resp.status_code == 201
    body = resp.get_json()["appointment"]
    assert (body["time"], body["duration_minutes"]) == ("10:00", 90)

    gap = _book(client, therapist["id"], None, date="2030-03-05", slots=["10:00", "11:00"])
    assert gap.status_code == 400


def test_book_outside_hours_is_422(client, therapist):
    resp = _book(client, therapist["id"], "18:00")
    assert resp.status_code == 422
    assert resp.get_json()["reason"] == "time_outside_availability"


def test_book_missing_fields(client):
    resp = client.post("/appointments", json={"date": "2030-03-04"})
    assert resp.status_code == 400


def test_check_conflict_endpoint(client, therapist):
    booked = _book(client, therapist["id"], "10:00").get_json()["appointment"]
    payload = {"staff_id": therapist["id"], "date": "2030-03-04", "time": "10:00"}
    assert client.post("/appointments/check-conflict", json=payload).get_json()["has_conflict"] is True
    payload["appointment_id"] = booked["id"]
    assert client.post("/appointments/check-conflict", json=payload).get_json()["has_conflict"] is False


def test_reschedule_and_transfer_routes(client, therapist, second_therapist):
    appt = _book(client, therapist["id"], "10:00").get_json()["appointment"]

    moved = client.post(
        f"/appointments/{appt['id']}/reschedule",
        json={"date": "2030-03-05", "time": "11:00"},
        headers={"X-Actor-Id": "desk-1"},
    )
    assert moved.status_code == 200
    assert moved.get_json()["appointment"]["date"] == "2030-03-05"
    actors = {event["actor_user_id"] for event in events_for(appt["id"]) if event["action"] == "appointment.reschedule"}
    assert actors == {"desk-1"}

    pool = client.get(f"/appointments/{appt['id']}/transfer-candidates").get_json()["staff"]
    assert [member["id"] for member in pool] == [second_therapist["id"]]

    set_date_override(second_therapist["id"], "2030-03-05", unavailable=True)
    refused = client.post(f"/appointments/{appt['id']}/transfer", json={"staff_id": second_therapist["id"]})
    assert refused.status_code == 422
    assert refused.get_json()["reason"] == "no_availability_on_date"

    set_date_override(second_therapist["id"], "2030-03-05")
    ok = client.post(f"/appointments/{appt['id']}/transfer", json={"staff_id": second_therapist["id"]})
    assert ok.status_code == 200
    assert ok.get_json()["appointment"]["staff_label"] == "Dr. Omar"


def test_missing_appointment_is_404(client):
    assert client.get("/appointments/nope").status_code == 404


def test_complete_bills_once(client, therapist):
    appt = _book(client, therapist["id"], "10:00", program_key="DYES").get_json()["appointment"]
    assert client.post(f"/appointments/{appt['id']}/confirm").get_json()["appointment"]["status"] == "confirmed"

    done = client.post(f"/appointments/{appt['id']}/complete").get_json()
    assert done["appointment"]["status"] == "completed"
    assert done["billing"]["status"] == "completed"
    assert done["billing"]["ordinal"] == 1

    again = client.post(f"/appointments/{appt['id']}/complete").get_json()
    assert again["billing"]["duplicate"] is True

    counter = client.get("/billing/counters/DYES/2030").get_json()
    assert counter["count"] == 1
    assert counter["remaining_free"] == 499

    record = client.get(f"/billing/appointments/{appt['id']}").get_json()["billing"]
    assert record["amount"] == "0.00"


def test_cancelled_cannot_be_rescheduled(client, therapist):
    appt = _book(client, therapist["id"], "10:00").get_json()["appointment"]
    assert client.post(f"/appointments/{appt['id']}/cancel").status_code == 200
    resp = client.post(f"/appointments/{appt['id']}/reschedule", json={"date": "2030-03-05", "time": "11:00"})
    assert resp.status_code == 400


def test_billing_sessions_endpoint(client):
    first = client.post("/billing/sessions", json={"appointment_id": "ext-1", "year": 2030})
    assert first.status_code == 201
    retry = client.post("/billing/sessions", json={"appointment_id": "ext-1", "year": 2030})
    assert retry.status_code == 200
    assert retry.get_json()["billing"]["duplicate"] is True
    listed = client.get("/billing?status=completed").get_json()["billing"]
    assert [row["appointment_id"] for row in listed] == ["ext-1"]
    assert client.get("/billing/appointments/none").status_code == 404


def test_capability_denied(app, client, therapist):
    app.config["CAPABILITY_CHECK"] = lambda capability, view_args: capability != "appointments:edit"
    resp = _book(client, therapist["id"], "10:00")
    assert resp.status_code == 403
    conn = db()
    try:
        count = conn.execute("SELECT COUNT(*) FROM appointments").fetchone()[0]
        denied = conn.execute("SELECT COUNT(*) FROM audit_log WHERE result='denied'").fetchone()[0]
    finally:
        conn.close()
    assert count == 0
    assert denied == 1
    assert client.get(f"/staff/{therapist['id']}/availability?date=2030-03-04").status_code == 200


def test_sqlite_pragmas_active(app):
    conn = db()
    try:
        mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
        timeout = conn.execute("PRAGMA busy_timeout").fetchone()[0]
        foreign = conn.execute("PRAGMA foreign_keys").fetchone()[0]
    finally:
        conn.close()
    assert mode.lower() == "wal"
    assert timeout == 5000
    assert foreign == 1


def test_json_writes_need_no_csrf_token(app, client, therapist):
    assert app.config.get("WTF_CSRF_ENABLED", True) is True
    booked = _book(client, therapist["id"], "10:00")
    assert booked.status_code == 201
    appt_id = booked.get_json()["appointment"]["id"]
    assert client.post(f"/appointments/{appt_id}/confirm").status_code == 200
    assert client.put(f"/staff/{therapist['id']}/overrides/2030-03-05", json={"unavailable": True}).status_code == 200
    assert client.post("/billing/sessions", json={"appointment_id": "ext-9", "year": 2030}).status_code == 201


def test_book_consecutive_slots_uses_earliest_time(client, therapist):
    resp = client.post(
        "/appointments",
        json={"staff_id": therapist["id"], "date": "2030-03-04", "slots": ["10:00", "9:30"], "patient_name": "Sara"},
    )
    assert resp.status_code == 201
    appointment = resp.get_json()["appointment"]
    assert appointment["time"] == "09:30"
    assert appointment["duration_minutes"] == 60


def test_book_rejects_malformed_slot_lists(client, therapist):
    base = {"staff_id": therapist["id"], "date": "2030-03-04", "patient_name": "Sara"}
    assert client.post("/appointments", json={**base, "slots": "09:30"}).status_code == 400
    bad = client.post("/appointments", json={**base, "slots": ["9h30", "10:00"]})
    assert bad.status_code == 400
    assert bad.get_json()["error"] == "invalid_input"
