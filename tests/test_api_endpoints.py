"""
test_api_endpoints.py
=====================
API test cases for the MediSync Consultation Backend.
Tests cover:
 - Root health check
 - Doctor registration, approval and heartbeat
 - Consultation request, chat, vitals, emergency and completion
 - Liveness check and reassignment
 - Doctor and session WebSockets
 - Input validation
"""

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from medisync import main
from medisync.db import configure_engine
from medisync.main import app


# --------------------------------------------------------------------------
# FIXTURE: Create isolated test client + in-memory DB
# --------------------------------------------------------------------------

@pytest.fixture
def client():
    """
    Binds the app to a fresh in-memory SQLite database and opens a test client.
    Startup creates the tables on that database.
    """
    configure_engine(":memory:")
    with TestClient(app) as c:
        yield c


def online_doctor(client, doctor_id, name=None):
    """Register, approve and heartbeat a doctor so they can be matched."""
    res = client.post("/api/doctors", json={"name": name or f"Dr. {doctor_id}", "id": doctor_id})
    assert res.status_code == 200
    client.post(f"/api/admin/doctors/{doctor_id}/approve")
    res = client.post(f"/api/doctors/{doctor_id}/heartbeat")
    assert res.status_code == 200
    return res.json()


def start_consultation(client, patient_id="p1", symptoms="fever"):
    res = client.post(f"/api/patients/{patient_id}/consultations",
                      json={"symptoms": symptoms, "patient_name": "Pat"})
    assert res.status_code == 200
    return res.json()


# --------------------------------------------------------------------------
# TESTS: BASICS & ADMIN
# --------------------------------------------------------------------------

def test_root_endpoint(client):
    """
    ✅ Test the root health check endpoint.
    Expected: 200 OK and "MediSync" message.
    """
    res = client.get("/")
    assert res.status_code == 200
    assert "MediSync" in res.json()["message"]


def test_doctor_registration_and_approval(client):
    """
    ✅ Test registering a doctor and walking them through approval.
    Expected: pending, then approved, then ACTIVE after a heartbeat.
    """
    res = client.post("/api/doctors", json={"name": "Dr. Alice", "id": "d1", "specialty": "General"})
    assert res.status_code == 200
    assert res.json()["approved"] is False
    assert res.json()["status"] == "INACTIVE"

    res = client.post("/api/admin/doctors/d1/approve")
    assert res.json()["approved"] is True

    res = client.post("/api/doctors/d1/heartbeat")
    assert res.json()["status"] == "ACTIVE"

    res = client.post("/api/admin/doctors/d1/block")
    assert res.json()["blocked"] is True
    assert res.json()["status"] == "INACTIVE"


def test_unknown_doctor(client):
    """
    ✅ Test requesting a non-existing doctor.
    Expected: 404 with 'Doctor ... not found'.
    """
    res = client.get("/api/doctors/ghost")
    assert res.status_code == 404
    assert "not found" in res.json()["detail"]

    assert client.post("/api/doctors/ghost/heartbeat").status_code == 404
    assert client.delete("/api/admin/doctors/ghost").status_code == 404


def test_patient_registration(client):
    res = client.post("/api/patients", json={"name": "Pat", "id": "p1", "age": 30})
    assert res.status_code == 200
    assert res.json()["id"] == "p1"
    assert res.json()["blocked"] is False


def test_blocked_patient_cannot_consult(client):
    """
    ✅ Test a consultation request from a blocked patient.
    Expected: 403 and the doctor stays free; unblocking restores access.
    """
    online_doctor(client, "d1")
    client.post("/api/patients", json={"name": "Pat", "id": "p1"})
    res = client.post("/api/admin/patients/p1/block")
    assert res.json()["blocked"] is True

    res = client.post("/api/patients/p1/consultations", json={"symptoms": "fever"})
    assert res.status_code == 403
    assert client.get("/api/doctors/d1").json()["busy"] is False

    client.post("/api/admin/patients/p1/unblock")
    start_consultation(client)

    assert client.post("/api/admin/patients/ghost/block").status_code == 404


# --------------------------------------------------------------------------
# TESTS: CONSULTATION FLOW
# --------------------------------------------------------------------------

def test_no_doctor_available(client):
    """
    ✅ Test a consultation request while nobody is online.
    Expected: 503 and no session for the patient.
    """
    client.post("/api/doctors", json={"name": "Dr. Pending", "id": "d1"})

    res = client.post("/api/patients/p1/consultations", json={"symptoms": "fever"})
    assert res.status_code == 503
    assert res.json()["detail"] == "No doctors available right now. Please try again later."

    assert client.get("/api/patients/p1/active-session").json()["session"] is None


def test_full_consultation_flow(client):
    """
    ✅ Test full patient flow:
    - Request a consultation
    - Chat, submit vitals, flag emergency
    - Doctor completes with a prescription
    """
    online_doctor(client, "d1", name="Dr. Alice")

    data = start_consultation(client)
    assert data["doctor_id"] == "d1"
    assert data["doctor_name"] == "Dr. Alice"
    assert data["message"] == "Consultation started successfully"
    session_id = data["session_id"]

    doctor = client.get("/api/doctors/d1").json()
    assert doctor["busy"] is True
    assert doctor["active_session_id"] == session_id

    client.post(f"/api/sessions/{session_id}/chat", json={"role": "patient", "text": "hi"})
    client.post(f"/api/sessions/{session_id}/chat", json={"role": "doctor", "text": "hello"})
    res = client.put(f"/api/sessions/{session_id}/vitals", json={"bp": "120/80", "temp": 38.2})
    assert res.json()["health_data"]["bp"] == "120/80"
    client.post(f"/api/sessions/{session_id}/emergency")

    active = client.get("/api/patients/p1/active-session").json()["session"]
    assert active["id"] == session_id
    assert active["emergency"] is True
    assert [m["text"] for m in active["chat"]] == ["hi", "hello"]

    res = client.post(f"/api/sessions/{session_id}/complete",
                      json={"doctor_id": "d1", "prescription": "Paracetamol 500mg"})
    assert res.status_code == 200
    assert res.json()["status"] == "COMPLETED"
    assert res.json()["prescription"] == "Paracetamol 500mg"

    doctor = client.get("/api/doctors/d1").json()
    assert doctor["busy"] is False
    assert doctor["active_session_id"] is None

    history = client.get("/api/patients/p1/history").json()
    assert [s["id"] for s in history] == [session_id]
    stats = client.get("/api/doctors/d1/history").json()["stats"]
    assert stats["total"] == 1 and stats["emergencies"] == 1


def test_complete_requires_prescription(client):
    online_doctor(client, "d1")
    session_id = start_consultation(client)["session_id"]

    res = client.post(f"/api/sessions/{session_id}/complete", json={"doctor_id": "d1", "prescription": " "})
    assert res.status_code == 422
    assert client.get(f"/api/sessions/{session_id}").json()["status"] == "ACTIVE"


def test_check_doctor_reassigns_stale_doctor(client):
    """
    ✅ Test the liveness check after the assigned doctor stops beating.
    Expected: session moved to the other online doctor, history kept.
    """
    online_doctor(client, "d1")
    online_doctor(client, "d2")
    data = start_consultation(client)
    session_id, first = data["session_id"], data["doctor_id"]
    other = "d2" if first == "d1" else "d1"
    client.post(f"/api/sessions/{session_id}/chat", json={"role": "patient", "text": "hello?"})

    res = client.post(f"/api/sessions/{session_id}/check-doctor")
    assert res.json()["outcome"] == "alive"

    main.registry.update_doctor(first, last_active_time=0)
    res = client.post(f"/api/sessions/{session_id}/check-doctor")
    assert res.json() == {"outcome": "reassigned", "doctor_id": other}

    session = client.get(f"/api/sessions/{session_id}").json()
    assert session["doctor_id"] == other
    assert session["reassigned"] is True
    assert [m["text"] for m in session["chat"]] == ["hello?"]
    assert client.get(f"/api/doctors/{first}").json()["status"] == "INACTIVE"


def test_check_doctor_without_replacement(client):
    online_doctor(client, "d1")
    session_id = start_consultation(client)["session_id"]
    main.registry.update_doctor("d1", last_active_time=0)

    res = client.post(f"/api/sessions/{session_id}/check-doctor")
    assert res.json()["outcome"] == "no_doctor"
    session = client.get(f"/api/sessions/{session_id}").json()
    assert session["status"] == "ACTIVE"
    assert session["doctor_id"] == "d1"


def test_dashboard(client):
    online_doctor(client, "d1")
    client.post("/api/doctors", json={"name": "Dr. Pending", "id": "d2"})
    start_consultation(client)

    counts = client.get("/api/admin/dashboard").json()
    assert counts["doctors_total"] == 2
    assert counts["doctors_busy"] == 1
    assert counts["doctors_pending"] == 1
    assert counts["sessions_active"] == 1


# --------------------------------------------------------------------------
# TESTS: WEBSOCKETS
# --------------------------------------------------------------------------

def test_doctor_socket_drop_marks_offline(client):
    """
    ✅ Test the doctor presence socket.
    Expected: ACTIVE while connected, INACTIVE once the socket drops.
    """
    client.post("/api/doctors", json={"name": "Dr. Alice", "id": "d1"})
    client.post("/api/admin/doctors/d1/approve")

    with client.websocket_connect("/ws/doctor/d1") as ws:
        event = ws.receive_json()
        assert event["event"] == "doctor"
        assert event["doctor"]["status"] == "ACTIVE"
        ws.send_json({"type": "beat"})
        assert ws.receive_json()["doctor"]["status"] == "ACTIVE"

    assert client.get("/api/doctors/d1").json()["status"] == "INACTIVE"


def test_doctor_socket_logout(client):
    client.post("/api/doctors", json={"name": "Dr. Alice", "id": "d1"})
    client.post("/api/admin/doctors/d1/approve")

    with client.websocket_connect("/ws/doctor/d1") as ws:
        ws.receive_json()
        ws.send_json({"type": "logout"})
        with pytest.raises(WebSocketDisconnect):
            while True:
                ws.receive_json()

    assert client.get("/api/doctors/d1").json()["status"] == "INACTIVE"


def test_doctor_socket_malformed_frames(client):
    """
    ✅ Test frames that are not JSON objects.
    Expected: an error event per frame, socket stays open, drop still marks offline.
    """
    client.post("/api/doctors", json={"name": "Dr. Alice", "id": "d1"})
    client.post("/api/admin/doctors/d1/approve")

    with client.websocket_connect("/ws/doctor/d1") as ws:
        ws.receive_json()
        ws.send_text("not json")
        assert ws.receive_json()["event"] == "error"
        ws.send_json([1, 2, 3])
        assert ws.receive_json()["event"] == "error"

        ws.send_json({"type": "beat"})
        assert ws.receive_json()["doctor"]["status"] == "ACTIVE"

    assert client.get("/api/doctors/d1").json()["status"] == "INACTIVE"


def test_doctor_socket_crash_runs_fallback(client, monkeypatch):
    """
    ✅ Test a handler that dies on an unexpected error.
    Expected: the doctor is still marked offline.
    """
    client.post("/api/doctors", json={"name": "Dr. Alice", "id": "d1"})
    client.post("/api/admin/doctors/d1/approve")

    def broken_mark_alive(doctor_id, now=None):
        raise RuntimeError("store offline")

    with pytest.raises(RuntimeError):
        with client.websocket_connect("/ws/doctor/d1") as ws:
            ws.receive_json()
            monkeypatch.setattr(main.registry, "mark_alive", broken_mark_alive)
            ws.send_json({"type": "beat"})
            ws.receive_json()

    assert client.get("/api/doctors/d1").json()["status"] == "INACTIVE"


def test_doctor_socket_receives_assignment(client):
    """
    ✅ Test the assignment notification on the doctor socket.
    Expected: a "session_assigned" frame naming the new session.
    """
    client.post("/api/doctors", json={"name": "Dr. Alice", "id": "d1"})
    client.post("/api/admin/doctors/d1/approve")

    with client.websocket_connect("/ws/doctor/d1") as ws:
        ws.receive_json()
        session_id = start_consultation(client)["session_id"]

        frames = [ws.receive_json(), ws.receive_json()]
        assigned = [f for f in frames if f["event"] == "session_assigned"]
        assert assigned == [{"event": "session_assigned", "session_id": session_id}]
        record = [f for f in frames if f["event"] == "doctor"][0]
        assert record["doctor"]["active_session_id"] == session_id


def test_unapproved_doctor_socket_is_rejected(client):
    client.post("/api/doctors", json={"name": "Dr. Pending", "id": "d1"})

    with client.websocket_connect("/ws/doctor/d1") as ws:
        with pytest.raises(WebSocketDisconnect) as excinfo:
            ws.receive_json()
    assert excinfo.value.code == 4403


def test_session_socket_streams_changes(client):
    """
    ✅ Test the patient's session socket.
    Expected: snapshot first, then chat and session updates as they happen.
    """
    online_doctor(client, "d1")
    session_id = start_consultation(client)["session_id"]

    with client.websocket_connect(f"/ws/sessions/{session_id}") as ws:
        snapshot = ws.receive_json()
        assert snapshot["event"] == "session"
        assert snapshot["session"]["id"] == session_id

        ws.send_json({"type": "chat", "text": "hi doctor"})
        event = ws.receive_json()
        assert event["event"] == "chat"
        assert [m["text"] for m in event["chat"]] == ["hi doctor"]

        ws.send_json({"type": "emergency"})
        event = ws.receive_json()
        assert event["event"] == "session"
        assert event["session"]["emergency"] is True

        ws.send_json({"type": "vitals", "bp": "120/80", "temp": {"celsius": 38}})
        assert ws.receive_json()["event"] == "error"

        ws.send_json({"type": "vitals", "bp": "120/80", "spo2": 97})
        event = ws.receive_json()
        assert event["event"] == "session"
        assert event["session"]["health_data"]["bp"] == "120/80"
        assert "type" not in event["session"]["health_data"]

        ws.send_json({"type": "chat", "text": "   "})
        assert ws.receive_json()["event"] == "error"

    assert main.watchdogs == {}


def test_session_socket_unknown_session(client):
    with client.websocket_connect("/ws/sessions/missing") as ws:
        with pytest.raises(WebSocketDisconnect) as excinfo:
            ws.receive_json()
    assert excinfo.value.code == 4404


# --------------------------------------------------------------------------
# TESTS: VALIDATION
# --------------------------------------------------------------------------

def test_invalid_input(client):
    """
    ✅ Test invalid input (missing or blank symptoms, bad chat role).
    Expected: 422 validation error.
    """
    online_doctor(client, "d1")
    res = client.post("/api/patients/p1/consultations", json={})
    assert res.status_code == 422

    res = client.post("/api/patients/p1/consultations", json={"symptoms": "  "})
    assert res.status_code == 422
    assert client.get("/api/doctors/d1").json()["busy"] is False

    session_id = start_consultation(client)["session_id"]
    res = client.post(f"/api/sessions/{session_id}/chat", json={"role": "nurse", "text": "hi"})
    assert res.status_code == 422


def test_session_not_found(client):
    res = client.get("/api/sessions/missing")
    assert res.status_code == 404
