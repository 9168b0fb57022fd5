"""
main.py
========
This is the FastAPI entry point for the MediSync consultation backend.
It:
 - Initializes the database (and optionally seeds demo doctors).
 - Exposes REST API endpoints for doctors, patients, sessions and the admin workflow.
 - Holds doctor presence connections over WebSocket: heartbeats come in as
   frames, and a dropped socket runs the doctor's disconnect fallback.
 - Streams session changes to patients over WebSocket and runs the liveness
   watchdog while the patient is connected.
"""

import asyncio
from typing import Dict, List, Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .admin import AdminWorkflow
from .clients import request_consultation
from .config import load_settings
from .db import SessionLocal, init_db
from .errors import DoctorNotFound, MediSyncError, PatientBlocked
from .lifecycle import SessionLifecycle, session_key
from .log import get_logger
from .models import Base, SessionStatus
from .notifications import (
    PresenceConnection, broadcast_to_doctor, feed, register_ws, send_pushover, unregister_ws,
)
from .registry import DoctorRegistry
from .schemas import (
    ChatMessageOut, ChatRequest, CompleteRequest, ConsultRequest, ConsultResponse, DoctorCreate,
    DoctorHistoryResponse, DoctorOut, PatientCreate, PatientOut, SessionOut, VitalsRequest,
    WatchdogResponse, session_out,
)
from .watchdog import LivenessWatchdog, WatchdogOutcome

logger = get_logger("main")

settings = load_settings()

registry = DoctorRegistry(SessionLocal, feed)
lifecycle = SessionLifecycle(registry, SessionLocal, feed)
admin = AdminWorkflow(registry)

# Watchdogs run on behalf of connected patients: session_id -> watchdog
watchdogs: Dict[str, LivenessWatchdog] = {}

# ---------------------------------------------------------------------------
# APP INITIALIZATION
# ---------------------------------------------------------------------------

app = FastAPI(title="MediSync Consultation Backend", version="1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(MediSyncError)
async def medisync_exception_handler(request: Request, exc: MediSyncError):
    logger.warning(f"{type(exc).__name__}: {exc.message} - Path: {request.url.path}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# ---------------------------------------------------------------------------
# APP STARTUP / SHUTDOWN
# ---------------------------------------------------------------------------

@app.on_event("startup")
async def startup_event():
    """
    Called when FastAPI starts.
    Creates tables and seeds demo doctors when MEDISYNC_SEED_DEMO is set.
    """
    logger.info("Starting MediSync Consultation Backend...")
    init_db(Base, settings.db_path)

    if settings.seed_demo and not registry.list_doctors():
        logger.info("No doctors found. Seeding demo doctors...")
        for name, specialty in [
            ("Alice", "General Medicine"),
            ("Bob", "Cardiology"),
            ("Clara", "Pediatrics"),
        ]:
            doctor = admin.register_doctor(name, specialty=specialty)
            admin.approve_doctor(doctor.id)


@app.on_event("shutdown")
async def shutdown_event():
    for watchdog in list(watchdogs.values()):
        watchdog.stop()
    watchdogs.clear()
    logger.info("Shutting down MediSync Consultation Backend...")


# ---------------------------------------------------------------------------
# REGISTRATION & ADMIN
# ---------------------------------------------------------------------------

@app.post("/api/doctors", response_model=DoctorOut)
async def api_register_doctor(req: DoctorCreate):
    return admin.register_doctor(req.name, email=req.email, specialty=req.specialty,
                                 pushover_user=req.pushover_user, doctor_id=req.id)


@app.post("/api/patients", response_model=PatientOut)
async def api_register_patient(req: PatientCreate):
    return admin.register_patient(req.name, email=req.email, age=req.age,
                                  blood_group=req.blood_group, patient_id=req.id)


@app.post("/api/admin/doctors/{doctor_id}/approve", response_model=DoctorOut)
async def api_approve_doctor(doctor_id: str):
    return admin.approve_doctor(doctor_id)


@app.post("/api/admin/doctors/{doctor_id}/block", response_model=DoctorOut)
async def api_block_doctor(doctor_id: str):
    return admin.block_doctor(doctor_id)


@app.post("/api/admin/doctors/{doctor_id}/unblock", response_model=DoctorOut)
async def api_unblock_doctor(doctor_id: str):
    return admin.unblock_doctor(doctor_id)


@app.post("/api/admin/patients/{patient_id}/block", response_model=PatientOut)
async def api_block_patient(patient_id: str):
    return admin.set_patient_blocked(patient_id, True)


@app.post("/api/admin/patients/{patient_id}/unblock", response_model=PatientOut)
async def api_unblock_patient(patient_id: str):
    return admin.set_patient_blocked(patient_id, False)


@app.delete("/api/admin/doctors/{doctor_id}")
async def api_remove_doctor(doctor_id: str):
    admin.remove_doctor(doctor_id)
    return {"message": "Doctor removed"}


@app.get("/api/admin/dashboard")
async def api_dashboard():
    return admin.dashboard_counts()


# ---------------------------------------------------------------------------
# DOCTORS
# ---------------------------------------------------------------------------

@app.get("/api/doctors", response_model=List[DoctorOut])
async def api_list_doctors():
    return list(registry.list_doctors().values())


@app.get("/api/doctors/{doctor_id}", response_model=DoctorOut)
async def api_get_doctor(doctor_id: str):
    doctor = registry.get_doctor(doctor_id)
    if doctor is None:
        raise DoctorNotFound(doctor_id)
    return doctor


@app.post("/api/doctors/{doctor_id}/heartbeat", response_model=DoctorOut)
async def api_doctor_heartbeat(doctor_id: str):
    """Single alive write, for doctor clients that poll over HTTP instead of WebSocket."""
    doctor = registry.mark_alive(doctor_id)
    if doctor is None:
        raise DoctorNotFound(doctor_id)
    return doctor


@app.post("/api/doctors/{doctor_id}/logout", response_model=DoctorOut)
async def api_doctor_logout(doctor_id: str):
    doctor = registry.mark_offline(doctor_id)
    if doctor is None:
        raise DoctorNotFound(doctor_id)
    return doctor


@app.get("/api/doctors/{doctor_id}/history", response_model=DoctorHistoryResponse)
async def api_doctor_history(doctor_id: str):
    """Last 10 sessions plus the dashboard counters for the doctor panel."""
    sessions = lifecycle.doctor_history(doctor_id)
    return DoctorHistoryResponse(
        sessions=[session_out(s) for s in sessions],
        stats=lifecycle.doctor_stats(doctor_id),
    )


# ---------------------------------------------------------------------------
# PATIENTS
# ---------------------------------------------------------------------------

@app.post("/api/patients/{patient_id}/consultations", response_model=ConsultResponse)
async def api_request_consultation(patient_id: str, req: ConsultRequest):
    """
    Match an available doctor and start a session.

    - 503 when no doctor is available (try again later)
    - 403 when the patient has been blocked
    - the doctor is notified over WebSocket and, if configured, Pushover
    """
    patient = admin.get_patient(patient_id)
    if patient is not None and patient.blocked:
        raise PatientBlocked(patient_id)
    patient_name = req.patient_name or (patient.name if patient else "Patient")

    context = request_consultation(
        registry, lifecycle, patient_id, patient_name, req.symptoms,
        attempts=settings.match_attempts, threshold_ms=settings.staleness_threshold_ms,
    )

    doctor = registry.get_doctor(context.doctor_id)
    if doctor is not None:
        send_pushover(settings.pushover_token, doctor.pushover_user,
                      title="New Patient Assigned",
                      message=f"{patient_name} is waiting for you")
    await broadcast_to_doctor(context.doctor_id, {
        "event": "session_assigned",
        "session_id": context.session_id,
    })

    return ConsultResponse(
        session_id=context.session_id,
        doctor_id=context.doctor_id,
        doctor_name=context.doctor_name,
        message="Consultation started successfully",
    )


@app.get("/api/patients/{patient_id}/active-session")
async def api_active_session(patient_id: str):
    session = lifecycle.find_active_session(patient_id)
    if session is None:
        return {"session": None}
    return {"session": session_out(session, lifecycle.get_chat(session.id))}


@app.get("/api/patients/{patient_id}/history", response_model=List[SessionOut])
async def api_patient_history(patient_id: str):
    return [session_out(s) for s in lifecycle.patient_history(patient_id)]


# ---------------------------------------------------------------------------
# SESSIONS
# ---------------------------------------------------------------------------

@app.get("/api/sessions/{session_id}", response_model=SessionOut)
async def api_get_session(session_id: str):
    session = lifecycle.get_session(session_id)
    return session_out(session, lifecycle.get_chat(session_id))


@app.post("/api/sessions/{session_id}/chat", response_model=ChatMessageOut)
async def api_send_chat(session_id: str, req: ChatRequest):
    return lifecycle.append_chat_message(session_id, req.role, req.text)


@app.put("/api/sessions/{session_id}/vitals")
async def api_submit_vitals(session_id: str, req: VitalsRequest):
    return {"health_data": lifecycle.submit_vitals(session_id, req.model_dump())}


@app.post("/api/sessions/{session_id}/emergency", response_model=SessionOut)
async def api_flag_emergency(session_id: str):
    return session_out(lifecycle.flag_emergency(session_id))


@app.post("/api/sessions/{session_id}/check-doctor", response_model=WatchdogResponse)
async def api_check_doctor(session_id: str):
    """Run one liveness check now (also the patient's 'find new doctor' trigger)."""
    lifecycle.get_session(session_id)
    watchdog = watchdogs.get(session_id) or LivenessWatchdog(
        session_id, registry, lifecycle,
        interval_s=settings.watchdog_interval_s,
        threshold_ms=settings.staleness_threshold_ms,
        max_attempts=settings.match_attempts,
    )
    outcome = watchdog.check()
    return WatchdogResponse(outcome=outcome.value, doctor_id=watchdog.doctor_id)


@app.post("/api/sessions/{session_id}/complete", response_model=SessionOut)
async def api_complete_session(session_id: str, req: CompleteRequest):
    session = lifecycle.complete_session(session_id, req.doctor_id, req.prescription)
    return session_out(session, lifecycle.get_chat(session_id))


# ---------------------------------------------------------------------------
# WEBSOCKET ENDPOINTS
# ---------------------------------------------------------------------------

async def _pump(ws: WebSocket, outbox: asyncio.Queue):
    while True:
        payload = await outbox.get()
        await ws.send_json(payload)


async def _receive_frame(ws: WebSocket, outbox: asyncio.Queue) -> Optional[dict]:
    """Next client frame, or None after answering a malformed one with an error event."""
    try:
        message = await ws.receive_json()
    except ValueError:
        message = None
    if not isinstance(message, dict):
        outbox.put_nowait({"event": "error", "detail": "Frames must be JSON objects"})
        return None
    return message


def _doctor_event(doctor) -> dict:
    return {
        "event": "doctor",
        "doctor": DoctorOut.model_validate(doctor).model_dump(mode="json") if doctor else None,
    }


@app.websocket("/ws/doctor/{doctor_id}")
async def websocket_doctor(ws: WebSocket, doctor_id: str):
    """
    Presence connection for an online doctor.

    Client frames: {"type": "beat"} refreshes the heartbeat, {"type": "logout"}
    goes offline gracefully. Server frames: the doctor's own record after every
    change, and "session_assigned" events.
    """
    await ws.accept()
    doctor = registry.get_doctor(doctor_id)
    if doctor is None or not doctor.approved or doctor.blocked:
        await ws.close(code=4403)
        return

    outbox: asyncio.Queue = asyncio.Queue()
    connection = PresenceConnection(doctor_id)
    connection.on_disconnect(lambda: registry.mark_offline(doctor_id))
    unwatch = registry.watch_doctor(doctor_id, lambda d: outbox.put_nowait(_doctor_event(d)))
    register_ws(doctor_id, ws)
    sender = asyncio.create_task(_pump(ws, outbox))
    registry.mark_alive(doctor_id)

    graceful = False
    try:
        while True:
            message = await _receive_frame(ws, outbox)
            if message is None:
                continue
            kind = message.get("type")
            if kind == "beat":
                registry.mark_alive(doctor_id)
            elif kind == "logout":
                graceful = True
                connection.close()
                registry.mark_offline(doctor_id)
                break
    except WebSocketDisconnect:
        logger.info(f"Doctor {doctor_id} socket disconnected")
    finally:
        unwatch()
        sender.cancel()
        unregister_ws(doctor_id, ws)
        # any exit other than logout counts as a dropped connection
        if not graceful:
            connection.drop()

    if graceful:
        await ws.close()


@app.websocket("/ws/sessions/{session_id}")
async def websocket_session(ws: WebSocket, session_id: str):
    """
    Live view of a session for the patient.

    While connected, the server runs the liveness watchdog for the session.
    Client frames: {"type": "chat", "text"}, {"type": "vitals", ...},
    {"type": "emergency"}, {"type": "find_doctor"}.
    """
    await ws.accept()
    session = lifecycle.find_session(session_id)
    if session is None:
        await ws.close(code=4404)
        return

    outbox: asyncio.Queue = asyncio.Queue()

    def on_change(key: str, value):
        if key.endswith("/chat"):
            chat = [ChatMessageOut.model_validate(m).model_dump(mode="json") for m in value]
            outbox.put_nowait({"event": "chat", "chat": chat})
        elif value is not None:
            outbox.put_nowait({"event": "session", "session": session_out(value).model_dump(mode="json")})

    unwatch = feed.subscribe(session_key(session_id), on_change, prefix=True)
    await ws.send_json({
        "event": "session",
        "session": session_out(session, lifecycle.get_chat(session_id)).model_dump(mode="json"),
    })

    watchdog = None
    if session.status == SessionStatus.ACTIVE:
        watchdog = LivenessWatchdog(
            session_id, registry, lifecycle,
            interval_s=settings.watchdog_interval_s,
            threshold_ms=settings.staleness_threshold_ms,
            max_attempts=settings.match_attempts,
            on_reassigned=lambda doctor_id, name: outbox.put_nowait(
                {"event": "reassigned", "doctor_id": doctor_id, "doctor_name": name}),
            on_no_doctor=lambda: outbox.put_nowait(
                {"event": "no_doctor", "message": "No doctors available right now. Please try again later."}),
        )
        watchdogs[session_id] = watchdog
        watchdog.start(session.doctor_id)

    sender = asyncio.create_task(_pump(ws, outbox))
    try:
        while True:
            message = await _receive_frame(ws, outbox)
            if message is None:
                continue
            kind = message.get("type")
            try:
                if kind == "chat":
                    lifecycle.append_chat_message(session_id, "patient", message.get("text", ""))
                elif kind == "vitals":
                    vitals = VitalsRequest.model_validate(message)
                    lifecycle.submit_vitals(session_id, vitals.model_dump())
                elif kind == "emergency":
                    lifecycle.flag_emergency(session_id)
                elif kind == "find_doctor" and watchdog is not None:
                    if watchdog.reassign_now() == WatchdogOutcome.REASSIGNED and not watchdog.running:
                        watchdog.start(watchdog.doctor_id)
            except MediSyncError as e:
                outbox.put_nowait({"event": "error", "detail": e.message})
            except ValidationError as e:
                outbox.put_nowait({"event": "error", "detail": str(e)})
    except WebSocketDisconnect:
        pass
    finally:
        unwatch()
        sender.cancel()
        if watchdog is not None:
            watchdog.stop()
            watchdogs.pop(session_id, None)


# ---------------------------------------------------------------------------
# ROOT ENDPOINT
# ---------------------------------------------------------------------------

@app.get("/")
def root():
    """Basic health check endpoint."""
    return {"message": "MediSync Consultation Backend is running!"}
