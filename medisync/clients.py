"""
clients.py
==========
Per-actor consultation context.

PatientClient and DoctorClient own the state a panel used to keep in page
globals (current session, assigned doctor, timers). The identity is passed
in by whoever authenticated the user; nothing here listens for login events.
"""

from dataclasses import dataclass
from typing import Callable, Optional

from .clock import Clock, now_ms
from .config import Settings
from .errors import DoctorUnavailable, InvalidInput, NoDoctorAvailable
from .heartbeat import HeartbeatEmitter
from .lifecycle import SessionLifecycle, session_key
from .log import get_logger
from .matching import STALENESS_THRESHOLD_MS, find_available_doctor
from .models import ConsultationSession, Doctor, SessionStatus
from .notifications import PresenceConnection, Unsubscribe
from .registry import DoctorRegistry
from .watchdog import LivenessWatchdog, WatchdogOutcome

logger = get_logger(__name__)


@dataclass
class ConsultationContext:
    session_id: str
    doctor_id: str
    doctor_name: str


def request_consultation(registry: DoctorRegistry, lifecycle: SessionLifecycle, patient_id: str,
                         patient_name: str, symptoms: str, clock: Clock = now_ms, attempts: int = 3,
                         threshold_ms: int = STALENESS_THRESHOLD_MS) -> ConsultationContext:
    """
    Match an eligible doctor and open a session with them.

    A doctor lost to a concurrent claim is excluded and matching runs again,
    up to `attempts` times. Raises NoDoctorAvailable when nobody qualifies;
    in that case nothing has been written.
    """
    symptoms = (symptoms or "").strip()
    if not symptoms:
        raise InvalidInput("Please describe your symptoms.")

    excluded = set()
    for _ in range(attempts):
        match = find_available_doctor(registry.list_doctors(), clock(), excluding=excluded,
                                      threshold_ms=threshold_ms)
        if match is None:
            break
        doctor_id, doctor = match
        try:
            session_id = lifecycle.create_session(patient_id, patient_name, doctor_id, doctor.name, symptoms)
        except DoctorUnavailable:
            logger.info("Doctor %s was claimed concurrently, matching again", doctor_id)
            excluded.add(doctor_id)
            continue
        return ConsultationContext(session_id=session_id, doctor_id=doctor_id, doctor_name=doctor.name)

    raise NoDoctorAvailable()


# ---------------------------------------------------------------------------
# PATIENT SIDE
# ---------------------------------------------------------------------------

class PatientClient:
    """
    A patient's consultation context. Methods that start the watchdog must be
    called from inside a running event loop.
    """

    def __init__(self, patient_id: str, patient_name: str, registry: DoctorRegistry,
                 lifecycle: SessionLifecycle, settings: Optional[Settings] = None, clock: Clock = now_ms,
                 on_notice: Optional[Callable[[str], None]] = None,
                 on_session_update: Optional[Callable[[ConsultationSession], None]] = None):
        self.patient_id = patient_id
        self.patient_name = patient_name
        self.registry = registry
        self.lifecycle = lifecycle
        self.settings = settings or Settings()
        self.clock = clock
        self.on_notice = on_notice
        self.on_session_update = on_session_update
        self.context: Optional[ConsultationContext] = None
        self.watchdog: Optional[LivenessWatchdog] = None
        self._unwatch: Optional[Unsubscribe] = None

    def request_consultation(self, symptoms: str) -> ConsultationContext:
        if self.context is not None:
            raise InvalidInput("A consultation is already in progress")
        context = request_consultation(
            self.registry, self.lifecycle, self.patient_id, self.patient_name, symptoms,
            clock=self.clock, attempts=self.settings.match_attempts,
            threshold_ms=self.settings.staleness_threshold_ms,
        )
        self._attach(context)
        return context

    def resume(self) -> Optional[ConsultationContext]:
        """Reattach to a session left ACTIVE by an earlier visit."""
        session = self.lifecycle.find_active_session(self.patient_id)
        if session is None:
            return None
        context = ConsultationContext(session.id, session.doctor_id, session.doctor_name)
        self._attach(context)
        return context

    def send_message(self, text: str):
        return self.lifecycle.append_chat_message(self._require_context().session_id, "patient", text)

    def submit_vitals(self, bp=None, temp=None, sugar=None, spo2=None) -> dict:
        vitals = {"bp": bp, "temp": temp, "sugar": sugar, "spo2": spo2}
        return self.lifecycle.submit_vitals(self._require_context().session_id, vitals)

    def flag_emergency(self):
        session = self.lifecycle.flag_emergency(self._require_context().session_id)
        self._notice("Emergency Flagged!")
        return session

    def find_new_doctor(self) -> WatchdogOutcome:
        """Manual retry after the watchdog reported that no doctor was available."""
        self._require_context()
        outcome = self.watchdog.reassign_now()
        if outcome == WatchdogOutcome.REASSIGNED and not self.watchdog.running:
            self.watchdog.start(self.context.doctor_id)
        return outcome

    def close(self):
        self._detach()
        self.context = None

    # -----------------------------------------------------------------------
    # INTERNALS
    # -----------------------------------------------------------------------

    def _attach(self, context: ConsultationContext):
        self.context = context
        self.watchdog = LivenessWatchdog(
            context.session_id, self.registry, self.lifecycle,
            interval_s=self.settings.watchdog_interval_s,
            threshold_ms=self.settings.staleness_threshold_ms,
            clock=self.clock,
            max_attempts=self.settings.match_attempts,
            on_reassigned=self._on_reassigned,
            on_no_doctor=self._on_no_doctor,
        )
        self._unwatch = self.lifecycle.feed.subscribe(session_key(context.session_id), self._on_session)
        self.watchdog.start(context.doctor_id)

    def _detach(self):
        if self.watchdog is not None:
            self.watchdog.stop()
        if self._unwatch is not None:
            self._unwatch()
            self._unwatch = None

    def _on_session(self, _key: str, session: Optional[ConsultationSession]):
        if session is None or self.context is None:
            return
        if self.on_session_update:
            self.on_session_update(session)
        if session.end_time or session.status == SessionStatus.COMPLETED:
            self._detach()
            self.context = None
            self._notice("Consultation ended. Prescription received.")

    def _on_reassigned(self, doctor_id: str, doctor_name: str):
        self.context.doctor_id = doctor_id
        self.context.doctor_name = doctor_name
        self._notice(f"Your doctor disconnected. You are now connected to Dr. {doctor_name}.")

    def _on_no_doctor(self):
        self._notice("Your doctor disconnected and no other doctor is available right now. "
                     "Use 'find new doctor' to try again.")

    def _require_context(self) -> ConsultationContext:
        if self.context is None:
            raise InvalidInput("No active consultation")
        return self.context

    def _notice(self, message: str):
        logger.info("Patient %s: %s", self.patient_id, message)
        if self.on_notice:
            self.on_notice(message)


# ---------------------------------------------------------------------------
# DOCTOR SIDE
# ---------------------------------------------------------------------------

class DoctorClient:
    """
    An online doctor's context: heartbeat plus a watch on their own record
    that loads each newly assigned session.
    """

    def __init__(self, doctor_id: str, registry: DoctorRegistry, lifecycle: SessionLifecycle,
                 connection: Optional[PresenceConnection] = None, settings: Optional[Settings] = None,
                 clock: Clock = now_ms, on_status: Optional[Callable[[str], None]] = None,
                 on_session: Optional[Callable[[Optional[ConsultationSession]], None]] = None):
        self.doctor_id = doctor_id
        self.registry = registry
        self.lifecycle = lifecycle
        self.connection = connection or PresenceConnection(doctor_id)
        self.settings = settings or Settings()
        self.clock = clock
        self.on_status = on_status
        self.on_session = on_session
        self.current_session_id: Optional[str] = None
        self.heartbeat = HeartbeatEmitter(
            doctor_id, registry, self.connection,
            interval_s=self.settings.heartbeat_interval_s,
            on_beat=lambda _doctor: self._status("ONLINE"),
            clock=clock,
        )
        self._unwatch: Optional[Unsubscribe] = None

    def go_online(self):
        """Start the heartbeat and follow session assignments. Needs a running event loop."""
        self._unwatch = self.registry.watch_doctor(self.doctor_id, self._on_record)
        self.heartbeat.start()
        self._on_record(self.registry.get_doctor(self.doctor_id))

    def send_message(self, text: str):
        return self.lifecycle.append_chat_message(self._require_session(), "doctor", text)

    def complete_session(self, prescription: str) -> ConsultationSession:
        session = self.lifecycle.complete_session(self._require_session(), self.doctor_id, prescription)
        self.current_session_id = None
        if self.on_session:
            self.on_session(None)
        return session

    def logout(self):
        if self._unwatch is not None:
            self._unwatch()
            self._unwatch = None
        self.heartbeat.stop()
        self.current_session_id = None
        self._status("OFFLINE")

    # -----------------------------------------------------------------------
    # INTERNALS
    # -----------------------------------------------------------------------

    def _on_record(self, doctor: Optional[Doctor]):
        if doctor is None:
            self.current_session_id = None
            return

        assigned = doctor.active_session_id
        if assigned and assigned != self.current_session_id:
            session = self.lifecycle.find_session(assigned)
            if session is not None and session.status == SessionStatus.ACTIVE and not session.end_time:
                self.current_session_id = assigned
                logger.info("Doctor %s: new session assigned %s", self.doctor_id, assigned)
                if self.on_session:
                    self.on_session(session)
            else:
                # lock points at a finished or missing session
                logger.info("Doctor %s: clearing stale lock on %s", self.doctor_id, assigned)
                self.current_session_id = None
                self.registry.release_doctor(self.doctor_id, session_id=assigned)
        elif not assigned and self.current_session_id:
            logger.info("Doctor %s: session %s ended", self.doctor_id, self.current_session_id)
            self.current_session_id = None
            if self.on_session:
                self.on_session(None)

    def _require_session(self) -> str:
        if not self.current_session_id:
            raise InvalidInput("No active session found.")
        return self.current_session_id

    def _status(self, status: str):
        if self.on_status:
            self.on_status(status)
