"""
watchdog.py
===========
Patient-side doctor liveness check for one ACTIVE session.

Every `interval_s` seconds the watchdog reads the assigned doctor. A missing
record, an INACTIVE status or a heartbeat older than the staleness threshold
counts as a disconnect: the old doctor is marked offline (best-effort), a
replacement is matched and the session reassigned, and the watchdog carries
on against the new doctor. When nobody is available the session stays
ACTIVE with its doctor unchanged and the watchdog stops until the patient
asks for a new doctor.
"""

import asyncio
import enum
from typing import Callable, Optional, Set

from .clock import Clock, now_ms
from .errors import DoctorUnavailable, MediSyncError, WriteFailed
from .lifecycle import SessionLifecycle
from .log import get_logger
from .matching import STALENESS_THRESHOLD_MS, find_available_doctor
from .models import Doctor, DoctorStatus, SessionStatus
from .registry import DoctorRegistry

logger = get_logger(__name__)


class WatchdogOutcome(str, enum.Enum):
    ALIVE = "alive"
    REASSIGNED = "reassigned"
    NO_DOCTOR = "no_doctor"
    SESSION_CLOSED = "session_closed"


class LivenessWatchdog:
    """
    Single-slot polling task: at most one check is outstanding per session.
    start() must be called from inside a running event loop; check() can be
    called directly.
    """

    def __init__(self, session_id: str, registry: DoctorRegistry, lifecycle: SessionLifecycle,
                 interval_s: float = 10.0, threshold_ms: int = STALENESS_THRESHOLD_MS,
                 clock: Clock = now_ms, max_attempts: int = 3,
                 on_reassigned: Optional[Callable[[str, str], None]] = None,
                 on_no_doctor: Optional[Callable[[], None]] = None):
        self.session_id = session_id
        self.registry = registry
        self.lifecycle = lifecycle
        self.interval_s = interval_s
        self.threshold_ms = threshold_ms
        self.clock = clock
        self.max_attempts = max_attempts
        self.on_reassigned = on_reassigned
        self.on_no_doctor = on_no_doctor
        self.doctor_id: Optional[str] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, doctor_id: str):
        self._cancel_task()
        self.doctor_id = doctor_id
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.debug("Watchdog for session %s watching doctor %s", self.session_id, doctor_id)

    def stop(self):
        self._cancel_task()

    def is_stale(self, doctor: Optional[Doctor], now: int) -> bool:
        if doctor is None:
            return True
        if doctor.status == DoctorStatus.INACTIVE:
            return True
        return (now - (doctor.last_active_time or 0)) > self.threshold_ms

    def check(self) -> WatchdogOutcome:
        """Run one liveness check and handle a disconnect if there is one."""
        session = self.lifecycle.find_session(self.session_id)
        if session is None or session.status != SessionStatus.ACTIVE:
            self._cancel_task()
            return WatchdogOutcome.SESSION_CLOSED
        # follow reassignments made elsewhere (manual retry, another watcher)
        self.doctor_id = session.doctor_id

        doctor = self.registry.get_doctor(self.doctor_id)
        if not self.is_stale(doctor, self.clock()):
            return WatchdogOutcome.ALIVE

        logger.warning("Doctor %s looks disconnected from session %s", self.doctor_id, self.session_id)
        was_running = self.running
        self._cancel_task()
        self._mark_offline(self.doctor_id)
        outcome = self.reassign_now()
        if outcome == WatchdogOutcome.REASSIGNED and was_running:
            self._task = asyncio.get_running_loop().create_task(self._run())
        return outcome

    def reassign_now(self) -> WatchdogOutcome:
        """
        Match a doctor other than the current one and move the session to them.
        Used after a detected disconnect and for the patient's manual retry.
        """
        excluded: Set[str] = {self.doctor_id} if self.doctor_id else set()
        for _ in range(self.max_attempts):
            match = find_available_doctor(
                self.registry.list_doctors(), self.clock(), excluding=excluded, threshold_ms=self.threshold_ms
            )
            if match is None:
                break
            new_id, new_doctor = match
            try:
                self.lifecycle.reassign(self.session_id, new_id, new_doctor.name)
            except DoctorUnavailable:
                excluded.add(new_id)
                continue
            self.doctor_id = new_id
            if self.on_reassigned:
                self.on_reassigned(new_id, new_doctor.name)
            return WatchdogOutcome.REASSIGNED

        logger.info("No replacement doctor for session %s", self.session_id)
        if self.on_no_doctor:
            self.on_no_doctor()
        return WatchdogOutcome.NO_DOCTOR

    # -----------------------------------------------------------------------
    # INTERNALS
    # -----------------------------------------------------------------------

    async def _run(self):
        me = asyncio.current_task()
        while self._task is me:
            await asyncio.sleep(self.interval_s)
            try:
                self.check()
            except MediSyncError as e:
                logger.error("Watchdog for session %s stopped: %s", self.session_id, e.message)
                if self._task is me:
                    self._task = None
                return

    def _cancel_task(self):
        task, self._task = self._task, None
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()

    def _mark_offline(self, doctor_id: str):
        try:
            self.registry.mark_offline(doctor_id)
        except WriteFailed as e:
            logger.warning("Could not mark doctor %s offline: %s", doctor_id, e.message)
