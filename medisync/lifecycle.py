"""
lifecycle.py
============
Consultation session lifecycle: REQUESTED -> ACTIVE -> COMPLETED.

Reassignment is an internal step of an ACTIVE session: only doctor_id,
doctor_name and the reassigned flag change. Multi-step writes run as small
sagas:
 - create: write session, then claim the doctor; if the claim fails the
   session row is deleted again before the error is raised
 - complete: write prescription/end_time, then release the doctor; if the
   release fails the session stays completed and the caller gets the doctor id
"""

import datetime
import uuid
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .clock import Clock, now_ms
from .db import SessionLocal
from .errors import DoctorUnavailable, InvalidInput, SessionNotFound, WriteFailed
from .log import get_logger
from .models import ChatMessage, ChatRole, ConsultationSession, SessionStatus
from .notifications import ChangeFeed, feed as default_feed
from .registry import DoctorRegistry

logger = get_logger(__name__)

VITAL_FIELDS = ("bp", "temp", "sugar", "spo2")


def session_key(session_id: str) -> str:
    return f"sessions/{session_id}"


def chat_key(session_id: str) -> str:
    return f"sessions/{session_id}/chat"


class SessionLifecycle:
    """Creates, updates and terminates consultation sessions."""

    def __init__(self, registry: DoctorRegistry, session_factory: sessionmaker = SessionLocal,
                 feed: ChangeFeed = default_feed, clock: Clock = now_ms):
        self.registry = registry
        self.session_factory = session_factory
        self.feed = feed
        self.clock = clock

    # -----------------------------------------------------------------------
    # CREATE
    # -----------------------------------------------------------------------

    def create_session(self, patient_id: str, patient_name: str, doctor_id: str, doctor_name: str,
                       symptoms: Optional[str] = None) -> str:
        """
        Write a new ACTIVE session, then lock the doctor to it.

        Raises DoctorUnavailable if the doctor was claimed by someone else in
        the meantime, WriteFailed if either write is rejected. In both cases
        no session is left behind.
        """
        session_id = uuid.uuid4().hex
        session = ConsultationSession(
            id=session_id,
            patient_id=patient_id,
            doctor_id=doctor_id,
            patient_name=patient_name,
            doctor_name=doctor_name,
            symptoms=symptoms,
            emergency=False,
            start_time=self.clock(),
            status=SessionStatus.ACTIVE,
        )

        db = self.session_factory()
        try:
            db.add(session)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise WriteFailed(f"Could not create session: {e}") from e
        finally:
            db.close()

        try:
            claimed = self.registry.claim_doctor(doctor_id, session_id)
        except WriteFailed:
            self._discard_session(session_id)
            raise
        if not claimed:
            self._discard_session(session_id)
            raise DoctorUnavailable(doctor_id)

        logger.info("Session %s created: patient %s -> doctor %s", session_id, patient_id, doctor_id)
        self._publish(session_id, session)
        return session_id

    def _discard_session(self, session_id: str):
        """Compensation for a failed create. Best-effort."""
        db = self.session_factory()
        try:
            db.query(ConsultationSession).filter(ConsultationSession.id == session_id).delete()
            db.commit()
            logger.warning("Session %s discarded after failed doctor lock", session_id)
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Could not discard orphaned session %s", session_id)
        finally:
            db.close()

    # -----------------------------------------------------------------------
    # READS
    # -----------------------------------------------------------------------

    def find_session(self, session_id: str) -> Optional[ConsultationSession]:
        db = self.session_factory()
        try:
            return db.get(ConsultationSession, session_id)
        finally:
            db.close()

    def get_session(self, session_id: str) -> ConsultationSession:
        session = self.find_session(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def get_chat(self, session_id: str) -> List[ChatMessage]:
        """Chat messages in arrival order."""
        db = self.session_factory()
        try:
            return (
                db.query(ChatMessage)
                .filter(ChatMessage.session_id == session_id)
                .order_by(ChatMessage.id)
                .all()
            )
        finally:
            db.close()

    def find_active_session(self, patient_id: str) -> Optional[ConsultationSession]:
        """The patient's ACTIVE session, if one is still open (used to resume)."""
        db = self.session_factory()
        try:
            return (
                db.query(ConsultationSession)
                .filter(
                    ConsultationSession.patient_id == patient_id,
                    ConsultationSession.status == SessionStatus.ACTIVE,
                    ConsultationSession.end_time.is_(None),
                )
                .order_by(ConsultationSession.start_time.desc())
                .first()
            )
        finally:
            db.close()

    def patient_history(self, patient_id: str) -> List[ConsultationSession]:
        """Finished sessions, most recently ended first."""
        db = self.session_factory()
        try:
            return (
                db.query(ConsultationSession)
                .filter(
                    ConsultationSession.patient_id == patient_id,
                    ConsultationSession.end_time.isnot(None),
                )
                .order_by(ConsultationSession.end_time.desc())
                .all()
            )
        finally:
            db.close()

    def doctor_history(self, doctor_id: str, limit: int = 10) -> List[ConsultationSession]:
        db = self.session_factory()
        try:
            return (
                db.query(ConsultationSession)
                .filter(ConsultationSession.doctor_id == doctor_id)
                .order_by(ConsultationSession.start_time.desc())
                .limit(limit)
                .all()
            )
        finally:
            db.close()

    def doctor_stats(self, doctor_id: str, limit: int = 10) -> Dict[str, int]:
        """Counts over the doctor's recent sessions: total, started today, emergencies."""
        sessions = self.doctor_history(doctor_id, limit)
        midnight = datetime.datetime.combine(datetime.date.today(), datetime.time.min)
        today_start = int(midnight.timestamp() * 1000)
        return {
            "total": len(sessions),
            "today": sum(1 for s in sessions if (s.start_time or 0) >= today_start),
            "emergencies": sum(1 for s in sessions if s.emergency),
        }

    # -----------------------------------------------------------------------
    # UPDATES
    # -----------------------------------------------------------------------

    def append_chat_message(self, session_id: str, role: str, text: str) -> ChatMessage:
        text = (text or "").strip()
        if not text:
            raise InvalidInput("Message text cannot be empty")
        try:
            role = ChatRole(role)
        except ValueError:
            raise InvalidInput(f"Unknown chat role: {role}")

        session = self.get_session(session_id)
        if session.status != SessionStatus.ACTIVE:
            raise InvalidInput(f"Session {session_id} is already completed")

        message = ChatMessage(session_id=session_id, role=role, text=text, timestamp=self.clock())
        db = self.session_factory()
        try:
            db.add(message)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise WriteFailed(f"Could not append message to session {session_id}: {e}") from e
        finally:
            db.close()

        self.feed.publish(chat_key(session_id), self.get_chat(session_id))
        return message

    def submit_vitals(self, session_id: str, vitals: Dict) -> Dict:
        """Replace health_data with the four readings plus updated_at."""
        health_data = {name: vitals.get(name) for name in VITAL_FIELDS}
        health_data["updated_at"] = self.clock()
        self._update_session(session_id, health_data=health_data)
        return health_data

    def flag_emergency(self, session_id: str) -> ConsultationSession:
        """Advisory only: highlights the session, does not affect matching."""
        session = self._update_session(session_id, emergency=True)
        logger.warning("Emergency flagged on session %s", session_id)
        return session

    def reassign(self, session_id: str, new_doctor_id: str, new_doctor_name: str) -> ConsultationSession:
        """
        Move an ACTIVE session to another doctor, keeping chat and vitals.

        The new doctor is claimed first so a lost race changes nothing. The
        previous doctor is released best-effort; a missing or unreachable
        record is logged and ignored.
        """
        session = self.get_session(session_id)
        if session.status != SessionStatus.ACTIVE:
            raise InvalidInput(f"Session {session_id} is already completed")
        previous_doctor_id = session.doctor_id

        if new_doctor_id != previous_doctor_id:
            if not self.registry.claim_doctor(new_doctor_id, session_id):
                raise DoctorUnavailable(new_doctor_id)

        try:
            session = self._update_session(
                session_id, doctor_id=new_doctor_id, doctor_name=new_doctor_name, reassigned=True
            )
        except WriteFailed:
            self._release_quietly(new_doctor_id, session_id)
            raise

        if new_doctor_id != previous_doctor_id:
            self._release_quietly(previous_doctor_id, session_id)

        logger.info("Session %s reassigned: doctor %s -> %s", session_id, previous_doctor_id, new_doctor_id)
        return session

    def complete_session(self, session_id: str, doctor_id: str, prescription: str) -> ConsultationSession:
        """
        Record the prescription, close the session and free the doctor.
        Nothing is written when the prescription is empty.
        """
        prescription = (prescription or "").strip()
        if not prescription:
            raise InvalidInput("Please enter a prescription before ending the session.")

        session = self.get_session(session_id)
        if session.status == SessionStatus.COMPLETED:
            raise InvalidInput(f"Session {session_id} is already completed")
        if session.doctor_id != doctor_id:
            raise InvalidInput(f"Doctor {doctor_id} is not assigned to session {session_id}")

        session = self._update_session(
            session_id,
            prescription=prescription,
            end_time=self.clock(),
            status=SessionStatus.COMPLETED,
        )

        try:
            self.registry.release_doctor(doctor_id, session_id=session_id)
        except WriteFailed as e:
            raise WriteFailed(
                f"Session {session_id} completed but doctor {doctor_id} is still marked busy: {e.message}",
                doctor_id=doctor_id,
            ) from e

        logger.info("Session %s completed by doctor %s", session_id, doctor_id)
        return session

    # -----------------------------------------------------------------------
    # INTERNALS
    # -----------------------------------------------------------------------

    def _update_session(self, session_id: str, **fields) -> ConsultationSession:
        db = self.session_factory()
        try:
            session = db.get(ConsultationSession, session_id)
            if session is None:
                raise SessionNotFound(session_id)
            for name, value in fields.items():
                setattr(session, name, value)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise WriteFailed(f"Update of session {session_id} failed: {e}") from e
        finally:
            db.close()
        self._publish(session_id, session)
        return session

    def _release_quietly(self, doctor_id: str, session_id: str):
        try:
            self.registry.release_doctor(doctor_id, session_id=session_id)
        except WriteFailed as e:
            logger.warning("Could not release doctor %s from session %s: %s", doctor_id, session_id, e.message)

    def _publish(self, session_id: str, session: ConsultationSession):
        self.feed.publish(session_key(session_id), session)
