"""
registry.py
===========
Read/write access to doctor records.

Every write commits immediately and then publishes the fresh record on the
change feed under "doctors/<id>". A missing doctor id is reported as None,
never as an exception; store failures surface as WriteFailed.
"""

import uuid
from typing import Any, Callable, Dict, Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .clock import Clock, now_ms
from .db import SessionLocal
from .errors import InvalidInput, WriteFailed
from .log import get_logger
from .models import Doctor, DoctorPresence, DoctorStatus
from .notifications import ChangeFeed, Unsubscribe, feed as default_feed

logger = get_logger(__name__)

_WRITABLE_FIELDS = {
    "name", "email", "specialty", "approved", "blocked", "status", "busy",
    "last_active_time", "active_session_id", "pushover_user",
}


def doctor_key(doctor_id: str) -> str:
    return f"doctors/{doctor_id}"


def _lock_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Keep busy and active_session_id consistent within one write."""
    fields = dict(fields)
    if "busy" in fields and not fields["busy"]:
        fields["active_session_id"] = None
    if "active_session_id" in fields:
        if fields["active_session_id"] is None:
            fields["busy"] = False
        else:
            fields["busy"] = True
    elif fields.get("busy"):
        raise InvalidInput("busy=True needs an active_session_id")
    return fields


class DoctorRegistry:
    """Accessor for doctor records. No matching or session logic lives here."""

    def __init__(self, session_factory: sessionmaker = SessionLocal, feed: ChangeFeed = default_feed,
                 clock: Clock = now_ms):
        self.session_factory = session_factory
        self.feed = feed
        self.clock = clock

    # -----------------------------------------------------------------------
    # READS
    # -----------------------------------------------------------------------

    def list_doctors(self) -> Dict[str, Doctor]:
        """All doctor records keyed by id, in store order."""
        db = self.session_factory()
        try:
            return {d.id: d for d in db.query(Doctor).all()}
        finally:
            db.close()

    def get_doctor(self, doctor_id: str) -> Optional[Doctor]:
        db = self.session_factory()
        try:
            return db.get(Doctor, doctor_id)
        finally:
            db.close()

    def watch_doctor(self, doctor_id: str, callback: Callable[[Optional[Doctor]], None]) -> Unsubscribe:
        """
        Invoke `callback` with the new record after every write to this doctor
        (None once the doctor is removed). Returns the unsubscribe function.
        """
        return self.feed.subscribe(doctor_key(doctor_id), lambda _key, value: callback(value))

    # -----------------------------------------------------------------------
    # WRITES
    # -----------------------------------------------------------------------

    def create_doctor(self, name: str, doctor_id: Optional[str] = None, **fields) -> Doctor:
        doctor = Doctor(id=doctor_id or uuid.uuid4().hex, name=name, **fields)
        db = self.session_factory()
        try:
            db.add(doctor)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise WriteFailed(f"Could not create doctor {name}: {e}") from e
        finally:
            db.close()
        created = self.get_doctor(doctor.id)
        self._publish(created.id, created)
        return created

    def update_doctor(self, doctor_id: str, **fields) -> Optional[Doctor]:
        """Merge partial fields into the record. Returns None if the doctor does not exist."""
        unknown = set(fields) - _WRITABLE_FIELDS
        if unknown:
            raise InvalidInput(f"Unknown doctor field(s): {', '.join(sorted(unknown))}")
        fields = _lock_fields(fields)

        db = self.session_factory()
        try:
            doctor = db.get(Doctor, doctor_id)
            if doctor is None:
                return None
            for name, value in fields.items():
                setattr(doctor, name, value)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise WriteFailed(f"Update of doctor {doctor_id} failed: {e}", doctor_id=doctor_id) from e
        finally:
            db.close()
        self._publish(doctor_id, doctor)
        return doctor

    def claim_doctor(self, doctor_id: str, session_id: str) -> bool:
        """
        Lock the doctor to `session_id` only if they are currently unlocked.
        Returns False when another session got there first (or the doctor is gone).
        """
        stmt = (
            update(Doctor)
            .where(Doctor.id == doctor_id, Doctor.busy.is_(False))
            .values(busy=True, active_session_id=session_id)
        )
        claimed = self._execute(stmt, doctor_id) == 1
        if claimed:
            self._publish(doctor_id)
        return claimed

    def release_doctor(self, doctor_id: str, session_id: Optional[str] = None) -> bool:
        """
        Clear busy/active_session_id. With `session_id`, only clears a lock
        held by that session.
        """
        conditions = [Doctor.id == doctor_id]
        if session_id is not None:
            conditions.append(Doctor.active_session_id == session_id)
        stmt = update(Doctor).where(*conditions).values(busy=False, active_session_id=None)
        released = self._execute(stmt, doctor_id) == 1
        if released:
            self._publish(doctor_id)
        return released

    def mark_alive(self, doctor_id: str, now: Optional[int] = None) -> Optional[Doctor]:
        """Heartbeat write: status ACTIVE, fresh timestamp, presence marker refreshed."""
        now = self.clock() if now is None else now
        db = self.session_factory()
        try:
            doctor = db.get(Doctor, doctor_id)
            if doctor is None:
                return None
            doctor.status = DoctorStatus.ACTIVE
            doctor.last_active_time = now
            db.merge(DoctorPresence(doctor_id=doctor_id, status=DoctorStatus.ACTIVE, last_active_time=now))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise WriteFailed(f"Heartbeat for doctor {doctor_id} failed: {e}", doctor_id=doctor_id) from e
        finally:
            db.close()
        self._publish(doctor_id, doctor)
        return doctor

    def mark_offline(self, doctor_id: str) -> Optional[Doctor]:
        """Status INACTIVE, lock cleared, presence marker removed."""
        db = self.session_factory()
        try:
            db.execute(delete(DoctorPresence).where(DoctorPresence.doctor_id == doctor_id))
            doctor = db.get(Doctor, doctor_id)
            if doctor is not None:
                doctor.status = DoctorStatus.INACTIVE
                doctor.busy = False
                doctor.active_session_id = None
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise WriteFailed(f"Marking doctor {doctor_id} offline failed: {e}", doctor_id=doctor_id) from e
        finally:
            db.close()
        if doctor is not None:
            logger.info("Doctor %s marked offline", doctor_id)
            self._publish(doctor_id, doctor)
        return doctor

    def get_presence(self, doctor_id: str) -> Optional[DoctorPresence]:
        db = self.session_factory()
        try:
            return db.get(DoctorPresence, doctor_id)
        finally:
            db.close()

    def remove_doctor(self, doctor_id: str) -> bool:
        """Delete the record and its presence marker. Subscribers receive None."""
        db = self.session_factory()
        try:
            db.execute(delete(DoctorPresence).where(DoctorPresence.doctor_id == doctor_id))
            removed = db.execute(delete(Doctor).where(Doctor.id == doctor_id)).rowcount == 1
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise WriteFailed(f"Removing doctor {doctor_id} failed: {e}", doctor_id=doctor_id) from e
        finally:
            db.close()
        if removed:
            self.feed.publish(doctor_key(doctor_id), None)
        return removed

    # -----------------------------------------------------------------------
    # INTERNALS
    # -----------------------------------------------------------------------

    def _execute(self, stmt, doctor_id: str) -> int:
        db = self.session_factory()
        try:
            rowcount = db.execute(stmt).rowcount
            db.commit()
            return rowcount
        except SQLAlchemyError as e:
            db.rollback()
            raise WriteFailed(f"Lock write for doctor {doctor_id} failed: {e}", doctor_id=doctor_id) from e
        finally:
            db.close()

    def _publish(self, doctor_id: str, doctor: Optional[Doctor] = None):
        if doctor is None:
            doctor = self.get_doctor(doctor_id)
        self.feed.publish(doctor_key(doctor_id), doctor)
