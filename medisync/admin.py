"""
admin.py
========
Registration and the approval/block/remove workflow for doctors, patient
registration, and the counts shown on the admin dashboard.
"""

import uuid
from typing import Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from .errors import DoctorNotFound, PatientNotFound, WriteFailed
from .log import get_logger
from .models import ConsultationSession, Doctor, DoctorStatus, Patient, SessionStatus
from .registry import DoctorRegistry

logger = get_logger(__name__)


class AdminWorkflow:
    def __init__(self, registry: DoctorRegistry):
        self.registry = registry
        self.session_factory = registry.session_factory

    # -----------------------------------------------------------------------
    # DOCTORS
    # -----------------------------------------------------------------------

    def register_doctor(self, name: str, email: Optional[str] = None, specialty: Optional[str] = None,
                        pushover_user: Optional[str] = None, doctor_id: Optional[str] = None) -> Doctor:
        """New doctors start unapproved and offline."""
        doctor = self.registry.create_doctor(
            name, doctor_id=doctor_id, email=email, specialty=specialty, pushover_user=pushover_user,
            approved=False, blocked=False, status=DoctorStatus.INACTIVE, busy=False, last_active_time=0,
        )
        logger.info("Doctor %s registered (pending approval)", doctor.id)
        return doctor

    def approve_doctor(self, doctor_id: str) -> Doctor:
        return self._set(doctor_id, approved=True, blocked=False)

    def block_doctor(self, doctor_id: str) -> Doctor:
        """Blocked doctors are also taken offline and released from any session."""
        return self._set(doctor_id, blocked=True, approved=False, status=DoctorStatus.INACTIVE,
                         busy=False, active_session_id=None)

    def unblock_doctor(self, doctor_id: str) -> Doctor:
        return self._set(doctor_id, blocked=False, approved=True)

    def remove_doctor(self, doctor_id: str):
        if not self.registry.remove_doctor(doctor_id):
            raise DoctorNotFound(doctor_id)
        logger.info("Doctor %s removed", doctor_id)

    def _set(self, doctor_id: str, **fields) -> Doctor:
        doctor = self.registry.update_doctor(doctor_id, **fields)
        if doctor is None:
            raise DoctorNotFound(doctor_id)
        logger.info("Doctor %s updated: %s", doctor_id, fields)
        return doctor

    # -----------------------------------------------------------------------
    # PATIENTS
    # -----------------------------------------------------------------------

    def register_patient(self, name: str, email: Optional[str] = None, age: Optional[int] = None,
                         blood_group: Optional[str] = None, patient_id: Optional[str] = None) -> Patient:
        patient = Patient(id=patient_id or uuid.uuid4().hex, name=name, email=email, age=age,
                          blood_group=blood_group, blocked=False)
        db = self.session_factory()
        try:
            db.add(patient)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise WriteFailed(f"Could not register patient {name}: {e}") from e
        finally:
            db.close()
        return patient

    def get_patient(self, patient_id: str) -> Optional[Patient]:
        db = self.session_factory()
        try:
            return db.get(Patient, patient_id)
        finally:
            db.close()

    def set_patient_blocked(self, patient_id: str, blocked: bool) -> Patient:
        db = self.session_factory()
        try:
            patient = db.get(Patient, patient_id)
            if patient is None:
                raise PatientNotFound(patient_id)
            patient.blocked = blocked
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise WriteFailed(f"Could not update patient {patient_id}: {e}") from e
        finally:
            db.close()
        logger.info("Patient %s %s", patient_id, "blocked" if blocked else "unblocked")
        return patient

    # -----------------------------------------------------------------------
    # DASHBOARD
    # -----------------------------------------------------------------------

    def dashboard_counts(self) -> Dict[str, int]:
        doctors = list(self.registry.list_doctors().values())
        online = [d for d in doctors if d.status == DoctorStatus.ACTIVE and not d.blocked]

        db = self.session_factory()
        try:
            sessions = db.query(ConsultationSession).all()
        finally:
            db.close()

        return {
            "doctors_total": len(doctors),
            "doctors_online": len(online),
            "doctors_busy": sum(1 for d in doctors if d.busy),
            "doctors_pending": sum(1 for d in doctors if not d.approved and not d.blocked),
            "sessions_active": sum(1 for s in sessions if s.status == SessionStatus.ACTIVE),
            "sessions_completed": sum(1 for s in sessions if s.status == SessionStatus.COMPLETED),
            "emergencies": sum(1 for s in sessions if s.emergency),
        }
