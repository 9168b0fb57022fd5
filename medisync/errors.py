"""
errors.py
=========
Exception taxonomy for consultation operations.

Core operations raise these; the FastAPI layer maps each one to an HTTP
status through `status_code`.
"""

from typing import Optional


class MediSyncError(Exception):
    """Base class for every error raised by the consultation core."""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInput(MediSyncError):
    """Malformed input, rejected before any write is attempted."""
    status_code = 422


class SessionNotFound(MediSyncError):
    status_code = 404

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class DoctorNotFound(MediSyncError):
    status_code = 404

    def __init__(self, doctor_id: str):
        super().__init__(f"Doctor {doctor_id} not found")
        self.doctor_id = doctor_id


class NoDoctorAvailable(MediSyncError):
    """No doctor satisfies the eligibility predicate right now."""
    status_code = 503

    def __init__(self, message: str = "No doctors available right now. Please try again later."):
        super().__init__(message)


class DoctorUnavailable(MediSyncError):
    """The conditional claim lost: the doctor was locked by someone else."""
    status_code = 409

    def __init__(self, doctor_id: str):
        super().__init__(f"Doctor {doctor_id} is no longer available")
        self.doctor_id = doctor_id


class WriteFailed(MediSyncError):
    """The store rejected a write. Partially applied steps are described in `message`."""
    status_code = 503

    def __init__(self, message: str, doctor_id: Optional[str] = None):
        super().__init__(message)
        self.doctor_id = doctor_id


class PatientNotFound(MediSyncError):
    status_code = 404

    def __init__(self, patient_id: str):
        super().__init__(f"Patient {patient_id} not found")
        self.patient_id = patient_id


class PatientBlocked(MediSyncError):
    """Blocked patients may not request consultations."""
    status_code = 403

    def __init__(self, patient_id: str):
        super().__init__("Your account has been blocked. Please contact the administrator.")
        self.patient_id = patient_id
