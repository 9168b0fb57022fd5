"""
schemas.py
==========
Pydantic models used for validating incoming requests and
structuring outgoing API responses.
"""

from pydantic import BaseModel, ConfigDict
from typing import Dict, List, Optional, Union

from .models import ChatRole, DoctorStatus, SessionStatus


# ---------------------------------------------------------------------------
# REQUESTS
# ---------------------------------------------------------------------------

class DoctorCreate(BaseModel):
    """Request body for registering a doctor (starts unapproved)."""
    name: str
    id: Optional[str] = None
    email: Optional[str] = None
    specialty: Optional[str] = None
    pushover_user: Optional[str] = None


class PatientCreate(BaseModel):
    name: str
    id: Optional[str] = None
    email: Optional[str] = None
    age: Optional[int] = None
    blood_group: Optional[str] = None


class ConsultRequest(BaseModel):
    """Request body for asking for a consultation."""
    symptoms: str
    patient_name: Optional[str] = None


class ChatRequest(BaseModel):
    role: ChatRole
    text: str


class VitalsRequest(BaseModel):
    bp: Optional[str] = None
    temp: Optional[Union[float, str]] = None
    sugar: Optional[Union[float, str]] = None
    spo2: Optional[Union[float, str]] = None


class CompleteRequest(BaseModel):
    """Request body for ending a session with a prescription."""
    doctor_id: str
    prescription: str


# ---------------------------------------------------------------------------
# RESPONSES
# ---------------------------------------------------------------------------

class DoctorOut(BaseModel):
    id: str
    name: str
    email: Optional[str] = None
    specialty: Optional[str] = None
    approved: bool
    blocked: bool
    status: DoctorStatus
    busy: bool
    last_active_time: int
    active_session_id: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class PatientOut(BaseModel):
    id: str
    name: str
    email: Optional[str] = None
    age: Optional[int] = None
    blood_group: Optional[str] = None
    blocked: bool = False

    model_config = ConfigDict(from_attributes=True)


class ChatMessageOut(BaseModel):
    role: ChatRole
    text: str
    timestamp: int

    model_config = ConfigDict(from_attributes=True)


class SessionOut(BaseModel):
    """Response model for a consultation session."""
    id: str
    patient_id: str
    doctor_id: str
    patient_name: Optional[str] = None
    doctor_name: Optional[str] = None
    symptoms: Optional[str] = None
    emergency: bool = False
    start_time: int
    end_time: Optional[int] = None
    status: SessionStatus
    health_data: Optional[Dict] = None
    prescription: Optional[str] = None
    reassigned: Optional[bool] = None
    chat: List[ChatMessageOut] = []

    model_config = ConfigDict(from_attributes=True)


class ConsultResponse(BaseModel):
    session_id: str
    doctor_id: str
    doctor_name: str
    message: str


class WatchdogResponse(BaseModel):
    outcome: str
    doctor_id: Optional[str] = None


class DoctorHistoryResponse(BaseModel):
    sessions: List[SessionOut]
    stats: Dict[str, int]


def session_out(session, chat=None) -> SessionOut:
    """Build a SessionOut from an ORM session plus its chat rows."""
    out = SessionOut.model_validate(session, from_attributes=True)
    if chat is not None:
        out.chat = [ChatMessageOut.model_validate(m) for m in chat]
    return out
