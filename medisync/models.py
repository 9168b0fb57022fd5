"""
models.py
=========
SQLAlchemy ORM models for the MediSync consultation store.
Contains tables for:
 - Doctor (registry record with liveness and lock fields)
 - Patient
 - ConsultationSession
 - ChatMessage (append-only, ordered by id)
 - DoctorPresence (ephemeral liveness marker)
"""

from sqlalchemy import Column, Integer, BigInteger, String, DateTime, Text, Boolean, ForeignKey, Enum, JSON
from sqlalchemy.orm import declarative_base
import datetime
import enum

# SQLAlchemy Base class
Base = declarative_base()

# ---------------------------------------------------------------------------
# ENUM DEFINITIONS
# ---------------------------------------------------------------------------

class DoctorStatus(str, enum.Enum):
    """Online state written by the heartbeat and the disconnect fallback."""
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class SessionStatus(str, enum.Enum):
    """Externally visible consultation state."""
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"


class ChatRole(str, enum.Enum):
    patient = "patient"
    doctor = "doctor"


# ---------------------------------------------------------------------------
# TABLE DEFINITIONS
# ---------------------------------------------------------------------------

class Doctor(Base):
    """
    Doctor registry record.
    busy and active_session_id are always written together.
    """
    __tablename__ = "doctors"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    specialty = Column(String, nullable=True)
    approved = Column(Boolean, default=False, nullable=False)
    blocked = Column(Boolean, default=False, nullable=False)
    status = Column(Enum(DoctorStatus), default=DoctorStatus.INACTIVE, nullable=False)
    busy = Column(Boolean, default=False, nullable=False)
    last_active_time = Column(BigInteger, default=0, nullable=False)
    active_session_id = Column(String, nullable=True)
    pushover_user = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)


class Patient(Base):
    """Stores patient profile data used for display and history."""
    __tablename__ = "patients"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    age = Column(Integer, nullable=True)
    blood_group = Column(String, nullable=True)
    blocked = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)


class ConsultationSession(Base):
    """One consultation, from request to prescription. Kept as history."""
    __tablename__ = "sessions"

    id = Column(String, primary_key=True)
    patient_id = Column(String, nullable=False, index=True)
    doctor_id = Column(String, nullable=False, index=True)
    patient_name = Column(String, nullable=True)
    doctor_name = Column(String, nullable=True)
    symptoms = Column(Text, nullable=True)
    emergency = Column(Boolean, default=False, nullable=False)
    start_time = Column(BigInteger, nullable=False)
    end_time = Column(BigInteger, nullable=True)
    status = Column(Enum(SessionStatus), default=SessionStatus.ACTIVE, nullable=False)
    health_data = Column(JSON, nullable=True)  # {bp, temp, sugar, spo2, updated_at}
    prescription = Column(Text, nullable=True)
    reassigned = Column(Boolean, nullable=True)


class ChatMessage(Base):
    """A single chat line. Never updated after insert."""
    __tablename__ = "chat_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(Enum(ChatRole), nullable=False)
    text = Column(Text, nullable=False)
    timestamp = Column(BigInteger, nullable=False)


class DoctorPresence(Base):
    """Ephemeral liveness marker, removed when the doctor's connection drops."""
    __tablename__ = "doctor_presence"

    doctor_id = Column(String, primary_key=True)
    status = Column(Enum(DoctorStatus), default=DoctorStatus.ACTIVE, nullable=False)
    last_active_time = Column(BigInteger, nullable=False)
