"""
matching.py
===========
Doctor selection for new and reassigned consultations.

A doctor is eligible when they are approved, not blocked, marked ACTIVE,
not busy, and heartbeated within the staleness threshold. Selection is the
first eligible doctor in the order the registry returned them; there is no
ranking, and emergency sessions get no priority.
"""

from typing import AbstractSet, Mapping, Optional, Tuple

from .models import Doctor, DoctorStatus

# Heartbeats older than this are treated as a dead connection
STALENESS_THRESHOLD_MS = 30000


def is_eligible(doctor: Optional[Doctor], now: int, threshold_ms: int = STALENESS_THRESHOLD_MS) -> bool:
    """Return True if `doctor` can take a new consultation at time `now`."""
    if doctor is None:
        return False
    last_active = doctor.last_active_time or 0
    return (
        doctor.approved is True
        and doctor.blocked is not True
        and doctor.status == DoctorStatus.ACTIVE
        and doctor.busy is False
        and (now - last_active) < threshold_ms
    )


def find_available_doctor(
    doctors: Mapping[str, Doctor],
    now: int,
    excluding: AbstractSet[str] = frozenset(),
    threshold_ms: int = STALENESS_THRESHOLD_MS,
) -> Optional[Tuple[str, Doctor]]:
    """
    Return (doctor_id, doctor) for the first eligible doctor not in
    `excluding`, or None when nobody qualifies.
    """
    for doctor_id, doctor in doctors.items():
        if doctor_id in excluding:
            continue
        if is_eligible(doctor, now, threshold_ms):
            return doctor_id, doctor
    return None
