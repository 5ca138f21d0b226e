"""
Appointment conflict resolution over a snapshot of existing appointments.

A proposed slot that overlaps an appointment for the same provider or
resource is pushed forward by its own duration until it fits.  The
resolver neither fetches nor locks; callers take a fresh snapshot right
before resolving.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from app.tebra.errors import SlotUnavailableError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 24

INACTIVE_STATUSES = frozenset({"cancelled", "canceled", "deleted", "noshow", "no_show", "rescheduled"})


@dataclass(frozen=True)
class Slot:
    start: datetime
    end: datetime
    provider_id: Optional[str] = None
    resource_id: Optional[str] = None
    patient_id: Optional[str] = None

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def shifted_by(self, delta: timedelta) -> "Slot":
        return Slot(
            start=self.start + delta,
            end=self.end + delta,
            provider_id=self.provider_id,
            resource_id=self.resource_id,
            patient_id=self.patient_id,
        )


@dataclass(frozen=True)
class ExistingAppointment:
    start: datetime
    end: datetime
    provider_id: Optional[str] = None
    resource_id: Optional[str] = None
    patient_id: Optional[str] = None
    status: Optional[str] = None
    id: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return (self.status or "").strip().lower().replace(" ", "") not in INACTIVE_STATUSES


@dataclass(frozen=True)
class Resolution:
    slot: Slot
    shifted: bool
    attempts: int


def overlaps(start1: datetime, end1: datetime, start2: datetime, end2: datetime) -> bool:
    """Half-open interval overlap: back-to-back slots do not conflict."""
    return start1 < end2 and start2 < end1


def _same_scope(candidate: Slot, existing: ExistingAppointment) -> bool:
    if candidate.provider_id or candidate.resource_id:
        if candidate.provider_id and existing.provider_id and str(candidate.provider_id) == str(existing.provider_id):
            return True
        if candidate.resource_id and existing.resource_id and str(candidate.resource_id) == str(existing.resource_id):
            return True
        return False
    # No provider or resource on the candidate: the patient is the scope
    return bool(candidate.patient_id and existing.patient_id and str(candidate.patient_id) == str(existing.patient_id))


def find_conflict(candidate: Slot, existing: Iterable[ExistingAppointment]) -> Optional[ExistingAppointment]:
    for appt in existing:
        if not appt.is_active or appt.start is None or appt.end is None:
            continue
        if _same_scope(candidate, appt) and overlaps(candidate.start, candidate.end, appt.start, appt.end):
            return appt
    return None


def resolve(
    candidate: Slot,
    existing: Iterable[ExistingAppointment],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> Resolution:
    """Return the first conflict-free slot at or after ``candidate``.

    Raises SlotUnavailableError after ``max_attempts`` shifts.
    """
    if candidate.end <= candidate.start:
        raise ValidationError("Appointment end must be after its start")

    snapshot = list(existing)
    step = candidate.duration
    slot = candidate

    for attempt in range(max_attempts + 1):
        conflict = find_conflict(slot, snapshot)
        if conflict is None:
            if attempt:
                logger.info(
                    "Appointment slot shifted %d time(s): %s -> %s",
                    attempt, candidate.start.isoformat(), slot.start.isoformat(),
                )
            return Resolution(slot=slot, shifted=attempt > 0, attempts=attempt)
        slot = slot.shifted_by(step)

    raise SlotUnavailableError(
        f"No free slot within {max_attempts} shifts of {candidate.start.isoformat()}"
    )
