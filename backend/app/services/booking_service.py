"""
Appointment booking against Tebra.

Takes a fresh GetAppointments snapshot around the requested slot, resolves
conflicts for the provider/resource, then creates (or moves) the
appointment.  A concurrent booking between snapshot and create can still
collide; Tebra is the final arbiter.
"""

import logging
from datetime import datetime, time, timedelta, timezone
from typing import Any, Optional

from app.services.conflict_resolver import ExistingAppointment, Slot, resolve
from app.tebra.errors import ValidationError
from app.tebra.records import CanonicalAppointment
from app.tebra.service import TebraService

logger = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def _snapshot_window(start: datetime, duration: timedelta, max_attempts: int) -> tuple[datetime, datetime]:
    day_start = datetime.combine(start.date(), time.min, tzinfo=start.tzinfo)
    latest_end = start + duration * (max_attempts + 1)
    day_end = datetime.combine(latest_end.date(), time.max, tzinfo=start.tzinfo)
    return day_start, day_end


def _existing(appt: CanonicalAppointment) -> Optional[ExistingAppointment]:
    if appt.start is None or appt.end is None:
        return None
    return ExistingAppointment(
        start=appt.start,
        end=appt.end,
        provider_id=appt.provider_id,
        resource_id=appt.resource_id,
        patient_id=appt.patient_id,
        status=appt.status,
        id=appt.id,
    )


async def fetch_snapshot(
    service: TebraService,
    start: datetime,
    duration: timedelta,
    max_attempts: int,
    exclude_id: Optional[str] = None,
) -> list[ExistingAppointment]:
    window_start, window_end = _snapshot_window(start, duration, max_attempts)
    result = await service.get_appointments({"StartDate": window_start, "EndDate": window_end})
    snapshot = []
    for appt in result.items:
        if exclude_id and appt.id == str(exclude_id):
            continue
        existing = _existing(appt)
        if existing is not None:
            snapshot.append(existing)
    return snapshot


async def book_appointment(
    service: TebraService,
    *,
    patient_id: str,
    start: datetime,
    end: datetime,
    provider_id: Optional[str] = None,
    resource_id: Optional[str] = None,
    appointment_reason_id: Optional[str] = None,
    service_location_id: Optional[str] = None,
    notes: Optional[str] = None,
    extra: Optional[dict[str, Any]] = None,
    max_attempts: Optional[int] = None,
) -> dict:
    """
    Book an appointment, shifting it past any double-booking.

    Returns ``{"appointment", "shifted", "start", "end"}`` so the caller can
    tell the patient when the slot moved.  Raises ValidationError (or its
    SlotUnavailableError subclass) before any create call.
    """
    if not patient_id:
        raise ValidationError("patient_id is required to book an appointment")
    start, end = _as_utc(start), _as_utc(end)
    if end <= start:
        raise ValidationError("Appointment end must be after its start")

    max_attempts = max_attempts if max_attempts is not None else service.settings.TEBRA_MAX_SLOT_SHIFTS
    candidate = Slot(
        start=start,
        end=end,
        provider_id=provider_id,
        resource_id=resource_id,
        patient_id=patient_id,
    )
    snapshot = await fetch_snapshot(service, start, candidate.duration, max_attempts)
    resolution = resolve(candidate, snapshot, max_attempts=max_attempts)
    slot = resolution.slot

    fields: dict[str, Any] = dict(extra or {})
    fields.update({
        "PatientId": patient_id,
        "ProviderId": provider_id,
        "ResourceId": resource_id or provider_id,
        "AppointmentReasonId": appointment_reason_id,
        "ServiceLocationId": service_location_id,
        "StartTime": slot.start,
        "EndTime": slot.end,
        "Notes": notes,
    })
    appointment = await service.create_appointment(fields)

    if resolution.shifted:
        logger.info(
            "Booked appointment %s shifted by %d slot(s) to %s",
            appointment.id, resolution.attempts, slot.start.isoformat(),
        )

    return {
        "appointment": appointment,
        "shifted": resolution.shifted,
        "start": slot.start,
        "end": slot.end,
    }


async def reschedule_appointment(
    service: TebraService,
    appointment_id: str,
    *,
    start: datetime,
    end: datetime,
    max_attempts: Optional[int] = None,
) -> dict:
    """Move an existing appointment, resolving conflicts the same way as booking."""
    current = await service.get_appointment(appointment_id)
    if current is None:
        raise ValidationError(f"Appointment {appointment_id} not found")

    start, end = _as_utc(start), _as_utc(end)
    if end <= start:
        raise ValidationError("Appointment end must be after its start")

    max_attempts = max_attempts if max_attempts is not None else service.settings.TEBRA_MAX_SLOT_SHIFTS
    candidate = Slot(
        start=start,
        end=end,
        provider_id=current.provider_id,
        resource_id=current.resource_id,
        patient_id=current.patient_id,
    )
    snapshot = await fetch_snapshot(service, start, candidate.duration, max_attempts, exclude_id=appointment_id)
    resolution = resolve(candidate, snapshot, max_attempts=max_attempts)

    appointment = await service.update_appointment(
        appointment_id,
        {"StartTime": resolution.slot.start, "EndTime": resolution.slot.end},
    )
    return {
        "appointment": appointment,
        "shifted": resolution.shifted,
        "start": resolution.slot.start,
        "end": resolution.slot.end,
    }
