"""
Tebra practice API: patients, appointments, lookups and documents.

Thin layer over ``TebraService``; Tebra errors are translated to HTTP by
``tebra_error_handler`` (registered in ``app.main``).
"""

import dataclasses
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.schemas.tebra import (
    AppointmentBook,
    AppointmentUpdate,
    DocumentCreate,
    PatientCreate,
    PatientSearchParams,
    PatientUpdate,
    RecordListResponse,
)
from app.services import booking_service
from app.tebra.errors import (
    BusinessFault,
    ContractMismatchError,
    MalformedResponseError,
    TebraError,
    TransportError,
    UnsupportedOperationError,
    ValidationError,
)
from app.tebra.records import ListResult
from app.tebra.service import TebraService

logger = logging.getLogger(__name__)
router = APIRouter()

# Most specific first
TEBRA_ERROR_STATUS = (
    (ValidationError, 400),
    (BusinessFault, 502),
    (ContractMismatchError, 502),
    (MalformedResponseError, 502),
    (TransportError, 504),
    (UnsupportedOperationError, 501),
)


def tebra_error_status(exc: TebraError) -> int:
    for cls, status_code in TEBRA_ERROR_STATUS:
        if isinstance(exc, cls):
            return status_code
    return 500


async def tebra_error_handler(request: Request, exc: TebraError) -> JSONResponse:
    status_code = tebra_error_status(exc)
    if status_code >= 500:
        logger.warning(
            "Tebra error on %s %s: %s (%s)",
            request.method, request.url.path, exc.__class__.__name__, exc.message,
        )
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "error": exc.__class__.__name__},
    )


def get_tebra_service() -> TebraService:
    return TebraService()


def _record(record: Any) -> dict:
    data = dataclasses.asdict(record)
    data.pop("raw", None)
    return data


def _list(result: ListResult) -> dict:
    return {
        "items": [_record(item) for item in result.items],
        "total_count": result.total_count,
        "has_more": result.has_more,
        "next_start_key": result.next_start_key,
    }


# ---------------------------------------------------------------------------
# Patients
# ---------------------------------------------------------------------------

@router.get("/patients", response_model=RecordListResponse)
async def search_patients(
    email: str | None = Query(None, max_length=320),
    first_name: str | None = Query(None, max_length=255),
    last_name: str | None = Query(None, max_length=255),
    full_name: str | None = Query(None, max_length=255),
    service: TebraService = Depends(get_tebra_service),
):
    params = PatientSearchParams(
        email=email, first_name=first_name, last_name=last_name, full_name=full_name,
    )
    return _list(await service.search_patients(params.to_filter()))


@router.post("/patients", status_code=201)
async def create_patient(body: PatientCreate, service: TebraService = Depends(get_tebra_service)):
    patient = await service.create_patient(body.to_tebra())
    return _record(patient)


@router.get("/patients/{patient_id}")
async def get_patient(patient_id: str, service: TebraService = Depends(get_tebra_service)):
    patient = await service.get_patient(patient_id)
    if patient is None:
        raise HTTPException(status_code=404, detail="Patient not found")
    return _record(patient)


@router.put("/patients/{patient_id}")
async def update_patient(
    patient_id: str,
    body: PatientUpdate,
    service: TebraService = Depends(get_tebra_service),
):
    updates = body.to_tebra()
    if not updates:
        raise HTTPException(status_code=400, detail="No fields to update")
    return _record(await service.update_patient(patient_id, updates))


# ---------------------------------------------------------------------------
# Appointments
# ---------------------------------------------------------------------------

@router.post("/appointments", status_code=201)
async def book_appointment(body: AppointmentBook, service: TebraService = Depends(get_tebra_service)):
    """Book a slot; a double-booking is shifted forward and ``shifted`` is set."""
    result = await booking_service.book_appointment(
        service,
        patient_id=body.patient_id,
        start=body.start,
        end=body.end,
        provider_id=body.provider_id,
        resource_id=body.resource_id,
        appointment_reason_id=body.appointment_reason_id,
        service_location_id=body.service_location_id,
        notes=body.notes,
    )
    return {**result, "appointment": _record(result["appointment"])}


@router.get("/appointments", response_model=RecordListResponse)
async def list_appointments(
    start_date: str | None = Query(None),
    end_date: str | None = Query(None),
    patient_id: str | None = Query(None),
    service: TebraService = Depends(get_tebra_service),
):
    filters = {"StartDate": start_date, "EndDate": end_date, "PatientID": patient_id}
    return _list(await service.get_appointments({k: v for k, v in filters.items() if v}))


@router.get("/appointments/{appointment_id}")
async def get_appointment(appointment_id: str, service: TebraService = Depends(get_tebra_service)):
    appointment = await service.get_appointment(appointment_id)
    if appointment is None:
        raise HTTPException(status_code=404, detail="Appointment not found")
    return _record(appointment)


@router.put("/appointments/{appointment_id}")
async def update_appointment(
    appointment_id: str,
    body: AppointmentUpdate,
    service: TebraService = Depends(get_tebra_service),
):
    """Update an appointment. With ``reschedule`` the new time goes through conflict resolution."""
    if body.reschedule:
        if body.start is None or body.end is None:
            raise HTTPException(status_code=400, detail="start and end are required to reschedule")
        result = await booking_service.reschedule_appointment(
            service, appointment_id, start=body.start, end=body.end,
        )
        appointment = result["appointment"]
        return {**result, "appointment": _record(appointment) if appointment is not None else None}

    updates = body.to_tebra()
    if not updates:
        raise HTTPException(status_code=400, detail="No fields to update")
    appointment = await service.update_appointment(appointment_id, updates)
    return _record(appointment) if appointment is not None else {"id": appointment_id}


@router.delete("/appointments/{appointment_id}")
async def delete_appointment(appointment_id: str, service: TebraService = Depends(get_tebra_service)):
    return {"deleted": await service.delete_appointment(appointment_id)}


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

@router.get("/providers", response_model=RecordListResponse)
async def list_providers(service: TebraService = Depends(get_tebra_service)):
    return _list(await service.get_providers())


@router.get("/practices", response_model=RecordListResponse)
async def list_practices(service: TebraService = Depends(get_tebra_service)):
    return _list(await service.get_practices())


@router.get("/appointment-reasons", response_model=RecordListResponse)
async def list_appointment_reasons(
    practice_id: str | None = Query(None),
    service: TebraService = Depends(get_tebra_service),
):
    return _list(await service.get_appointment_reasons(practice_id))


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

@router.get("/patients/{patient_id}/documents")
async def list_patient_documents(
    patient_id: str,
    label: str | None = Query(None),
    name: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
    service: TebraService = Depends(get_tebra_service),
):
    documents = await service.get_documents_for_patient(db, patient_id, label=label, name=name)
    return {"documents": documents}


@router.post("/patients/{patient_id}/documents", status_code=201)
async def create_patient_document(
    patient_id: str,
    body: DocumentCreate,
    db: AsyncSession = Depends(get_db),
    service: TebraService = Depends(get_tebra_service),
):
    document = await service.create_document(
        db,
        patient_id=patient_id,
        name=body.name,
        file_content=body.file_content,
        file_name=body.file_name,
        label=body.label,
        status=body.status,
        document_date=body.document_date,
        document_notes=body.document_notes,
        mime_type=body.mime_type,
    )
    await db.commit()
    return _record(document)


@router.get("/documents/{document_id}")
async def get_document(
    document_id: str,
    include_content: bool = Query(False),
    db: AsyncSession = Depends(get_db),
    service: TebraService = Depends(get_tebra_service),
):
    document = await service.get_document_content(db, document_id)
    if document is None:
        raise HTTPException(status_code=404, detail="Document not found")
    return document.to_dict(include_content=include_content)


@router.delete("/documents/{document_id}")
async def delete_document(
    document_id: str,
    db: AsyncSession = Depends(get_db),
    service: TebraService = Depends(get_tebra_service),
):
    deleted = await service.delete_document(db, document_id)
    await db.commit()
    return {"deleted": deleted}
