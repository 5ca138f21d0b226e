"""
Tebra domain service: patients, appointments, lookups and documents.

Callers pass Tebra-shaped field maps (PascalCase keys as declared in
``app.tebra.envelope``); the envelope builder rejects anything undeclared
before a request is sent.  Every response goes through
``normalizer.raise_for_error`` before it is mapped.
"""

import base64
import json
import logging
import re
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.services import document_store
from app.tebra import billing, normalizer
from app.tebra.client import ProtocolClient
from app.tebra.envelope import AuthHeader, build_envelope
from app.tebra.errors import BusinessFault, TebraError, ValidationError
from app.tebra.records import (
    CanonicalAppointment,
    CanonicalDocument,
    CanonicalPatient,
    ChargeResult,
    ListResult,
    PaymentResult,
)
from app.utils.cache import TTLCache, chart_cache, chart_cache_key

logger = logging.getLogger(__name__)

MAX_DOCUMENT_BYTES = 1024 * 1024

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/=\r\n]+$")

_GENDERS = {"m": "Male", "male": "Male", "f": "Female", "female": "Female"}

PHONE_FIELDS = ("EmergencyPhone", "HomePhone", "MobilePhone", "WorkPhone")

# UpdateAppointment rejects payloads missing any of these
UPDATE_APPOINTMENT_REQUIRED = (
    "AppointmentStatus",
    "ServiceLocationId",
    "StartTime",
    "EndTime",
    "AppointmentReasonId",
    "ResourceId",
    "PatientId",
    "AppointmentName",
    "MaxAttendees",
)


def format_phone(phone: Optional[str]) -> Optional[str]:
    """Keep the last 10 digits of a phone number."""
    if not phone:
        return None
    digits = re.sub(r"\D", "", str(phone))
    return digits[-10:] if digits else None


def map_gender(gender: Optional[str]) -> Optional[str]:
    if not gender:
        return None
    return _GENDERS.get(str(gender).strip().lower(), gender)


def coerce_base64(content: Any) -> str:
    """Return ``content`` as base64 text.

    Strings that already look like base64 pass through; other strings are
    encoded as UTF-8; mappings and lists are JSON-encoded first.
    """
    if isinstance(content, bytes):
        return base64.b64encode(content).decode("ascii")
    if isinstance(content, str):
        if content and _BASE64_RE.match(content) and len(content) % 4 == 0:
            return content
        return base64.b64encode(content.encode("utf-8")).decode("ascii")
    return base64.b64encode(json.dumps(content, default=str).encode("utf-8")).decode("ascii")


def trim_base64(content_b64: str, max_bytes: int = MAX_DOCUMENT_BYTES) -> tuple[str, bool]:
    """Trim the decoded payload to ``max_bytes``. Returns ``(content, trimmed)``."""
    if (len(content_b64) * 3) // 4 <= max_bytes:
        return content_b64, False
    raw = base64.b64decode(content_b64)
    if len(raw) <= max_bytes:
        return content_b64, False
    return base64.b64encode(raw[:max_bytes]).decode("ascii"), True


def _present(value: Any) -> bool:
    return value is not None and value != ""


class TebraService:
    """High-level operations against one Tebra customer account."""

    def __init__(
        self,
        client: Optional[ProtocolClient] = None,
        settings: Optional[Settings] = None,
        cache: Optional[TTLCache] = None,
    ):
        self.settings = settings or get_settings()
        self.client = client or ProtocolClient(self.settings)
        self.cache = cache if cache is not None else chart_cache
        self.auth = AuthHeader(
            customer_key=self.settings.TEBRA_CUSTOMER_KEY,
            user=self.settings.TEBRA_USER,
            password=self.settings.TEBRA_PASSWORD,
        )

    @property
    def practice_id(self) -> Optional[str]:
        return self.settings.TEBRA_PRACTICE_ID or None

    async def call(
        self,
        operation: str,
        fields: Any = None,
        filters: Optional[Mapping] = None,
        practice_id: Optional[str] = None,
    ) -> str:
        """Build, send and error-check one operation; returns the raw XML."""
        auth = self.auth.for_practice(practice_id) if practice_id else self.auth
        envelope = build_envelope(
            operation, fields, auth, filters=filters, namespace=self.settings.TEBRA_NAMESPACE,
        )
        raw = await self.client.call_or_raise(operation, envelope)
        normalizer.raise_for_error(raw, operation)
        return raw

    # ------------------------------------------------------------------
    # Patients
    # ------------------------------------------------------------------

    def _practice_ref(self) -> dict:
        return {"PracticeID": self.practice_id, "PracticeName": self.settings.TEBRA_PRACTICE_NAME or None}

    def _normalize_patient(self, patient: Mapping) -> dict:
        data = dict(patient)
        for name in PHONE_FIELDS:
            if name in data:
                data[name] = format_phone(data[name])
        if "Gender" in data:
            data["Gender"] = map_gender(data["Gender"])
        if not data.get("Practice"):
            data["Practice"] = self._practice_ref()
        return data

    async def create_patient(self, patient: Mapping) -> CanonicalPatient:
        if not _present(patient.get("FirstName")) or not _present(patient.get("LastName")):
            raise ValidationError("FirstName and LastName are required to create a patient")

        payload = self._normalize_patient(patient)
        raw = await self.call("CreatePatient", {"Patient": payload})
        patient_id = normalizer.extract_id(raw, "PatientID", "PatientId", "ID")
        if not patient_id:
            raise BusinessFault("CreatePatient returned no PatientID", raw, operation="CreatePatient")

        logger.info("Created Tebra patient %s", patient_id)
        fields = {k: str(v) for k, v in payload.items() if isinstance(v, (str, int)) and _present(v)}
        fields["PatientID"] = patient_id
        return normalizer.to_canonical("patient", fields)

    async def get_patient(self, patient_id: str) -> Optional[CanonicalPatient]:
        if not _present(patient_id):
            raise ValidationError("patient_id is required")
        raw = await self.call("GetPatient", {"Filter": {"PatientID": patient_id}})
        return normalizer.parse_single(raw, "patient", "Patient", "GetPatient")

    async def update_patient(self, patient_id: str, updates: Mapping) -> CanonicalPatient:
        if not _present(patient_id):
            raise ValidationError("patient_id is required")
        payload = self._normalize_patient({**updates, "PatientID": patient_id})
        raw = await self.call("UpdatePatient", {"Patient": payload})

        updated = normalizer.parse_single(raw, "patient", "Patient", "UpdatePatient")
        if updated is not None and updated.id:
            return updated
        fields = {k: str(v) for k, v in payload.items() if isinstance(v, (str, int)) and _present(v)}
        return normalizer.to_canonical("patient", fields)

    async def search_patients(self, filters: Optional[Mapping] = None, fields=None) -> ListResult:
        raw = await self.call("GetPatients", fields, filters=filters or {})
        return normalizer.parse_list(raw, "patient", "GetPatients")

    async def find_or_create_patient_by_email(
        self,
        email: str,
        first_name: str = "Unknown",
        last_name: str = "Unknown",
    ) -> Optional[CanonicalPatient]:
        """Return the patient whose email matches, creating a minimal one if none does.

        A failed search is logged and falls through to creation.
        """
        if not email:
            return None
        try:
            result = await self.search_patients({"EmailAddress": email})
            for patient in result.items:
                if (patient.email or "").lower() == email.lower() and patient.id:
                    return patient
        except TebraError as e:
            logger.warning("Patient search by email failed: %s", e.message)

        return await self.create_patient({
            "EmailAddress": email,
            "FirstName": first_name,
            "LastName": last_name,
        })

    # ------------------------------------------------------------------
    # Appointments
    # ------------------------------------------------------------------

    async def create_appointment(self, appointment: Mapping) -> CanonicalAppointment:
        data = dict(appointment)
        if not _present(data.get("AppointmentReasonId")):
            data["AppointmentReasonId"] = self.settings.TEBRA_DEFAULT_APPT_REASON_ID or None
        if not _present(data.get("AppointmentReasonId")):
            raise ValidationError(
                "AppointmentReasonId is required; set TEBRA_DEFAULT_APPT_REASON_ID or pass one"
            )
        start, end = data.get("StartTime"), data.get("EndTime")
        if not _present(start) or not _present(end):
            raise ValidationError("StartTime and EndTime are required")
        if isinstance(start, datetime) and isinstance(end, datetime) and end <= start:
            raise ValidationError("EndTime must be after StartTime")

        data.setdefault("PracticeId", self.practice_id)
        data.setdefault("AppointmentStatus", "Scheduled")
        data.setdefault("AppointmentType", "P")
        data.setdefault("MaxAttendees", 1)
        data.setdefault("IsRecurring", False)
        data.setdefault("WasCreatedOnline", True)

        raw = await self.call("CreateAppointment", {"Appointment": data})
        appointment_id = normalizer.extract_id(raw, "AppointmentId", "AppointmentID", "ID")
        if not appointment_id:
            raise BusinessFault("CreateAppointment returned no AppointmentID", raw, operation="CreateAppointment")

        logger.info("Created Tebra appointment %s", appointment_id)
        return CanonicalAppointment(
            id=appointment_id,
            patient_id=str(data["PatientId"]) if _present(data.get("PatientId")) else None,
            provider_id=str(data["ProviderId"]) if _present(data.get("ProviderId")) else None,
            resource_id=str(data["ResourceId"]) if _present(data.get("ResourceId")) else None,
            practice_id=str(data["PracticeId"]) if _present(data.get("PracticeId")) else None,
            appointment_reason_id=str(data["AppointmentReasonId"]),
            start=start if isinstance(start, datetime) else normalizer.parse_datetime(str(start)),
            end=end if isinstance(end, datetime) else normalizer.parse_datetime(str(end)),
            status=data.get("AppointmentStatus"),
            notes=data.get("Notes"),
        )

    async def get_appointment(self, appointment_id: str) -> Optional[CanonicalAppointment]:
        if not _present(appointment_id):
            raise ValidationError("appointment_id is required")
        raw = await self.call("GetAppointment", {"Appointment": {"AppointmentId": appointment_id}})
        return normalizer.parse_single(raw, "appointment", "Appointment", "GetAppointment")

    async def update_appointment(self, appointment_id: str, updates: Mapping) -> Optional[CanonicalAppointment]:
        """Update an appointment, filling required fields from the current one."""
        if not _present(appointment_id):
            raise ValidationError("appointment_id is required")
        data = {k: v for k, v in updates.items() if _present(v)}
        data["AppointmentId"] = appointment_id

        if not all(_present(data.get(name)) for name in UPDATE_APPOINTMENT_REQUIRED):
            try:
                base = await self.get_appointment(appointment_id)
            except TebraError as e:
                logger.warning("Could not fetch appointment %s to fill update: %s", appointment_id, e.message)
                base = None
            if base is not None:
                fill = {
                    "AppointmentStatus": base.status,
                    "ServiceLocationId": base.raw.get("ServiceLocationId") or base.raw.get("ServiceLocationID"),
                    "StartTime": base.start,
                    "EndTime": base.end,
                    "AppointmentReasonId": base.appointment_reason_id,
                    "ResourceId": base.resource_id or base.provider_id,
                    "PatientId": base.patient_id,
                    "AppointmentName": base.raw.get("AppointmentName"),
                    "ProviderId": base.provider_id,
                }
                for name, value in fill.items():
                    if not _present(data.get(name)) and _present(value):
                        data[name] = value
        data.setdefault("MaxAttendees", 1)

        raw = await self.call("UpdateAppointment", {"Appointment": data})
        updated = normalizer.parse_single(raw, "appointment", "Appointment", "UpdateAppointment")
        return updated if updated is not None and updated.id else await self.get_appointment(appointment_id)

    async def delete_appointment(self, appointment_id: str) -> bool:
        if not _present(appointment_id):
            raise ValidationError("appointment_id is required")
        await self.call("DeleteAppointment", {"Appointment": {"AppointmentId": appointment_id}})
        logger.info("Deleted Tebra appointment %s", appointment_id)
        return True

    async def get_appointments(self, filters: Optional[Mapping] = None, fields=None) -> ListResult:
        raw = await self.call("GetAppointments", fields, filters=filters or {})
        return normalizer.parse_list(raw, "appointment", "GetAppointments")

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_providers(self, filters: Optional[Mapping] = None, fields=None) -> ListResult:
        raw = await self.call("GetProviders", fields, filters=filters or {})
        return normalizer.parse_list(raw, "provider", "GetProviders")

    async def get_practices(self, filters: Optional[Mapping] = None, fields=None) -> ListResult:
        raw = await self.call("GetPractices", fields, filters=filters or {})
        return normalizer.parse_list(raw, "practice", "GetPractices")

    async def get_appointment_reasons(self, practice_id: Optional[str] = None) -> ListResult:
        practice_id = practice_id or self.practice_id
        if not practice_id:
            raise ValidationError("practice_id is required for appointment reasons")
        raw = await self.call("GetAppointmentReasons", {"PracticeId": practice_id})
        return normalizer.parse_list(raw, "appointment_reason", "GetAppointmentReasons")

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def create_document(
        self,
        db: AsyncSession,
        *,
        patient_id: str,
        name: str,
        file_content: Any,
        file_name: Optional[str] = None,
        label: str = "General",
        status: str = "Completed",
        document_date: Optional[datetime] = None,
        document_notes: Optional[str] = None,
        practice_id: Optional[str] = None,
        mime_type: str = "application/json",
    ) -> CanonicalDocument:
        """Create a document in Tebra and record it locally.

        Content larger than 1 MB (decoded) is trimmed.  A BusinessFault on
        the full payload is retried once with the minimal field set.
        """
        if not _present(patient_id):
            raise ValidationError("patient_id is required to create a document")
        if not _present(name):
            raise ValidationError("name is required to create a document")

        practice_id = practice_id or self.practice_id
        document_date = document_date or datetime.now(timezone.utc)
        file_name = file_name or f"{re.sub(r'[^A-Za-z0-9_-]+', '-', name).strip('-').lower() or 'document'}.json"
        content_b64, trimmed = trim_base64(coerce_base64(file_content))
        if trimmed:
            logger.warning("Document %s for patient %s trimmed to %d bytes", file_name, patient_id, MAX_DOCUMENT_BYTES)

        full = {
            "DocumentDate": document_date,
            "DocumentNotes": document_notes,
            "FileContent": content_b64,
            "FileName": file_name,
            "Label": label,
            "Name": name,
            "PatientId": patient_id,
            "PracticeId": practice_id,
            "Status": status,
        }
        try:
            raw = await self.call("CreateDocument", {"DocumentToCreate": full}, practice_id=practice_id)
        except BusinessFault as e:
            logger.warning("CreateDocument rejected (%s); retrying with minimal payload", e.message)
            minimal = {k: full[k] for k in (
                "DocumentDate", "FileContent", "FileName", "Name", "PatientId", "PracticeId", "Status",
            )}
            raw = await self.call("CreateDocument", {"DocumentToCreate": minimal}, practice_id=practice_id)

        document_id = normalizer.extract_id(raw, "DocumentID", "DocumentId", "ID")
        logger.info("Created Tebra document %s for patient %s", document_id, patient_id)

        try:
            async with db.begin_nested():
                await document_store.store_document(
                    db,
                    tebra_document_id=document_id,
                    patient_id=patient_id,
                    practice_id=practice_id,
                    name=name,
                    file_name=file_name,
                    label=label,
                    status=status,
                    document_date=document_date,
                    document_notes=document_notes,
                    file_content_base64=content_b64,
                    mime_type=mime_type,
                )
        except Exception:
            logger.exception("Failed to store local metadata for document %s", document_id)

        self._invalidate_chart(patient_id)

        return CanonicalDocument(
            id=document_id,
            patient_id=str(patient_id),
            name=name,
            file_name=file_name,
            label=label,
            status=status,
            document_date=document_date.isoformat(),
        )

    def _invalidate_chart(self, patient_id: str) -> None:
        try:
            self.cache.invalidate_prefix(chart_cache_key(patient_id))
        except Exception as e:
            logger.warning("Chart cache invalidation failed for patient %s: %s", patient_id, e)

    async def delete_document(self, db: AsyncSession, document_id: str) -> bool:
        if not _present(document_id):
            raise ValidationError("document_id is required")
        local = await document_store.get_document(db, document_id)
        remote_id = (local.tebra_document_id if local is not None else None) or document_id
        await self.call("DeleteDocument", {"DocumentId": remote_id})
        deleted = await document_store.soft_delete_document(db, document_id)
        if local is not None:
            self._invalidate_chart(local.patient_id)
        return deleted

    async def get_documents_for_patient(
        self,
        db: AsyncSession,
        patient_id: str,
        label: Optional[str] = None,
        name: Optional[str] = None,
    ):
        """Local document metadata as dicts, cached per patient and filter."""
        if not _present(patient_id):
            raise ValidationError("patient_id is required")
        key = chart_cache_key(patient_id, f"documents:{label or ''}:{name or ''}")
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        documents = await document_store.get_documents_for_patient(db, patient_id, label=label, name=name)
        result = [d.to_dict() for d in documents]
        self.cache.set(key, result)
        return result

    async def get_document_content(self, db: AsyncSession, document_id: str):
        return await document_store.get_document(db, document_id)

    # ------------------------------------------------------------------
    # Billing
    # ------------------------------------------------------------------

    async def create_charge(self, **kwargs) -> ChargeResult:
        return await billing.create_charge(self, **kwargs)

    async def post_payment(self, **kwargs) -> PaymentResult:
        return await billing.post_payment(self, **kwargs)
