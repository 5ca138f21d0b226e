from pydantic import BaseModel, Field, model_validator
from datetime import date, datetime
from typing import Any, Optional


# Snake-case request field -> Tebra Patient element
PATIENT_FIELD_MAP = {
    "first_name": "FirstName",
    "last_name": "LastName",
    "middle_name": "MiddleName",
    "email": "EmailAddress",
    "home_phone": "HomePhone",
    "mobile_phone": "MobilePhone",
    "work_phone": "WorkPhone",
    "date_of_birth": "DateofBirth",
    "gender": "Gender",
    "address_line1": "AddressLine1",
    "address_line2": "AddressLine2",
    "city": "City",
    "state": "State",
    "zip_code": "ZipCode",
    "country": "Country",
    "medical_record_number": "MedicalRecordNumber",
    "external_id": "PatientExternalID",
    "note": "Note",
}


class PatientBase(BaseModel):
    middle_name: str | None = Field(None, max_length=255)
    email: str | None = Field(None, max_length=320)
    home_phone: str | None = Field(None, max_length=30)
    mobile_phone: str | None = Field(None, max_length=30)
    work_phone: str | None = Field(None, max_length=30)
    date_of_birth: date | None = None
    gender: str | None = Field(None, max_length=20)
    address_line1: str | None = Field(None, max_length=255)
    address_line2: str | None = Field(None, max_length=255)
    city: str | None = Field(None, max_length=100)
    state: str | None = Field(None, max_length=50)
    zip_code: str | None = Field(None, max_length=20)
    country: str | None = Field(None, max_length=100)
    medical_record_number: str | None = Field(None, max_length=100)
    external_id: str | None = Field(None, max_length=100)
    note: str | None = Field(None, max_length=5000)

    def to_tebra(self) -> dict[str, Any]:
        data = self.model_dump(exclude_none=True)
        return {PATIENT_FIELD_MAP[k]: v for k, v in data.items() if k in PATIENT_FIELD_MAP}


class PatientCreate(PatientBase):
    first_name: str = Field(..., min_length=1, max_length=255)
    last_name: str = Field(..., min_length=1, max_length=255)


class PatientUpdate(PatientBase):
    first_name: str | None = Field(None, min_length=1, max_length=255)
    last_name: str | None = Field(None, min_length=1, max_length=255)


class PatientSearchParams(BaseModel):
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    full_name: str | None = None

    def to_filter(self) -> dict[str, Any]:
        mapping = {
            "email": "EmailAddress",
            "first_name": "FirstName",
            "last_name": "LastName",
            "full_name": "FullName",
        }
        return {mapping[k]: v for k, v in self.model_dump(exclude_none=True).items()}


class AppointmentBook(BaseModel):
    patient_id: str = Field(..., min_length=1)
    start: datetime
    end: datetime
    provider_id: str | None = None
    resource_id: str | None = None
    appointment_reason_id: str | None = None
    service_location_id: str | None = None
    notes: str | None = Field(None, max_length=5000)

    @model_validator(mode="after")
    def _end_after_start(self):
        if self.end <= self.start:
            raise ValueError("end must be after start")
        return self


class AppointmentUpdate(BaseModel):
    start: datetime | None = None
    end: datetime | None = None
    appointment_status: str | None = None
    appointment_reason_id: str | None = None
    notes: str | None = Field(None, max_length=5000)
    reschedule: bool = False

    def to_tebra(self) -> dict[str, Any]:
        mapping = {
            "start": "StartTime",
            "end": "EndTime",
            "appointment_status": "AppointmentStatus",
            "appointment_reason_id": "AppointmentReasonId",
            "notes": "Notes",
        }
        data = self.model_dump(exclude_none=True, exclude={"reschedule"})
        return {mapping[k]: v for k, v in data.items()}


class DocumentCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    file_content: Any
    file_name: str | None = Field(None, max_length=255)
    label: str = Field("General", max_length=100)
    status: str = Field("Completed", max_length=50)
    document_date: datetime | None = None
    document_notes: str | None = Field(None, max_length=5000)
    mime_type: str = Field("application/json", max_length=100)


class RecordListResponse(BaseModel):
    items: list[dict[str, Any]]
    total_count: int
    has_more: bool = False
    next_start_key: Optional[str] = None
