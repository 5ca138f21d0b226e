from app.schemas.tebra import (
    PatientCreate, PatientUpdate, PatientSearchParams,
    AppointmentBook, AppointmentUpdate, DocumentCreate, RecordListResponse,
)
