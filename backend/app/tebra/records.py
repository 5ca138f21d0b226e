"""
Canonical records produced from Tebra responses.

Every record keeps the flattened field map it was built from in ``raw`` so
that callers can reach fields the canonical shape does not model.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class CanonicalPatient:
    id: Optional[str]
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    middle_name: Optional[str] = None
    full_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    date_of_birth: Optional[str] = None
    gender: Optional[str] = None
    address_line1: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    practice_id: Optional[str] = None
    raw: dict[str, str] = field(default_factory=dict, repr=False)


@dataclass
class CanonicalAppointment:
    id: Optional[str]
    patient_id: Optional[str] = None
    provider_id: Optional[str] = None
    resource_id: Optional[str] = None
    practice_id: Optional[str] = None
    appointment_reason_id: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    status: Optional[str] = None
    notes: Optional[str] = None
    patient_name: Optional[str] = None
    raw: dict[str, str] = field(default_factory=dict, repr=False)


@dataclass
class CanonicalProvider:
    id: Optional[str]
    full_name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    npi: Optional[str] = None
    specialty: Optional[str] = None
    practice_id: Optional[str] = None
    active: Optional[bool] = None
    raw: dict[str, str] = field(default_factory=dict, repr=False)


@dataclass
class CanonicalPractice:
    id: Optional[str]
    name: Optional[str] = None
    npi: Optional[str] = None
    tax_id: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    active: Optional[bool] = None
    raw: dict[str, str] = field(default_factory=dict, repr=False)


@dataclass
class CanonicalAppointmentReason:
    id: Optional[str]
    name: Optional[str] = None
    duration_minutes: Optional[int] = None
    practice_id: Optional[str] = None
    raw: dict[str, str] = field(default_factory=dict, repr=False)


@dataclass
class CanonicalDocument:
    id: Optional[str]
    patient_id: Optional[str] = None
    name: Optional[str] = None
    file_name: Optional[str] = None
    label: Optional[str] = None
    status: Optional[str] = None
    document_date: Optional[str] = None
    raw: dict[str, str] = field(default_factory=dict, repr=False)


@dataclass
class ChargeResult:
    charge_id: Optional[str]
    raw_xml: str = field(default="", repr=False)


@dataclass
class PaymentResult:
    payment_id: Optional[str]
    raw_xml: str = field(default="", repr=False)


@dataclass
class ListResult(Generic[T]):
    items: list[T]
    total_count: int
    has_more: bool = False
    next_start_key: Optional[str] = None
