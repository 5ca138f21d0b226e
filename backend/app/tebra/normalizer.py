"""
ResponseNormalizer: turns Tebra XML responses into canonical records.

Tebra is inconsistent about element casing (``PatientID`` vs ``PatientId``
vs ``ID``) across operations and API versions, so every canonical field is
resolved through an explicit alias table rather than ad hoc fallbacks.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional, Union
from xml.etree.ElementTree import Element, ParseError

from defusedxml import DefusedXmlException
from defusedxml import ElementTree as SafeET

from app.tebra.errors import BusinessFault, MalformedResponseError
from app.tebra.records import (
    CanonicalAppointment,
    CanonicalAppointmentReason,
    CanonicalDocument,
    CanonicalPatient,
    CanonicalPractice,
    CanonicalProvider,
    ListResult,
)

logger = logging.getLogger(__name__)

ALIASES_VERSION = 1

# canonical field -> element names in priority order
ALIASES: dict[str, dict[str, tuple[str, ...]]] = {
    "patient": {
        "id": ("ID", "PatientID", "id", "patientId"),
        "first_name": ("FirstName", "first_name"),
        "last_name": ("LastName", "last_name"),
        "middle_name": ("MiddleName", "middle_name"),
        "full_name": ("PatientFullName", "FullName", "full_name"),
        "email": ("EmailAddress", "Email", "email"),
        "phone": ("MobilePhone", "HomePhone", "WorkPhone", "mobile_phone", "home_phone"),
        "date_of_birth": ("DOB", "DateOfBirth", "DateofBirth", "date_of_birth"),
        "gender": ("Gender", "gender"),
        "address_line1": ("AddressLine1", "street"),
        "city": ("City", "city"),
        "state": ("State", "state"),
        "zip_code": ("ZipCode", "zip_code"),
        "practice_id": ("PracticeId", "PracticeID", "practiceId"),
    },
    "appointment": {
        "id": ("ID", "AppointmentID", "AppointmentId", "id"),
        "patient_id": ("PatientID", "PatientId", "patientId"),
        "provider_id": ("ProviderId", "ProviderID", "providerId"),
        "resource_id": ("ResourceID", "ResourceId", "ResourceID1", "resourceId"),
        "practice_id": ("PracticeID", "PracticeId", "practiceId"),
        "appointment_reason_id": ("AppointmentReasonID", "AppointmentReasonId", "appointmentReasonId"),
        "start": ("StartTime", "StartDate", "startTime", "startDate"),
        "end": ("EndTime", "EndDate", "endTime", "endDate"),
        "status": ("AppointmentStatus", "ConfirmationStatus", "status"),
        "notes": ("Notes", "Note", "notes"),
        "patient_name": ("PatientFullName", "patientFullName"),
    },
    "provider": {
        "id": ("ID", "ProviderId", "ProviderID", "providerId", "id"),
        "full_name": ("FullName", "fullName"),
        "first_name": ("FirstName", "firstName"),
        "last_name": ("LastName", "lastName"),
        "npi": ("NationalProviderIdentifier", "NPI", "npi"),
        "specialty": ("SpecialtyName", "Specialty", "specialty"),
        "practice_id": ("PracticeID", "PracticeId", "practiceId"),
        "active": ("Active", "active"),
    },
    "practice": {
        "id": ("ID", "PracticeID", "PracticeId", "id"),
        "name": ("PracticeName", "Name", "name"),
        "npi": ("NPI", "npi"),
        "tax_id": ("TaxID", "TaxId", "taxId"),
        "phone": ("Phone", "phone"),
        "email": ("Email", "email"),
        "active": ("Active", "active"),
    },
    "appointment_reason": {
        "id": ("AppointmentReasonID", "AppointmentReasonId", "ID", "appointmentReasonId", "id"),
        "name": ("Name", "AppointmentReasonName", "name"),
        "duration_minutes": ("DefaultDurationMinutes", "Duration", "duration"),
        "practice_id": ("PracticeID", "PracticeId", "practiceId"),
    },
    "document": {
        "id": ("DocumentID", "DocumentId", "ID", "id", "documentId"),
        "patient_id": ("PatientId", "PatientID", "patientId"),
        "name": ("Name", "name"),
        "file_name": ("FileName", "fileName"),
        "label": ("Label", "label"),
        "status": ("Status", "status"),
        "document_date": ("DocumentDate", "documentDate"),
    },
}

# Elements holding one record in list responses, tried in order; the first
# tag that matches any block is used
LIST_ITEM_TAGS = {
    "patient": ("PatientData",),
    "appointment": ("AppointmentData",),
    "provider": ("ProviderData",),
    "practice": ("PracticeData",),
    "appointment_reason": ("AppointmentReasonData", "AppointmentReason"),
}

_DATETIME_FORMATS = (
    "%m/%d/%Y %I:%M:%S %p",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y",
)


def local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1] if "}" in tag else tag


def parse_document(raw_xml: str) -> Element:
    """Parse ``raw_xml`` safely. Malformed input raises MalformedResponseError."""
    if not raw_xml or not raw_xml.strip():
        raise MalformedResponseError("Empty response from Tebra", raw_xml)
    try:
        return SafeET.fromstring(raw_xml)
    except (ParseError, DefusedXmlException) as e:
        raise MalformedResponseError(f"Unparseable Tebra response: {e}", raw_xml) from e


def _root(source: Union[str, Element]) -> Element:
    return parse_document(source) if isinstance(source, str) else source


def extract_blocks(source: Union[str, Element], tag: str) -> list[Element]:
    """All elements whose local name is ``tag``, in document order."""
    return [el for el in _root(source).iter() if local_name(el.tag) == tag]


def parse_fields(block: Element) -> dict[str, str]:
    """Flatten the leaves under ``block`` into ``{local_name: text}``.

    First occurrence of a name wins; unknown names are kept.
    """
    fields: dict[str, str] = {}
    for el in block.iter():
        if el is block or len(el):
            continue
        name = local_name(el.tag)
        if name not in fields:
            fields[name] = (el.text or "").strip()
    return fields


def resolve_alias(fields: dict[str, str], aliases: Iterable[str]) -> Optional[str]:
    """First non-empty value among ``aliases``.

    Exact names are tried first, then a case-insensitive pass in the same
    priority order.
    """
    aliases = tuple(aliases)
    for name in aliases:
        value = fields.get(name)
        if value:
            return value
    lowered: dict[str, str] = {}
    for key, value in fields.items():
        if value and key.lower() not in lowered:
            lowered[key.lower()] = value
    for name in aliases:
        value = lowered.get(name.lower())
        if value:
            return value
    return None


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse Tebra timestamps. Naive values are taken as UTC."""
    if not value:
        return None
    text = value.strip()
    parsed: Optional[datetime] = None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        for fmt in _DATETIME_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        logger.debug("Unrecognised Tebra datetime: %r", text)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_bool(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    return value.strip().lower() in ("true", "1", "yes")


def _parse_int(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        return int(float(value))
    except ValueError:
        return None


def _resolved(kind: str, fields: dict[str, str]) -> dict[str, Optional[str]]:
    return {name: resolve_alias(fields, aliases) for name, aliases in ALIASES[kind].items()}


def _patient(fields: dict[str, str]) -> CanonicalPatient:
    return CanonicalPatient(**_resolved("patient", fields), raw=fields)


def _appointment(fields: dict[str, str]) -> CanonicalAppointment:
    values = _resolved("appointment", fields)
    values["start"] = parse_datetime(values["start"])
    values["end"] = parse_datetime(values["end"])
    return CanonicalAppointment(**values, raw=fields)


def _provider(fields: dict[str, str]) -> CanonicalProvider:
    values = _resolved("provider", fields)
    values["active"] = _parse_bool(values["active"])
    return CanonicalProvider(**values, raw=fields)


def _practice(fields: dict[str, str]) -> CanonicalPractice:
    values = _resolved("practice", fields)
    values["active"] = _parse_bool(values["active"])
    return CanonicalPractice(**values, raw=fields)


def _appointment_reason(fields: dict[str, str]) -> CanonicalAppointmentReason:
    values = _resolved("appointment_reason", fields)
    values["duration_minutes"] = _parse_int(values["duration_minutes"])
    return CanonicalAppointmentReason(**values, raw=fields)


def _document(fields: dict[str, str]) -> CanonicalDocument:
    return CanonicalDocument(**_resolved("document", fields), raw=fields)


_MAPPERS: dict[str, Callable[[dict[str, str]], Any]] = {
    "patient": _patient,
    "appointment": _appointment,
    "provider": _provider,
    "practice": _practice,
    "appointment_reason": _appointment_reason,
    "document": _document,
}


def to_canonical(kind: str, fields: dict[str, str]):
    try:
        mapper = _MAPPERS[kind]
    except KeyError:
        raise ValueError(f"Unknown record kind: {kind}") from None
    return mapper(fields)


def raise_for_error(source: Union[str, Element], operation: str = "") -> Element:
    """Raise BusinessFault when the response carries an error flag.

    Checked before any entity mapping, so a response with ``IsError=true``
    fails even if entity fields parsed. Returns the parsed root.
    """
    root = _root(source)
    raw_xml = source if isinstance(source, str) else None
    fields = {}
    for el in root.iter():
        if len(el):
            continue
        name = local_name(el.tag)
        if name in ("IsError", "ErrorMessage", "SecurityResultSuccess", "SecurityResult") and name not in fields:
            fields[name] = (el.text or "").strip()

    if fields.get("IsError", "").lower() == "true":
        message = fields.get("ErrorMessage") or "Tebra reported an error"
        raise BusinessFault(message, raw_xml, operation=operation)
    if fields.get("SecurityResultSuccess", "").lower() == "false":
        message = fields.get("SecurityResult") or "Tebra rejected the credentials"
        raise BusinessFault(message, raw_xml, operation=operation)
    return root


def parse_single(raw_xml: str, kind: str, tag: str, operation: str = ""):
    """First ``tag`` block mapped to ``kind``, or None when absent."""
    root = raise_for_error(raw_xml, operation)
    blocks = extract_blocks(root, tag)
    if not blocks:
        return None
    return to_canonical(kind, parse_fields(blocks[0]))


def parse_list(raw_xml: str, kind: str, operation: str = "", item_tag: Optional[str] = None) -> ListResult:
    root = raise_for_error(raw_xml, operation)
    blocks: list[Element] = []
    for tag in ((item_tag,) if item_tag else LIST_ITEM_TAGS[kind]):
        blocks = extract_blocks(root, tag)
        if blocks:
            break
    items = [to_canonical(kind, parse_fields(block)) for block in blocks]

    meta: dict[str, str] = {}
    for el in root.iter():
        name = local_name(el.tag)
        if name in ("TotalCount", "HasMore", "NextStartKey") and name not in meta and not len(el):
            meta[name] = (el.text or "").strip()

    total = _parse_int(meta.get("TotalCount"))
    return ListResult(
        items=items,
        total_count=total if total is not None else len(items),
        has_more=bool(_parse_bool(meta.get("HasMore"))),
        next_start_key=meta.get("NextStartKey") or None,
    )


def extract_id(source: Union[str, Element], *tags: str) -> Optional[str]:
    """First non-empty text among elements named ``tags`` (in tag priority order)."""
    root = _root(source)
    for tag in tags:
        for el in root.iter():
            if local_name(el.tag) == tag and (el.text or "").strip():
                return el.text.strip()
    return None
