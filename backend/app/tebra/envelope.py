"""
SOAP envelope construction for the Tebra (Kareo) practice-management service.

The remote WCF contract rejects payloads whose child elements are out of the
declared sequence, so every operation has a fixed field order declared below.
Fields without a value are omitted entirely; nothing is null-filled.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional, Union
from xml.sax.saxutils import escape

from app.tebra.errors import ValidationError

SOAP11_ENVELOPE_NS = "http://schemas.xmlsoap.org/soap/envelope/"
SOAP12_ENVELOPE_NS = "http://www.w3.org/2003/05/soap-envelope"
SCHEMA_NS = "http://www.kareo.com/api/schemas/"
ARRAYS_NS = "http://schemas.microsoft.com/2003/10/Serialization/Arrays"
SYSTEM_NS = "http://schemas.datacontract.org/2004/07/System"

XML_DECLARATION = '<?xml version="1.0" encoding="utf-8"?>'

# name -> child schema (None for a leaf). Dict order is the wire order.
Schema = dict[str, Optional["Schema"]]

_ENTITIES = {'"': "&quot;", "'": "&apos;"}


def xml_escape(value: Any) -> str:
    """Escape ``& < > " '`` for use in an XML text node."""
    if value is None:
        return ""
    return escape(str(value), _ENTITIES)


def _ordered(names: tuple[str, ...], **nested: Schema) -> Schema:
    unknown = set(nested) - set(names)
    if unknown:
        raise ValueError(f"nested schema for undeclared field(s): {sorted(unknown)}")
    return {name: nested.get(name) for name in names}


@dataclass(frozen=True)
class AuthHeader:
    """Credentials injected into every request body.

    Password and customer key are excluded from ``repr`` so the header can
    be logged safely.
    """

    customer_key: str = field(repr=False)
    user: str
    password: str = field(repr=False)
    practice_id: Optional[str] = None

    def for_practice(self, practice_id: Optional[str]) -> "AuthHeader":
        return replace(self, practice_id=practice_id or None)


# ---------------------------------------------------------------------------
# Field order tables
# ---------------------------------------------------------------------------

PRACTICE_REF_FIELDS = ("ExternalID", "PracticeID", "PracticeName")
PHYSICIAN_REF_FIELDS = ("ExternalID", "FullName", "PhysicianID")
PROVIDER_REF_FIELDS = ("ExternalID", "FullName", "ProviderID")

CREATE_PATIENT_FIELDS = (
    "AddressLine1",
    "AddressLine2",
    "City",
    "CollectionCategoryName",
    "Country",
    "DateofBirth",
    "EmailAddress",
    "EmergencyName",
    "EmergencyPhone",
    "EmergencyPhoneExt",
    "FirstName",
    "Gender",
    "HomePhone",
    "HomePhoneExt",
    "LastName",
    "MaritalStatus",
    "MedicalRecordNumber",
    "MiddleName",
    "MobilePhone",
    "MobilePhoneExt",
    "Note",
    "PatientExternalID",
    "Practice",
    "Prefix",
    "PrimaryCarePhysician",
    "ReferralSource",
    "ReferringProvider",
    "SocialSecurityNumber",
    "State",
    "Suffix",
    "WorkPhone",
    "WorkPhoneExt",
    "ZipCode",
)

UPDATE_PATIENT_FIELDS = (
    "AddressLine1",
    "AddressLine2",
    "City",
    "CollectionCategoryName",
    "Country",
    "DateofBirth",
    "EmailAddress",
    "EmergencyName",
    "EmergencyPhone",
    "EmergencyPhoneExt",
    "ExternalVendorID",
    "FirstName",
    "Gender",
    "HomePhone",
    "HomePhoneExt",
    "LastName",
    "MaritalStatus",
    "MedicalRecordNumber",
    "MiddleName",
    "MobilePhone",
    "MobilePhoneExt",
    "Note",
    "PatientExternalID",
    "PatientID",
    "Practice",
    "Prefix",
    "PrimaryCarePhysician",
    "ReferralSource",
    "ReferringProvider",
    "SocialSecurityNumber",
    "State",
    "Suffix",
    "WorkPhone",
    "WorkPhoneExt",
    "ZipCode",
)

# PracticeId must precede StartTime; EndTime sits between CustomerId and ForRecare.
APPOINTMENT_FIELDS = (
    "AppointmentId",
    "AppointmentMode",
    "AppointmentName",
    "AppointmentReasonId",
    "AppointmentStatus",
    "AppointmentType",
    "AppointmentUUID",
    "AttendeesCount",
    "CreatedAt",
    "CreatedBy",
    "CustomerId",
    "EndTime",
    "ForRecare",
    "InsurancePolicyAuthorizationId",
    "IsDeleted",
    "IsGroupAppointment",
    "IsRecurring",
    "MaxAttendees",
    "Notes",
    "OccurrenceId",
    "PatientCaseId",
    "PatientSummaries",
    "PatientSummary",
    "PatientGuid",
    "PatientId",
    "PracticeId",
    "ProviderId",
    "RecurrenceRule",
    "ResourceId",
    "ResourceIds",
    "ServiceLocationId",
    "StartTime",
    "UpdatedAt",
    "UpdatedBy",
    "WasCreatedOnline",
)

PATIENT_SUMMARY_FIELDS = (
    "DateOfBirth",
    "Email",
    "FirstName",
    "GenderId",
    "Guid",
    "HomePhone",
    "LastName",
    "MiddleName",
    "MobilePhone",
    "OtherEmail",
    "OtherPhone",
    "PatientId",
    "PracticeId",
    "PreferredEmailType",
    "PreferredPhoneType",
    "WorkEmail",
    "WorkPhone",
)

RECURRENCE_RULE_FIELDS = (
    "AppointmentId",
    "DayInterval",
    "DayOfMonth",
    "DayOfWeekFlags",
    "EndDate",
    "EndType",
    "MonthInterval",
    "NumOfOccurrences",
    "StartDate",
    "Type",
    "WeekInterval",
)

DOCUMENT_FIELDS = (
    "DocumentDate",
    "DocumentNotes",
    "FileContent",
    "FileName",
    "Label",
    "Name",
    "PatientId",
    "PracticeId",
    "Status",
)

CHARGE_FIELDS = ("PatientId", "DateOfService", "PlaceOfService", "ChargeItems")
CHARGE_ITEM_FIELDS = ("CptCode", "Modifier", "Units", "Amount")
PAYMENT_FIELDS = ("PatientId", "Amount", "PaymentMethod", "ReferenceNumber", "Date")

# Selectable columns and filters for the list operations
PATIENT_SELECT_FIELDS = (
    "AddressLine1", "AddressLine2", "City", "Country", "CreatedDate", "DOB",
    "EmailAddress", "FirstName", "Gender", "HomePhone", "ID", "LastModifiedDate",
    "LastName", "MedicalRecordNumber", "MiddleName", "MobilePhone",
    "PatientFullName", "PracticeId", "PracticeName", "State", "WorkPhone", "ZipCode",
)
PATIENT_FILTER_FIELDS = (
    "EmailAddress", "FirstName", "FromCreatedDate", "FromLastModifiedDate",
    "FullName", "Gender", "LastName", "MiddleName", "PracticeID", "PracticeName",
    "ReferringProviderFullName", "SSN", "ToCreatedDate", "ToLastModifiedDate",
)
APPOINTMENT_SELECT_FIELDS = (
    "AllDay", "AppointmentDuration", "AppointmentReason1", "AppointmentReasonID",
    "ConfirmationStatus", "CreatedDate", "EndDate", "ID", "LastModifiedDate",
    "Notes", "PatientFullName", "PatientID", "PracticeID", "PracticeName",
    "ProviderID", "ResourceID1", "ServiceLocationName", "StartDate", "Type",
)
APPOINTMENT_FILTER_FIELDS = (
    "ConfirmationStatus", "EndDate", "FromCreatedDate", "FromLastModifiedDate",
    "PatientFullName", "PatientID", "PracticeID", "PracticeName", "ProviderID",
    "ResourceName", "ServiceLocationName", "StartDate", "TimeZoneOffsetFromGMT",
    "ToCreatedDate", "ToLastModifiedDate", "Type",
)
PROVIDER_SELECT_FIELDS = (
    "Active", "Degree", "EmailAddress", "FirstName", "FullName", "ID", "LastName",
    "MiddleName", "NationalProviderIdentifier", "PracticeID", "PracticeName",
    "SpecialtyName", "Type",
)
PROVIDER_FILTER_FIELDS = ("Active", "ID", "PracticeId", "PracticeName", "Type")
PRACTICE_SELECT_FIELDS = (
    "Active", "CreatedDate", "Email", "ID", "LastModifiedDate", "NPI", "Phone",
    "PracticeAddressLine1", "PracticeCity", "PracticeName", "PracticeState",
    "PracticeZipCode", "TaxID",
)
PRACTICE_FILTER_FIELDS = (
    "Active", "FromCreatedDate", "FromLastModifiedDate", "ID", "NPI",
    "PracticeName", "TaxID", "ToCreatedDate", "ToLastModifiedDate",
)

_PATIENT_NESTED = {
    "Practice": _ordered(PRACTICE_REF_FIELDS),
    "PrimaryCarePhysician": _ordered(PHYSICIAN_REF_FIELDS),
    "ReferringProvider": _ordered(PROVIDER_REF_FIELDS),
}

_APPOINTMENT = _ordered(
    APPOINTMENT_FIELDS,
    PatientSummaries=_ordered(PATIENT_SUMMARY_FIELDS),
    PatientSummary=_ordered(PATIENT_SUMMARY_FIELDS),
    RecurrenceRule=_ordered(RECURRENCE_RULE_FIELDS),
)

_APPOINTMENT_REF = _ordered(("AppointmentId",))

# Wrapper element for mapping items inside a list field; scalar items are arr:long.
LIST_ITEM_TAGS = {
    "PatientSummaries": "GroupPatientSummary",
    "ChargeItems": "ChargeItem",
}


@dataclass(frozen=True)
class OperationSpec:
    name: str
    body: Schema = field(default_factory=dict)
    select_fields: tuple[str, ...] = ()
    filter_fields: tuple[str, ...] = ()
    array_namespaces: bool = False

    @property
    def is_list(self) -> bool:
        return bool(self.select_fields)


OPERATIONS: dict[str, OperationSpec] = {
    spec.name: spec
    for spec in (
        OperationSpec("CreatePatient", {"Patient": _ordered(CREATE_PATIENT_FIELDS, **_PATIENT_NESTED)}),
        OperationSpec("UpdatePatient", {"Patient": _ordered(UPDATE_PATIENT_FIELDS, **_PATIENT_NESTED)}),
        OperationSpec("GetPatient", {"Filter": _ordered(("ExternalID", "ExternalVendorID", "PatientID"))}),
        OperationSpec("GetPatients", select_fields=PATIENT_SELECT_FIELDS, filter_fields=PATIENT_FILTER_FIELDS),
        OperationSpec("CreateAppointment", {"Appointment": _APPOINTMENT}, array_namespaces=True),
        OperationSpec("UpdateAppointment", {"Appointment": _APPOINTMENT}, array_namespaces=True),
        OperationSpec("GetAppointment", {"Appointment": _APPOINTMENT_REF}),
        OperationSpec("DeleteAppointment", {"Appointment": _APPOINTMENT_REF}),
        OperationSpec(
            "GetAppointments",
            select_fields=APPOINTMENT_SELECT_FIELDS,
            filter_fields=APPOINTMENT_FILTER_FIELDS,
        ),
        OperationSpec("GetAppointmentReasons", {"PracticeId": None}),
        OperationSpec("GetProviders", select_fields=PROVIDER_SELECT_FIELDS, filter_fields=PROVIDER_FILTER_FIELDS),
        OperationSpec("GetPractices", select_fields=PRACTICE_SELECT_FIELDS, filter_fields=PRACTICE_FILTER_FIELDS),
        OperationSpec("CreateDocument", {"DocumentToCreate": _ordered(DOCUMENT_FIELDS)}),
        OperationSpec("DeleteDocument", {"DocumentId": None}),
        OperationSpec(
            "CreateCharge",
            {"ChargeToCreate": _ordered(CHARGE_FIELDS, ChargeItems=_ordered(CHARGE_ITEM_FIELDS))},
        ),
        OperationSpec("PostPayment", {"PaymentToPost": _ordered(PAYMENT_FIELDS)}),
    )
}


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def _is_absent(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value == ""
    if isinstance(value, (Mapping, list, tuple)):
        return len(value) == 0
    return False


def format_value(value: Any) -> str:
    """Render a scalar the way the remote contract expects it."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return format(value, "f")
    return str(value)


def _element(lines: list[str], name: str, value: Any, child: Optional[Schema], depth: int, path: str) -> None:
    if _is_absent(value):
        return
    pad = "  " * depth
    where = f"{path}.{name}"

    if isinstance(value, Mapping):
        if child is None:
            raise ValidationError(f"{where} does not accept nested fields")
        inner: list[str] = []
        _fields(inner, value, child, depth + 1, where)
        if inner:
            lines.append(f"{pad}<sch:{name}>")
            lines.extend(inner)
            lines.append(f"{pad}</sch:{name}>")
        return

    if isinstance(value, (list, tuple)):
        items = [item for item in value if not _is_absent(item)]
        if not items:
            return
        lines.append(f"{pad}<sch:{name}>")
        for item in items:
            if isinstance(item, Mapping):
                if child is None:
                    raise ValidationError(f"{where} does not accept nested items")
                tag = LIST_ITEM_TAGS.get(name, "GroupPatientSummary")
                lines.append(f"{pad}  <sch:{tag}>")
                _fields(lines, item, child, depth + 2, where)
                lines.append(f"{pad}  </sch:{tag}>")
            else:
                lines.append(f"{pad}  <arr:long>{xml_escape(format_value(item))}</arr:long>")
        lines.append(f"{pad}</sch:{name}>")
        return

    if child is not None:
        raise ValidationError(f"{where} expects nested fields, got a scalar")
    lines.append(f"{pad}<sch:{name}>{xml_escape(format_value(value))}</sch:{name}>")


def _fields(lines: list[str], data: Mapping, schema: Schema, depth: int, path: str) -> None:
    unknown = [key for key in data if key not in schema]
    if unknown:
        raise ValidationError(f"Undeclared field(s) for {path}: {', '.join(sorted(map(str, unknown)))}")
    for name, child in schema.items():
        if name in data:
            _element(lines, name, data[name], child, depth, path)


def _auth_lines(auth: AuthHeader, depth: int) -> list[str]:
    pad = "  " * depth
    lines = [
        f"{pad}<sch:RequestHeader>",
        f"{pad}  <sch:CustomerKey>{xml_escape(auth.customer_key)}</sch:CustomerKey>",
        f"{pad}  <sch:Password>{xml_escape(auth.password)}</sch:Password>",
        f"{pad}  <sch:User>{xml_escape(auth.user)}</sch:User>",
    ]
    if auth.practice_id:
        lines.append(f"{pad}  <sch:PracticeId>{xml_escape(auth.practice_id)}</sch:PracticeId>")
    lines.append(f"{pad}</sch:RequestHeader>")
    return lines


def _list_lines(
    spec: OperationSpec,
    fields: Union[Mapping, list, tuple, None],
    filters: Optional[Mapping],
    depth: int,
) -> list[str]:
    if fields is None or len(fields) == 0:
        selected = set(spec.select_fields)
    elif isinstance(fields, Mapping):
        selected = {name for name, wanted in fields.items() if wanted}
    else:
        selected = set(fields)
    unknown = selected - set(spec.select_fields)
    if unknown:
        raise ValidationError(f"Undeclared field(s) for {spec.name}.Fields: {', '.join(sorted(unknown))}")

    pad = "  " * depth
    lines = [f"{pad}<sch:Fields>"]
    lines.extend(f"{pad}  <sch:{name}>true</sch:{name}>" for name in spec.select_fields if name in selected)
    lines.append(f"{pad}</sch:Fields>")

    filter_lines: list[str] = []
    _fields(filter_lines, filters or {}, {name: None for name in spec.filter_fields}, depth + 1, f"{spec.name}.Filter")
    if filter_lines:
        lines.append(f"{pad}<sch:Filter>")
        lines.extend(filter_lines)
        lines.append(f"{pad}</sch:Filter>")
    return lines


def build_envelope(
    operation: str,
    fields: Union[Mapping, list, tuple, None],
    auth: AuthHeader,
    filters: Optional[Mapping] = None,
    namespace: str = SCHEMA_NS,
) -> str:
    """Build the SOAP 1.1 request envelope for ``operation``.

    ``fields`` is the request body (a mapping keyed by the operation's top
    level elements) or, for list operations, the columns to select. Unknown
    keys raise ``ValidationError`` before anything is sent.
    """
    spec = OPERATIONS.get(operation)
    if spec is None:
        raise ValidationError(f"Unknown Tebra operation: {operation}")

    body_depth = 4
    body: list[str] = _auth_lines(auth, body_depth)
    if spec.is_list:
        body.extend(_list_lines(spec, fields, filters, body_depth))
    else:
        if filters:
            raise ValidationError(f"{operation} does not take a Filter selection")
        _fields(body, fields or {}, spec.body, body_depth, operation)

    namespaces = [f'xmlns:soapenv="{SOAP11_ENVELOPE_NS}"', f'xmlns:sch="{namespace}"']
    if spec.array_namespaces:
        namespaces.append(f'xmlns:sys="{SYSTEM_NS}"')
        namespaces.append(f'xmlns:arr="{ARRAYS_NS}"')
    elif any("<arr:" in line for line in body):
        namespaces.append(f'xmlns:arr="{ARRAYS_NS}"')

    lines = [
        XML_DECLARATION,
        f"<soapenv:Envelope {' '.join(namespaces)}>",
        "  <soapenv:Header/>",
        "  <soapenv:Body>",
        f"    <sch:{operation}>",
        "      <sch:request>",
        *["  " + line for line in body],
        "      </sch:request>",
        f"    </sch:{operation}>",
        "  </soapenv:Body>",
        "</soapenv:Envelope>",
    ]
    return "\n".join(lines)


def to_soap12(envelope: str) -> str:
    """Rewrite a SOAP 1.1 envelope for the SOAP 1.2 binding."""
    return envelope.replace(
        f'xmlns:soapenv="{SOAP11_ENVELOPE_NS}"',
        f'xmlns:soapenv="{SOAP12_ENVELOPE_NS}"',
        1,
    )
