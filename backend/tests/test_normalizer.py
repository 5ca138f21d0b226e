"""
Tests for app.tebra.normalizer: alias resolution, error flags, list
metadata and malformed input.
"""

from datetime import datetime, timezone

import pytest

from app.tebra import normalizer
from app.tebra.errors import BusinessFault, MalformedResponseError, TransportError

ENVELOPE = (
    '<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/"><s:Body>{body}</s:Body></s:Envelope>'
)


def _wrap(body: str) -> str:
    return ENVELOPE.format(body=body)


GET_PATIENTS_XML = _wrap(
    '<GetPatientsResponse xmlns="http://www.kareo.com/api/schemas/"><GetPatientsResult>'
    "<ErrorResponse><IsError>false</IsError></ErrorResponse>"
    "<SecurityResponse><SecurityResultSuccess>true</SecurityResultSuccess></SecurityResponse>"
    "<Patients>"
    "<PatientData><ID>101</ID><FirstName>Jane</FirstName><LastName>Doe</LastName>"
    "<EmailAddress>jane@example.com</EmailAddress><MobilePhone>5551234567</MobilePhone></PatientData>"
    "<PatientData><PatientID>102</PatientID><FirstName>John</FirstName><LastName>Roe</LastName></PatientData>"
    "</Patients>"
    "<TotalCount>57</TotalCount><HasMore>true</HasMore><NextStartKey>abc</NextStartKey>"
    "</GetPatientsResult></GetPatientsResponse>"
)


# ---------------------------------------------------------------------------
# Parsing primitives
# ---------------------------------------------------------------------------

class TestParsing:

    def test_empty_body_is_malformed(self):
        with pytest.raises(MalformedResponseError):
            normalizer.parse_document("   ")

    def test_garbage_is_malformed_and_a_transport_error(self):
        with pytest.raises(TransportError):
            normalizer.parse_document("<html><body>502 Bad Gateway")

    def test_entity_expansion_is_refused(self):
        bomb = '<?xml version="1.0"?><!DOCTYPE x [<!ENTITY a "aaaa">]><x>&a;</x>'
        with pytest.raises(MalformedResponseError):
            normalizer.parse_document(bomb)

    def test_parse_fields_first_occurrence_wins(self):
        root = normalizer.parse_document("<r><Name>first</Name><Inner><Name>second</Name></Inner></r>")
        assert normalizer.parse_fields(root)["Name"] == "first"

    def test_local_name_strips_namespace(self):
        assert normalizer.local_name("{urn:x}PatientData") == "PatientData"
        assert normalizer.local_name("PatientData") == "PatientData"


class TestResolveAlias:

    def test_priority_order(self):
        fields = {"PatientID": "2", "ID": "1"}
        assert normalizer.resolve_alias(fields, ("ID", "PatientID")) == "1"

    def test_empty_values_are_skipped(self):
        fields = {"ID": "", "PatientID": "2"}
        assert normalizer.resolve_alias(fields, ("ID", "PatientID")) == "2"

    def test_case_insensitive_fallback(self):
        assert normalizer.resolve_alias({"PATIENTID": "7"}, ("PatientID",)) == "7"

    def test_missing(self):
        assert normalizer.resolve_alias({"Other": "x"}, ("ID",)) is None

    def test_alias_tables_cover_every_canonical_id(self):
        for kind, table in normalizer.ALIASES.items():
            assert "id" in table, kind
            assert table["id"], kind


class TestDatetimes:

    def test_iso_z(self):
        assert normalizer.parse_datetime("2025-05-01T14:00:00Z") == datetime(2025, 5, 1, 14, tzinfo=timezone.utc)

    def test_naive_iso_is_utc(self):
        parsed = normalizer.parse_datetime("2025-05-01T14:00:00")
        assert parsed.tzinfo == timezone.utc

    def test_us_format_with_meridiem(self):
        assert normalizer.parse_datetime("5/1/2025 2:30:00 PM") == datetime(2025, 5, 1, 14, 30, tzinfo=timezone.utc)

    def test_unparseable_is_none(self):
        assert normalizer.parse_datetime("next tuesday") is None
        assert normalizer.parse_datetime(None) is None


# ---------------------------------------------------------------------------
# Error flags
# ---------------------------------------------------------------------------

class TestRaiseForError:

    def test_is_error_raises_even_with_entity_fields(self):
        xml = _wrap(
            "<CreatePatientResponse><CreatePatientResult>"
            "<ErrorResponse><IsError>true</IsError><ErrorMessage>Duplicate patient</ErrorMessage></ErrorResponse>"
            "<PatientID>55</PatientID>"
            "</CreatePatientResult></CreatePatientResponse>"
        )
        with pytest.raises(BusinessFault) as exc_info:
            normalizer.raise_for_error(xml, "CreatePatient")
        assert exc_info.value.message == "Duplicate patient"
        assert exc_info.value.operation == "CreatePatient"
        assert exc_info.value.raw_xml == xml

    def test_security_failure_raises(self):
        xml = _wrap(
            "<R><SecurityResponse><SecurityResultSuccess>false</SecurityResultSuccess>"
            "<SecurityResult>Invalid customer key</SecurityResult></SecurityResponse></R>"
        )
        with pytest.raises(BusinessFault, match="Invalid customer key"):
            normalizer.raise_for_error(xml)

    def test_clean_response_returns_root(self):
        root = normalizer.raise_for_error(GET_PATIENTS_XML)
        assert normalizer.local_name(root.tag) == "Envelope"

    def test_parse_list_checks_error_before_mapping(self):
        xml = GET_PATIENTS_XML.replace("<IsError>false</IsError>", "<IsError>true</IsError>")
        with pytest.raises(BusinessFault):
            normalizer.parse_list(xml, "patient", "GetPatients")


# ---------------------------------------------------------------------------
# Canonical mapping
# ---------------------------------------------------------------------------

class TestParseList:

    def test_patients_with_mixed_id_casing(self):
        result = normalizer.parse_list(GET_PATIENTS_XML, "patient", "GetPatients")
        assert [p.id for p in result.items] == ["101", "102"]
        assert result.items[0].email == "jane@example.com"
        assert result.items[0].phone == "5551234567"
        assert result.items[1].first_name == "John"

    def test_metadata(self):
        result = normalizer.parse_list(GET_PATIENTS_XML, "patient")
        assert result.total_count == 57
        assert result.has_more is True
        assert result.next_start_key == "abc"

    def test_total_count_falls_back_to_item_count(self):
        xml = _wrap("<R><Providers><ProviderData><ID>1</ID></ProviderData><ProviderData><ID>2</ID>"
                    "</ProviderData></Providers></R>")
        result = normalizer.parse_list(xml, "provider")
        assert result.total_count == 2
        assert result.has_more is False
        assert result.next_start_key is None

    def test_appointments_parse_times(self):
        xml = _wrap(
            "<R><Appointments><AppointmentData>"
            "<ID>900</ID><PatientID>101</PatientID><ResourceID1>3</ResourceID1>"
            "<StartDate>2025-05-01T14:00:00</StartDate><EndDate>2025-05-01T14:30:00</EndDate>"
            "<ConfirmationStatus>Scheduled</ConfirmationStatus>"
            "</AppointmentData></Appointments></R>"
        )
        appt = normalizer.parse_list(xml, "appointment").items[0]
        assert appt.id == "900"
        assert appt.resource_id == "3"
        assert appt.start == datetime(2025, 5, 1, 14, tzinfo=timezone.utc)
        assert appt.status == "Scheduled"
        assert appt.raw["ResourceID1"] == "3"

    def test_provider_active_flag(self):
        xml = _wrap("<R><ProviderData><ID>1</ID><Active>true</Active>"
                    "<NationalProviderIdentifier>123</NationalProviderIdentifier></ProviderData></R>")
        provider = normalizer.parse_list(xml, "provider").items[0]
        assert provider.active is True
        assert provider.npi == "123"

    def test_appointment_reasons_in_data_blocks(self):
        xml = _wrap("<R><AppointmentReasons><AppointmentReasonData><AppointmentReasonID>7</AppointmentReasonID>"
                    "<Name>Follow up</Name></AppointmentReasonData></AppointmentReasons></R>")
        result = normalizer.parse_list(xml, "appointment_reason")
        assert [r.id for r in result.items] == ["7"]

    def test_appointment_reasons_in_plain_blocks(self):
        xml = _wrap(
            "<R><AppointmentReasons>"
            "<AppointmentReason><ID>7</ID><Name>Follow up</Name><DefaultDurationMinutes>30</DefaultDurationMinutes></AppointmentReason>"
            "<AppointmentReason><ID>8</ID><Name>New patient</Name></AppointmentReason>"
            "</AppointmentReasons></R>"
        )
        result = normalizer.parse_list(xml, "appointment_reason", "GetAppointmentReasons")
        assert [r.id for r in result.items] == ["7", "8"]
        assert result.items[0].name == "Follow up"
        assert result.items[0].duration_minutes == 30
        assert result.total_count == 2

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            normalizer.to_canonical("invoice", {})


class TestSingleAndIds:

    def test_parse_single_absent(self):
        assert normalizer.parse_single(_wrap("<R/>"), "patient", "Patient") is None

    def test_parse_single_present(self):
        xml = _wrap("<GetPatientResponse><GetPatientResult><Patient><PatientID>7</PatientID>"
                    "<FirstName>Ann</FirstName></Patient></GetPatientResult></GetPatientResponse>")
        patient = normalizer.parse_single(xml, "patient", "Patient")
        assert patient.id == "7"
        assert patient.first_name == "Ann"

    def test_extract_id_respects_tag_priority(self):
        xml = _wrap("<R><ID>1</ID><PatientID>2</PatientID></R>")
        assert normalizer.extract_id(xml, "PatientID", "ID") == "2"
        assert normalizer.extract_id(xml, "ChargeID") is None
