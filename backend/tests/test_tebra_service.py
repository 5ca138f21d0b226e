"""
Tests for TebraService and the billing operations.

The ProtocolClient is replaced by a MagicMock whose ``call_or_raise`` is an
AsyncMock; each test queues the raw XML the endpoint would return and then
inspects the envelopes that were sent.
"""

import base64
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.config import Settings
from app.tebra import service as service_module
from app.tebra.errors import (
    BusinessFault,
    ContractMismatchError,
    TebraError,
    UnsupportedOperationError,
    ValidationError,
)
from app.tebra.service import (
    MAX_DOCUMENT_BYTES,
    TebraService,
    coerce_base64,
    format_phone,
    map_gender,
    trim_base64,
)
from app.utils.cache import TTLCache, chart_cache_key

T0 = datetime(2025, 6, 2, 9, 0, tzinfo=timezone.utc)

ENVELOPE = '<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/"><s:Body>{}</s:Body></s:Envelope>'


def _xml(body: str) -> str:
    return ENVELOPE.format(body)


def _settings(**overrides) -> Settings:
    values = dict(
        TEBRA_CUSTOMER_KEY="ck",
        TEBRA_USER="user",
        TEBRA_PASSWORD="pw",
        TEBRA_PRACTICE_ID="1",
        TEBRA_PRACTICE_NAME="Sunrise Clinic",
        TEBRA_DEFAULT_APPT_REASON_ID="",
    )
    values.update(overrides)
    return Settings(**values)


def _service(*responses, cache=None, **settings) -> TebraService:
    client = MagicMock()
    client.call_or_raise = AsyncMock(side_effect=list(responses))
    return TebraService(client=client, settings=_settings(**settings),
                        cache=cache if cache is not None else TTLCache(60))


def _sent(service: TebraService, index: int = -1) -> tuple[str, str]:
    call = service.client.call_or_raise.await_args_list[index]
    return call.args[0], call.args[1]


def _db() -> MagicMock:
    db = MagicMock()
    db.execute = AsyncMock()
    db.add = MagicMock()
    db.flush = AsyncMock()
    db.refresh = AsyncMock()
    db.commit = AsyncMock()
    savepoint = MagicMock()
    savepoint.__aenter__ = AsyncMock(return_value=savepoint)
    savepoint.__aexit__ = AsyncMock(return_value=False)
    db.begin_nested = MagicMock(return_value=savepoint)
    return db


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class TestHelpers:

    def test_format_phone_keeps_last_ten_digits(self):
        assert format_phone("+1 (555) 123-4567") == "5551234567"
        assert format_phone("") is None

    def test_map_gender(self):
        assert map_gender("f") == "Female"
        assert map_gender("MALE") == "Male"
        assert map_gender("Unknown") == "Unknown"

    def test_coerce_base64(self):
        assert coerce_base64(b"hi") == "aGk="
        assert coerce_base64("aGk=") == "aGk="
        assert base64.b64decode(coerce_base64("plain text!")) == b"plain text!"
        assert json.loads(base64.b64decode(coerce_base64({"a": 1}))) == {"a": 1}

    def test_trim_base64(self):
        small = base64.b64encode(b"x" * 10).decode()
        assert trim_base64(small) == (small, False)
        big = base64.b64encode(b"y" * 100).decode()
        trimmed, was_trimmed = trim_base64(big, max_bytes=40)
        assert was_trimmed is True
        assert base64.b64decode(trimmed) == b"y" * 40


# ---------------------------------------------------------------------------
# Patients
# ---------------------------------------------------------------------------

class TestPatients:

    @pytest.mark.asyncio
    async def test_create_patient_requires_names(self):
        service = _service()
        with pytest.raises(ValidationError):
            await service.create_patient({"FirstName": "Jane"})
        service.client.call_or_raise.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_create_patient_normalizes_and_defaults_practice(self):
        service = _service(_xml("<CreatePatientResponse><PatientID>321</PatientID></CreatePatientResponse>"))
        patient = await service.create_patient({
            "FirstName": "Jane", "LastName": "Doe", "MobilePhone": "(555) 123-4567", "Gender": "f",
        })
        operation, envelope = _sent(service)
        assert operation == "CreatePatient"
        assert "<sch:MobilePhone>5551234567</sch:MobilePhone>" in envelope
        assert "<sch:Gender>Female</sch:Gender>" in envelope
        assert "<sch:PracticeName>Sunrise Clinic</sch:PracticeName>" in envelope
        assert patient.id == "321"
        assert patient.first_name == "Jane"

    @pytest.mark.asyncio
    async def test_create_patient_without_id_is_a_fault(self):
        service = _service(_xml("<CreatePatientResponse/>"))
        with pytest.raises(BusinessFault):
            await service.create_patient({"FirstName": "Jane", "LastName": "Doe"})

    @pytest.mark.asyncio
    async def test_is_error_response_raises(self):
        service = _service(_xml(
            "<R><ErrorResponse><IsError>true</IsError><ErrorMessage>Bad DOB</ErrorMessage></ErrorResponse>"
            "<PatientID>1</PatientID></R>"
        ))
        with pytest.raises(BusinessFault, match="Bad DOB"):
            await service.create_patient({"FirstName": "Jane", "LastName": "Doe"})

    @pytest.mark.asyncio
    async def test_get_patient(self):
        service = _service(_xml("<R><Patient><ID>9</ID><FirstName>Ann</FirstName></Patient></R>"))
        patient = await service.get_patient("9")
        assert patient.id == "9"
        assert "<sch:PatientID>9</sch:PatientID>" in _sent(service)[1]

    @pytest.mark.asyncio
    async def test_find_or_create_returns_match(self):
        service = _service(_xml(
            "<R><PatientData><ID>5</ID><EmailAddress>Jane@Example.com</EmailAddress></PatientData></R>"
        ))
        patient = await service.find_or_create_patient_by_email("jane@example.com")
        assert patient.id == "5"
        assert service.client.call_or_raise.await_count == 1

    @pytest.mark.asyncio
    async def test_find_or_create_creates_after_failed_search(self):
        service = _service(
            BusinessFault("search down"),
            _xml("<R><PatientID>77</PatientID></R>"),
        )
        patient = await service.find_or_create_patient_by_email("new@example.com")
        assert patient.id == "77"
        assert _sent(service, 1)[0] == "CreatePatient"
        assert "<sch:FirstName>Unknown</sch:FirstName>" in _sent(service, 1)[1]


# ---------------------------------------------------------------------------
# Appointments
# ---------------------------------------------------------------------------

class TestAppointments:

    @pytest.mark.asyncio
    async def test_create_requires_reason(self):
        service = _service()
        with pytest.raises(ValidationError, match="AppointmentReasonId"):
            await service.create_appointment({"PatientId": "1", "StartTime": T0, "EndTime": T0 + timedelta(hours=1)})

    @pytest.mark.asyncio
    async def test_create_uses_default_reason_and_defaults(self):
        service = _service(
            _xml("<R><AppointmentId>555</AppointmentId></R>"), TEBRA_DEFAULT_APPT_REASON_ID="42",
        )
        appointment = await service.create_appointment(
            {"PatientId": "1", "StartTime": T0, "EndTime": T0 + timedelta(minutes=30)},
        )
        envelope = _sent(service)[1]
        assert "<sch:AppointmentReasonId>42</sch:AppointmentReasonId>" in envelope
        assert "<sch:AppointmentStatus>Scheduled</sch:AppointmentStatus>" in envelope
        assert "<sch:WasCreatedOnline>true</sch:WasCreatedOnline>" in envelope
        assert appointment.id == "555"
        assert appointment.start == T0

    @pytest.mark.asyncio
    async def test_create_rejects_inverted_times(self):
        service = _service(TEBRA_DEFAULT_APPT_REASON_ID="42")
        with pytest.raises(ValidationError):
            await service.create_appointment({"PatientId": "1", "StartTime": T0, "EndTime": T0})

    @pytest.mark.asyncio
    async def test_update_fills_required_fields_from_current(self):
        current = _xml(
            "<R><Appointment><ID>7</ID><PatientID>1</PatientID><ProviderID>3</ProviderID>"
            "<AppointmentReasonID>42</AppointmentReasonID><AppointmentStatus>Scheduled</AppointmentStatus>"
            "<ServiceLocationId>8</ServiceLocationId><AppointmentName>Visit</AppointmentName>"
            "<StartTime>2025-06-02T09:00:00Z</StartTime><EndTime>2025-06-02T09:30:00Z</EndTime>"
            "</Appointment></R>"
        )
        updated = _xml("<R><Appointment><ID>7</ID><Notes>moved</Notes></Appointment></R>")
        service = _service(current, updated)

        appointment = await service.update_appointment("7", {"Notes": "moved"})

        assert _sent(service, 0)[0] == "GetAppointment"
        operation, envelope = _sent(service, 1)
        assert operation == "UpdateAppointment"
        for fragment in (
            "<sch:AppointmentId>7</sch:AppointmentId>",
            "<sch:PatientId>1</sch:PatientId>",
            "<sch:ResourceId>3</sch:ResourceId>",
            "<sch:ServiceLocationId>8</sch:ServiceLocationId>",
            "<sch:StartTime>2025-06-02T09:00:00Z</sch:StartTime>",
            "<sch:MaxAttendees>1</sch:MaxAttendees>",
        ):
            assert fragment in envelope
        assert appointment.id == "7"

    @pytest.mark.asyncio
    async def test_delete_appointment(self):
        service = _service(_xml("<R/>"))
        assert await service.delete_appointment("7") is True
        assert _sent(service)[0] == "DeleteAppointment"

    @pytest.mark.asyncio
    async def test_appointment_reasons_require_practice(self):
        service = _service(TEBRA_PRACTICE_ID="")
        with pytest.raises(ValidationError):
            await service.get_appointment_reasons()


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

class TestDocuments:

    @pytest.mark.asyncio
    async def test_create_document_stores_and_invalidates_chart(self):
        cache = TTLCache(60)
        cache.set(chart_cache_key("P1", "summary"), {"stale": True})
        service = _service(_xml("<R><DocumentID>D1</DocumentID></R>"), cache=cache)
        db = _db()

        with patch.object(service_module.document_store, "store_document", new_callable=AsyncMock) as store:
            document = await service.create_document(
                db, patient_id="P1", name="Payment Receipt", file_content={"amount": 10}, label="Payment",
            )

        assert document.id == "D1"
        assert document.file_name == "payment-receipt.json"
        store.assert_awaited_once()
        assert store.await_args.kwargs["tebra_document_id"] == "D1"
        assert cache.get(chart_cache_key("P1", "summary")) is None

    @pytest.mark.asyncio
    async def test_rejected_full_payload_retries_minimal(self):
        service = _service(BusinessFault("Label invalid"), _xml("<R><DocumentId>D2</DocumentId></R>"))
        with patch.object(service_module.document_store, "store_document", new_callable=AsyncMock):
            document = await service.create_document(
                _db(), patient_id="P1", name="Note", file_content="hello",
                label="Odd", document_notes="n",
            )
        assert document.id == "D2"
        retry_envelope = _sent(service, 1)[1]
        assert "<sch:Label>" not in retry_envelope
        assert "<sch:DocumentNotes>" not in retry_envelope
        assert "<sch:FileContent>" in retry_envelope

    @pytest.mark.asyncio
    async def test_oversized_content_is_trimmed(self):
        service = _service(_xml("<R><DocumentID>D3</DocumentID></R>"))
        with patch.object(service_module.document_store, "store_document", new_callable=AsyncMock) as store:
            await service.create_document(
                _db(), patient_id="P1", name="Scan", file_content=b"z" * (MAX_DOCUMENT_BYTES + 500),
            )
        stored = store.await_args.kwargs["file_content_base64"]
        assert len(base64.b64decode(stored)) == MAX_DOCUMENT_BYTES

    @pytest.mark.asyncio
    async def test_local_store_failure_does_not_fail_creation(self):
        service = _service(_xml("<R><DocumentID>D4</DocumentID></R>"))
        failing = AsyncMock(side_effect=RuntimeError("db down"))
        with patch.object(service_module.document_store, "store_document", failing):
            document = await service.create_document(_db(), patient_id="P1", name="Note", file_content="x")
        assert document.id == "D4"

    @pytest.mark.asyncio
    async def test_local_store_failure_is_rolled_back_to_savepoint(self):
        service = _service(_xml("<R><DocumentID>D5</DocumentID></R>"))
        db = _db()
        failing = AsyncMock(side_effect=RuntimeError("constraint violated"))
        with patch.object(service_module.document_store, "store_document", failing):
            document = await service.create_document(db, patient_id="P1", name="Note", file_content="x")
            await db.commit()

        assert document.id == "D5"
        db.begin_nested.assert_called_once_with()
        savepoint = db.begin_nested.return_value
        assert savepoint.__aexit__.await_args.args[0] is RuntimeError
        db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_local_store_runs_inside_savepoint(self):
        service = _service(_xml("<R><DocumentID>D6</DocumentID></R>"))
        db = _db()
        order = []
        savepoint = db.begin_nested.return_value
        savepoint.__aenter__.side_effect = lambda: order.append("savepoint")
        store = AsyncMock(side_effect=lambda *a, **kw: order.append("store"))
        with patch.object(service_module.document_store, "store_document", store):
            await service.create_document(db, patient_id="P1", name="Note", file_content="x")

        assert order == ["savepoint", "store"]
        assert savepoint.__aexit__.await_args.args[0] is None

    @pytest.mark.asyncio
    async def test_patient_documents_are_cached_per_filter(self):
        cache = TTLCache(60)
        service = _service(cache=cache)
        row = MagicMock()
        row.to_dict.return_value = {"id": 1, "name": "Payment Receipt", "label": "Payment"}
        lookup = AsyncMock(return_value=[row])
        with patch.object(service_module.document_store, "get_documents_for_patient", lookup):
            first = await service.get_documents_for_patient(_db(), "P1", label="Payment")
            second = await service.get_documents_for_patient(_db(), "P1", label="Payment")
            await service.get_documents_for_patient(_db(), "P1", label="Intake")

        assert first == second == [{"id": 1, "name": "Payment Receipt", "label": "Payment"}]
        assert lookup.await_count == 2
        assert cache.get(chart_cache_key("P1", "documents:Payment:")) == first

    @pytest.mark.asyncio
    async def test_new_document_invalidates_cached_listing(self):
        cache = TTLCache(60)
        service = _service(_xml("<R><DocumentID>D7</DocumentID></R>"), cache=cache)
        lookup = AsyncMock(return_value=[])
        with patch.object(service_module.document_store, "get_documents_for_patient", lookup), \
             patch.object(service_module.document_store, "store_document", new_callable=AsyncMock):
            await service.get_documents_for_patient(_db(), "P1")
            await service.create_document(_db(), patient_id="P1", name="Note", file_content="x")
            await service.get_documents_for_patient(_db(), "P1")

        assert lookup.await_count == 2

    @pytest.mark.asyncio
    async def test_create_document_validates_before_sending(self):
        service = _service()
        with pytest.raises(ValidationError):
            await service.create_document(_db(), patient_id="", name="Note", file_content="x")
        service.client.call_or_raise.assert_not_awaited()


# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------

class TestBilling:

    @pytest.mark.asyncio
    async def test_create_charge(self):
        service = _service(_xml("<R><ChargeId>CH1</ChargeId></R>"))
        result = await service.create_charge(
            patient_id="P1",
            items=[{"cpt": "99213", "modifier": "95", "units": 1, "amount_cents": 15000}],
        )
        operation, envelope = _sent(service)
        assert operation == "CreateCharge"
        assert "<sch:Amount>150.00</sch:Amount>" in envelope
        assert "<sch:PlaceOfService>10</sch:PlaceOfService>" in envelope
        assert "<sch:PracticeId>1</sch:PracticeId>" in envelope
        assert result.charge_id == "CH1"

    @pytest.mark.asyncio
    async def test_post_payment(self):
        service = _service(_xml("<R><PaymentID>PM1</PaymentID></R>"))
        result = await service.post_payment(patient_id="P1", amount_cents=2599, reference_number="pi_1")
        envelope = _sent(service)[1]
        assert "<sch:Amount>25.99</sch:Amount>" in envelope
        assert "<sch:ReferenceNumber>pi_1</sch:ReferenceNumber>" in envelope
        assert result.payment_id == "PM1"

    @pytest.mark.asyncio
    async def test_contract_mismatch_becomes_unsupported(self):
        service = _service(ContractMismatchError("no binding"))
        with pytest.raises(UnsupportedOperationError):
            await service.post_payment(patient_id="P1", amount_cents=100)

    @pytest.mark.asyncio
    async def test_unsupported_is_a_tebra_error(self):
        assert issubclass(UnsupportedOperationError, TebraError)
