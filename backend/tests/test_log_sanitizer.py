"""
Tests for PHI and credential redaction in log output.
"""

import logging

from app.hipaa.log_sanitizer import REDACTED, PHISanitizationFilter, sanitize_dict, sanitize_text


class TestSanitizeText:

    def test_soap_credentials_redacted(self):
        xml = "<sch:User>admin</sch:User><sch:Password>hunter2</sch:Password><sch:CustomerKey>abc</sch:CustomerKey>"
        cleaned = sanitize_text(xml)
        assert "hunter2" not in cleaned
        assert "abc" not in cleaned
        assert "admin" not in cleaned
        assert f"<sch:Password>{REDACTED}</sch:Password>" in cleaned

    def test_patient_identity_elements_redacted(self):
        xml = '<FirstName>Jane</FirstName><DateofBirth xsi:nil="false">1980-01-01</DateofBirth><PatientID>42</PatientID>'
        cleaned = sanitize_text(xml)
        assert "Jane" not in cleaned
        assert "1980-01-01" not in cleaned
        assert "<PatientID>42</PatientID>" in cleaned

    def test_free_text_patterns(self):
        cleaned = sanitize_text("Contact jane@example.com or 555-123-4567, SSN 123-45-6789")
        assert "jane@example.com" not in cleaned
        assert "555-123-4567" not in cleaned
        assert "123-45-6789" not in cleaned

    def test_non_string_passthrough(self):
        assert sanitize_text(42) == 42


class TestSanitizeDict:

    def test_known_keys_redacted(self):
        data = {"first_name": "Jane", "customer-email": "x", "status": "ok", "nested": [{"password": "p"}]}
        cleaned = sanitize_dict(data)
        assert cleaned["first_name"] == REDACTED
        assert cleaned["status"] == "ok"
        assert cleaned["nested"][0]["password"] == REDACTED


class TestFilter:

    def _record(self, msg, args):
        return logging.LogRecord("test", logging.INFO, __file__, 1, msg, args, None)

    def test_message_and_args_redacted(self):
        record = self._record("Patient %s called from %s", ("jane@example.com", "555-123-4567"))
        assert PHISanitizationFilter().filter(record) is True
        assert "jane@example.com" not in record.getMessage()
        assert "555-123-4567" not in record.getMessage()

    def test_envelope_in_message_redacted(self):
        record = self._record("Request: <sch:Password>secret</sch:Password>", None)
        PHISanitizationFilter().filter(record)
        assert "secret" not in record.getMessage()
