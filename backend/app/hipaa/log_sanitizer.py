"""
PHI Log Sanitization Filter: strips Protected Health Information and Tebra
credentials from log output.

HIPAA requires that PHI is never written to application logs. This filter
intercepts all log records and redacts:
  - Phone numbers
  - SSN patterns
  - Email addresses
  - SOAP elements carrying credentials or patient identity
    (``<sch:Password>``, ``<sch:CustomerKey>``, ``<FirstName>`` ...)
  - Values under known PHI / secret keys in dict-style arguments
"""

import logging
import re
from typing import Any

# Regex patterns for PHI detection
_PHONE_PATTERN = re.compile(
    r"(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}"
)
_SSN_PATTERN = re.compile(r"\b\d{3}-\d{2}-\d{4}\b")
_EMAIL_PATTERN = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")

# Tebra SOAP elements whose text must never reach the logs
_SENSITIVE_ELEMENTS = (
    "Password", "CustomerKey", "User",
    "FirstName", "LastName", "MiddleName", "PatientFullName", "FullName",
    "DateofBirth", "DateOfBirth", "DOB", "SocialSecurityNumber", "SSN",
    "EmailAddress", "Email", "HomePhone", "MobilePhone", "WorkPhone",
    "EmergencyName", "EmergencyPhone", "AddressLine1", "AddressLine2",
    "FileContent",
)
_XML_ELEMENT_PATTERN = re.compile(
    r"<((?:[\w.-]+:)?(?:" + "|".join(_SENSITIVE_ELEMENTS) + r"))(\s[^>]*)?>(.*?)</\1>",
    re.DOTALL,
)

# Keys whose values should be redacted in dict-style log messages
_PHI_KEYS = frozenset({
    "first_name", "last_name", "firstname", "lastname",
    "patient_name", "patientname", "full_name", "fullname",
    "phone", "home_phone", "mobile_phone", "work_phone",
    "dob", "dateofbirth", "date_of_birth", "ssn", "social_security",
    "socialsecuritynumber", "email", "emailaddress", "customer_email",
    "address", "addressline1", "address_line1",
    "password", "customer_key", "customerkey", "file_content", "filecontent",
})

REDACTED = "[REDACTED]"


def _redact_element(match: re.Match) -> str:
    tag, attrs = match.group(1), match.group(2) or ""
    return f"<{tag}{attrs}>{REDACTED}</{tag}>"


def sanitize_text(text: str) -> str:
    """Remove PHI patterns from a text string."""
    if not isinstance(text, str):
        return text
    text = _XML_ELEMENT_PATTERN.sub(_redact_element, text)
    text = _SSN_PATTERN.sub(REDACTED, text)
    text = _EMAIL_PATTERN.sub(REDACTED, text)
    text = _PHONE_PATTERN.sub(REDACTED, text)
    return text


def sanitize_dict(data: Any, depth: int = 0) -> Any:
    """Recursively sanitize PHI values in dictionaries."""
    if depth > 10:
        return data
    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            if isinstance(key, str) and key.lower().replace("-", "_") in _PHI_KEYS:
                result[key] = REDACTED
            else:
                result[key] = sanitize_dict(value, depth + 1)
        return result
    if isinstance(data, (list, tuple)):
        return type(data)(sanitize_dict(item, depth + 1) for item in data)
    if isinstance(data, str):
        return sanitize_text(data)
    return data


class PHISanitizationFilter(logging.Filter):
    """Logging filter that redacts PHI from all log messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        # Sanitize the message
        if isinstance(record.msg, str):
            record.msg = sanitize_text(record.msg)

        # Sanitize format arguments
        if record.args:
            if isinstance(record.args, dict):
                record.args = sanitize_dict(record.args)
            elif isinstance(record.args, tuple):
                record.args = tuple(
                    sanitize_dict(a) if isinstance(a, dict)
                    else sanitize_text(a) if isinstance(a, str)
                    else a
                    for a in record.args
                )

        # Sanitize exception info text if present
        if record.exc_text and isinstance(record.exc_text, str):
            record.exc_text = sanitize_text(record.exc_text)

        return True
