"""
SOAP fault classification.

The binding-mismatch markers live in one list so they can be extended without
touching the negotiation loop in ``app.tebra.client``.
"""

import enum
import re
from typing import Optional

from defusedxml import ElementTree as SafeET


class FaultKind(str, enum.Enum):
    NONE = "none"
    CONTRACT_MISMATCH = "contract_mismatch"
    BUSINESS = "business"
    # Gateway or server error with no SOAP fault in the body; retryable
    UNAVAILABLE = "unavailable"


CONTRACT_MISMATCH_PATTERNS = [
    re.compile(r"ContractFilter", re.IGNORECASE),
    re.compile(r"ActionNotSupported", re.IGNORECASE),
    re.compile(r"Action.*cannot be processed", re.IGNORECASE | re.DOTALL),
    re.compile(r"DestinationUnreachable", re.IGNORECASE),
]

# 415 Unsupported Media Type: wrong SOAP version for this binding
MEDIA_TYPE_MISMATCH_STATUS = 415

_FAULT_MARKER = re.compile(r"<(?:[\w.-]+:)?Fault[\s>/]")


def is_contract_mismatch_text(text: str) -> bool:
    return any(p.search(text or "") for p in CONTRACT_MISMATCH_PATTERNS)


def has_fault(raw_xml: str) -> bool:
    return bool(_FAULT_MARKER.search(raw_xml or ""))


def classify(status_code: int, raw_xml: str) -> FaultKind:
    """Classify one HTTP response from the SOAP endpoint."""
    if status_code == MEDIA_TYPE_MISMATCH_STATUS:
        return FaultKind.CONTRACT_MISMATCH
    if is_contract_mismatch_text(raw_xml):
        return FaultKind.CONTRACT_MISMATCH
    if has_fault(raw_xml):
        return FaultKind.BUSINESS
    if status_code >= 500:
        return FaultKind.UNAVAILABLE
    if status_code >= 400:
        return FaultKind.BUSINESS
    return FaultKind.NONE


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1] if "}" in tag else tag


def extract_fault_message(raw_xml: str) -> str:
    """Return the human readable fault reason.

    Tries ``faultstring`` (SOAP 1.1), then ``Reason/Text`` (SOAP 1.2), then
    the WCF ``InternalServiceFault`` detail marker.
    """
    faultstring: Optional[str] = None
    reason_text: Optional[str] = None
    try:
        root = SafeET.fromstring(raw_xml)
    except Exception:
        root = None

    if root is not None:
        for el in root.iter():
            name = _local(el.tag)
            if name == "faultstring" and faultstring is None and (el.text or "").strip():
                faultstring = el.text.strip()
            elif name == "Reason" and reason_text is None:
                for child in el.iter():
                    if _local(child.tag) == "Text" and (child.text or "").strip():
                        reason_text = child.text.strip()
                        break
    else:
        match = re.search(r"<(?:\w+:)?faultstring[^>]*>(.*?)</", raw_xml or "", re.DOTALL)
        if match:
            faultstring = match.group(1).strip()

    if faultstring:
        return faultstring
    if reason_text:
        return reason_text
    if "InternalServiceFault" in (raw_xml or ""):
        return "InternalServiceFault"
    return "Unknown SOAP fault"
