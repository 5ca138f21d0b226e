"""
Error taxonomy for the Tebra integration.

Transport and protocol failures are reclassified at the ProtocolClient
boundary; domain callers see BusinessFault, ValidationError and
UnsupportedOperationError plus the TebraError catch-all.
"""

from typing import Optional


class TebraError(Exception):
    """Base class for every Tebra integration failure."""

    def __init__(self, message: str, raw_xml: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.raw_xml = raw_xml


class TransportError(TebraError):
    """Network failure or timeout talking to the SOAP endpoint. Retryable by the caller."""


class MalformedResponseError(TransportError):
    """The endpoint answered with something that is not parseable XML."""


class ContractMismatchError(TebraError):
    """Every action candidate was rejected as the wrong binding/contract."""


class BusinessFault(TebraError):
    """The remote service explicitly rejected the operation."""

    def __init__(self, message: str, raw_xml: Optional[str] = None, operation: str = ""):
        super().__init__(message, raw_xml)
        self.operation = operation


class ValidationError(TebraError):
    """A required domain field is missing; no remote call was made."""


class SlotUnavailableError(ValidationError):
    """No conflict-free slot was found within the allowed number of shifts."""


class UnsupportedOperationError(TebraError):
    """The remote contract does not implement this operation at all."""
