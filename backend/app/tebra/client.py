"""
ProtocolClient: posts envelopes to the Tebra SOAP endpoint and negotiates
the SOAPAction / binding combination the deployment accepts.

Each candidate action is tried with the SOAP 1.1 binding first; if every
candidate is rejected as a contract mismatch the same list is replayed with
the SOAP 1.2 binding. Any other fault stops negotiation immediately.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

import httpx

from app.config import Settings, get_settings
from app.tebra import faults
from app.tebra.envelope import to_soap12
from app.tebra.errors import BusinessFault, ContractMismatchError, TransportError
from app.utils.http_client import get_http_client

logger = logging.getLogger(__name__)

SOAP11_CONTENT_TYPE = "text/xml; charset=utf-8"
SOAP12_CONTENT_TYPE = 'application/soap+xml; charset=utf-8; action="{action}"'


@dataclass(frozen=True)
class Success:
    raw_xml: str
    action: str = ""


@dataclass(frozen=True)
class ContractMismatch:
    raw_xml: str


@dataclass(frozen=True)
class Fault:
    message: str
    raw_xml: str


TransportOutcome = Union[Success, ContractMismatch, Fault]


def build_action_candidates(operation: str, settings: Settings) -> list[str]:
    """Ordered, de-duplicated SOAPAction candidates for ``operation``."""
    base = settings.TEBRA_SOAP_ACTION_BASE.strip()
    if base:
        first = base.format(operation=operation) if "{operation}" in base else f"{base.rstrip('/')}/{operation}"
    else:
        first = f"{settings.TEBRA_NAMESPACE}KareoServices/{operation}"

    candidates: list[str] = []
    for action in [first, *(t.format(operation=operation) for t in settings.soap_action_fallbacks())]:
        if action not in candidates:
            candidates.append(action)
    return candidates


class ProtocolClient:
    """Sends envelopes and classifies the responses."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self._http_client = http_client

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is not None and not self._http_client.is_closed:
            return self._http_client
        return get_http_client()

    async def _post(self, operation: str, body: str, headers: dict) -> httpx.Response:
        timeout = httpx.Timeout(self.settings.TEBRA_TIMEOUT_SECONDS)
        try:
            return await self._client().post(
                self.settings.TEBRA_SOAP_ENDPOINT,
                content=body.encode("utf-8"),
                headers=headers,
                timeout=timeout,
            )
        except httpx.TimeoutException as e:
            logger.warning("Tebra %s timed out after %.1fs", operation, self.settings.TEBRA_TIMEOUT_SECONDS)
            raise TransportError(f"Tebra {operation} timed out") from e
        except httpx.HTTPError as e:
            logger.warning("Tebra %s transport error: %s", operation, e)
            raise TransportError(f"Tebra {operation} transport error: {e}") from e

    async def call(self, operation: str, envelope: str) -> TransportOutcome:
        """Send ``envelope`` and return the classified outcome.

        Raises TransportError on timeout or network failure; candidates are
        not retried past a timeout.
        """
        candidates = build_action_candidates(operation, self.settings)
        last_raw = ""

        passes = (
            ("1.1", envelope, lambda action: {
                "Content-Type": SOAP11_CONTENT_TYPE,
                "SOAPAction": f'"{action}"',
            }),
            ("1.2", to_soap12(envelope), lambda action: {
                "Content-Type": SOAP12_CONTENT_TYPE.format(action=action),
            }),
        )

        for version, body, make_headers in passes:
            for action in candidates:
                response = await self._post(operation, body, make_headers(action))
                raw = response.text
                kind = faults.classify(response.status_code, raw)

                if kind is faults.FaultKind.NONE:
                    logger.debug("Tebra %s succeeded (SOAP %s, action=%s)", operation, version, action)
                    return Success(raw_xml=raw, action=action)

                if kind is faults.FaultKind.CONTRACT_MISMATCH:
                    logger.debug(
                        "Tebra %s contract mismatch (SOAP %s, action=%s, status=%d)",
                        operation, version, action, response.status_code,
                    )
                    last_raw = raw
                    continue

                if kind is faults.FaultKind.UNAVAILABLE:
                    logger.warning("Tebra %s unavailable (status=%d)", operation, response.status_code)
                    raise TransportError(
                        f"Tebra {operation} unavailable: HTTP {response.status_code}", raw,
                    )

                message = faults.extract_fault_message(raw)
                logger.warning("Tebra %s fault (status=%d): %s", operation, response.status_code, message)
                return Fault(message=message, raw_xml=raw)

        logger.error("Tebra %s: no action candidate accepted (%d tried per binding)", operation, len(candidates))
        return ContractMismatch(raw_xml=last_raw)

    async def call_or_raise(self, operation: str, envelope: str) -> str:
        """Like ``call`` but returns the raw XML or raises the mapped error."""
        outcome = await self.call(operation, envelope)
        if isinstance(outcome, Success):
            return outcome.raw_xml
        if isinstance(outcome, Fault):
            raise BusinessFault(outcome.message, outcome.raw_xml, operation=operation)
        raise ContractMismatchError(
            f"Tebra {operation}: no SOAP action/binding accepted by the endpoint",
            outcome.raw_xml,
        )
