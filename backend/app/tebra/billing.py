"""
Charge and payment posting against Tebra accounting.

Not every Tebra deployment exposes CreateCharge / PostPayment; when no
SOAPAction candidate is accepted the call raises UnsupportedOperationError
so callers can record the sync as "stored" rather than "failed".
"""

import logging
from datetime import date
from typing import Optional, TypedDict

from app.tebra import normalizer
from app.tebra.errors import ContractMismatchError, UnsupportedOperationError, ValidationError
from app.tebra.records import ChargeResult, PaymentResult

logger = logging.getLogger(__name__)

DEFAULT_PLACE_OF_SERVICE = "10"  # telehealth in patient's home


class ChargeItem(TypedDict, total=False):
    cpt: str
    modifier: str
    units: int
    amount_cents: int


def cents_to_dollars(cents: Optional[int]) -> str:
    return f"{round(int(cents or 0)) / 100:.2f}"


async def _send(service, operation: str, fields: dict, practice_id: Optional[str]) -> str:
    try:
        return await service.call(operation, fields, practice_id=practice_id)
    except ContractMismatchError as e:
        logger.warning("Tebra %s is not supported by this endpoint", operation)
        raise UnsupportedOperationError(
            f"Tebra {operation} is not supported by the configured endpoint", e.raw_xml,
        ) from e


async def create_charge(
    service,
    *,
    patient_id: str,
    items: list[ChargeItem],
    practice_id: Optional[str] = None,
    date_of_service: Optional[date] = None,
    place_of_service: str = DEFAULT_PLACE_OF_SERVICE,
) -> ChargeResult:
    if not patient_id:
        raise ValidationError("patient_id is required to create a charge")
    if not items:
        raise ValidationError("at least one charge item is required")

    practice_id = practice_id or service.practice_id
    charge = {
        "PatientId": patient_id,
        "DateOfService": date_of_service or date.today(),
        "PlaceOfService": place_of_service,
        "ChargeItems": [
            {
                "CptCode": item["cpt"],
                "Modifier": item.get("modifier"),
                "Units": item.get("units") or 1,
                "Amount": cents_to_dollars(item.get("amount_cents")),
            }
            for item in items
        ],
    }
    raw = await _send(service, "CreateCharge", {"ChargeToCreate": charge}, practice_id)
    charge_id = normalizer.extract_id(raw, "ChargeId", "ChargeID")
    logger.info("Created Tebra charge %s for patient %s", charge_id, patient_id)
    return ChargeResult(charge_id=charge_id, raw_xml=raw)


async def post_payment(
    service,
    *,
    patient_id: str,
    amount_cents: int,
    practice_id: Optional[str] = None,
    reference_number: Optional[str] = None,
    payment_date: Optional[date] = None,
    payment_method: str = "CreditCard",
) -> PaymentResult:
    if not patient_id:
        raise ValidationError("patient_id is required to post a payment")

    practice_id = practice_id or service.practice_id
    payment = {
        "PatientId": patient_id,
        "Amount": cents_to_dollars(amount_cents),
        "PaymentMethod": payment_method,
        "ReferenceNumber": reference_number,
        "Date": payment_date or date.today(),
    }
    raw = await _send(service, "PostPayment", {"PaymentToPost": payment}, practice_id)
    payment_id = normalizer.extract_id(raw, "PaymentId", "PaymentID")
    logger.info("Posted Tebra payment %s for patient %s", payment_id, patient_id)
    return PaymentResult(payment_id=payment_id, raw_xml=raw)
