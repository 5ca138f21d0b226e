"""
Stripe payment webhooks -> Tebra accounting.

A delivery is durably recorded as ``received`` before any remote billing
call.  The charge and payment are then attempted best effort; whatever
happens is written back to the same ``billing_sync`` row so it can be
retried later by event id.
"""

import logging
import re
import time
from datetime import date
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.models.billing_sync import SYNCED_STATUSES
from app.services import billing_sync_store as store
from app.tebra.errors import TebraError, UnsupportedOperationError
from app.tebra.service import TebraService
from app.utils.cache import ProcessedEventMarker, processed_events

logger = logging.getLogger(__name__)

HANDLED_EVENT_TYPES = ("checkout.session.completed", "payment_intent.succeeded")

# Telemedicine office visit
WEBHOOK_CPT_CODE = "99213"
WEBHOOK_CPT_MODIFIER = "95"

_CONTRACT_MISMATCH_RE = re.compile(r"ContractFilter|Action.*cannot be processed", re.IGNORECASE | re.DOTALL)


def _now_ms() -> int:
    return int(time.time() * 1000)


def extract_email(event: dict) -> Optional[str]:
    obj = event.get("data", {}).get("object") or {}
    metadata = obj.get("metadata") or {}
    if event.get("type") == "checkout.session.completed":
        details = obj.get("customer_details") or {}
        return details.get("email") or obj.get("customer_email") or metadata.get("email") or None
    if event.get("type") == "payment_intent.succeeded":
        return obj.get("receipt_email") or metadata.get("email") or None
    return None


def extract_payment_intent_id(event: dict) -> Optional[str]:
    obj = event.get("data", {}).get("object") or {}
    if event.get("type") == "checkout.session.completed":
        return obj.get("payment_intent") or obj.get("id") or None
    return obj.get("id") or obj.get("payment_intent") or None


def extract_amount_cents(obj: dict) -> int:
    amount = obj.get("amount_total")
    if amount is None:
        amount = obj.get("amount")
    return int(amount or 0)


async def sync_charge_and_payment(
    service: TebraService,
    *,
    patient_id: str,
    practice_id: Optional[str],
    amount_cents: int,
    reference_number: Optional[str],
    cpt_code: str = WEBHOOK_CPT_CODE,
    modifier: Optional[str] = WEBHOOK_CPT_MODIFIER,
    mock: bool = False,
) -> dict[str, Any]:
    """Create the charge and post the payment; returns the billing_sync patch.

    Never raises for remote failures: unsupported billing operations and any
    other error become status ``stored`` with the reason in error_message.
    """
    if mock:
        stamp = _now_ms()
        return {
            "charge_id": f"MOCK-CHG-{stamp}",
            "payment_id": f"MOCK-PMT-{stamp}",
            "status": "synced-mock",
            "error_message": "",
        }

    charge_id: Optional[str] = None
    try:
        charge = await service.create_charge(
            patient_id=patient_id,
            practice_id=practice_id,
            items=[{"cpt": cpt_code, "modifier": modifier, "units": 1, "amount_cents": amount_cents}],
            date_of_service=date.today(),
        )
        charge_id = charge.charge_id
        payment = await service.post_payment(
            patient_id=patient_id,
            practice_id=practice_id,
            amount_cents=amount_cents,
            reference_number=reference_number,
            payment_date=date.today(),
        )
        return {"charge_id": charge_id, "payment_id": payment.payment_id, "status": "synced", "error_message": ""}
    except UnsupportedOperationError as e:
        logger.warning("Tebra billing unsupported; payment stored without sync: %s", e.message)
        message = "Tebra billing operations (CreateCharge/PostPayment) are not supported by this endpoint"
    except TebraError as e:
        if _CONTRACT_MISMATCH_RE.search(e.message or ""):
            logger.warning("Tebra billing contract mismatch; payment stored without sync")
            message = f"Tebra billing contract mismatch: {e.message}"
        else:
            logger.error("Tebra billing sync failed: %s", e.message)
            message = e.message
    except Exception as e:
        logger.exception("Unexpected error during Tebra billing sync")
        message = str(e) or e.__class__.__name__

    return {"charge_id": charge_id, "status": "stored", "error_message": message}


class StripeWebhookService:
    """Verify Stripe deliveries and reconcile them into Tebra."""

    @staticmethod
    def verify_and_parse(payload: bytes, sig_header: str) -> dict:
        """Verify the Stripe signature and return the event as a plain dict.

        ``stripe.Event`` is not a dict in current stripe releases, so it is
        converted with ``to_dict()`` before any ``.get`` access downstream.
        Raises RuntimeError when no webhook secret is configured and
        ValueError when verification fails.
        """
        settings = get_settings()
        if not settings.STRIPE_WEBHOOK_SECRET:
            raise RuntimeError("Stripe webhook secret is not configured")

        try:
            import stripe
            stripe.api_key = settings.STRIPE_SECRET_KEY

            event = stripe.Webhook.construct_event(
                payload, sig_header, settings.STRIPE_WEBHOOK_SECRET
            )
        except Exception as e:
            logger.error("Stripe webhook verification failed: %s", e)
            raise ValueError(f"Webhook verification failed: {e}")

        return event.to_dict()

    @staticmethod
    async def _resolve_patient(service: TebraService, email: Optional[str]) -> Optional[str]:
        if not email:
            return None
        try:
            patient = await service.find_or_create_patient_by_email(email)
        except TebraError as e:
            logger.warning("Could not resolve Tebra patient for webhook email: %s", e.message)
            return None
        return patient.id if patient else None

    @staticmethod
    async def _create_receipt(
        db: AsyncSession, service: TebraService, patient_id: str, practice_id: Optional[str], obj: dict,
    ) -> None:
        amount = obj.get("amount_total") if obj.get("amount_total") is not None else obj.get("amount")
        try:
            await service.create_document(
                db,
                patient_id=patient_id,
                practice_id=practice_id,
                name="Payment Receipt",
                file_name=f"payment-{obj.get('id') or _now_ms()}.json",
                label="Payment",
                status="Completed",
                document_notes=f"Stripe payment {obj.get('id')} - {amount if amount is not None else ''}",
                file_content=dict(obj),
            )
        except Exception as e:
            logger.warning("Failed to create payment receipt document: %s", e)

    @staticmethod
    async def process_event(
        db: AsyncSession,
        event: dict,
        service: TebraService,
        marker: ProcessedEventMarker = processed_events,
    ) -> dict:
        """Handle one verified Stripe event.

        The initial ``received`` write is committed before any billing call;
        if it fails the exception propagates and the delivery must not be
        acknowledged.  After that point remote failures are recorded, never
        raised.

        At most one delivery per payment runs the Tebra sync: the in-memory
        marker is taken before the first await, and across workers the row
        is claimed with a conditional UPDATE.  A delivery that loses either
        race is acknowledged as a duplicate.
        """
        settings = service.settings
        event_id = event.get("id")
        event_type = event.get("type")

        if event_type not in HANDLED_EVENT_TYPES:
            logger.info("Ignoring Stripe event type %s", event_type)
            return {"received": True, "ignored": True, "type": event_type}

        obj = event.get("data", {}).get("object") or {}
        payment_intent_id = extract_payment_intent_id(event)

        if marker.seen(event_id, payment_intent_id):
            return {"received": True, "duplicate": True}
        marker.mark(event_id, payment_intent_id)

        try:
            existing = await store.get_by_event_id(db, event_id)
            if existing is None and payment_intent_id:
                existing = await store.get_by_payment_intent_id(db, payment_intent_id)
            if existing is not None and existing.status in SYNCED_STATUSES:
                logger.info("Duplicate Stripe delivery %s (status=%s)", event_id, existing.status)
                return {"received": True, "duplicate": True, "status": existing.status}

            email = extract_email(event)
            amount_cents = extract_amount_cents(obj)
            practice_id = settings.TEBRA_PRACTICE_ID or None
            patch = {
                "customer_email": email,
                "practice_id": practice_id,
                "amount_cents": amount_cents,
                "currency": obj.get("currency") or "usd",
                "status": "received",
            }
            if payment_intent_id:
                record = await store.upsert_by_payment_intent_id(db, payment_intent_id, {**patch, "event_id": event_id})
            else:
                record = await store.upsert_by_event_id(db, event_id, patch)
            claimed = await store.claim_for_sync(db, record.id)
            await db.commit()
        except Exception:
            # Not recorded: let the redelivery through
            marker.discard(event_id, payment_intent_id)
            raise
        logger.info("Stripe event %s recorded as received (amount=%d)", record.event_id, amount_cents)

        if not claimed:
            logger.info("Stripe event %s: billing sync already in progress for %s", event_id, record.event_id)
            return {"received": True, "duplicate": True, "in_progress": True}

        patient_id = record.patient_id or await StripeWebhookService._resolve_patient(service, email)
        if not patient_id:
            await store.update_by_event_id(db, record.event_id, {
                "status": "stored",
                "error_message": "No Tebra patient could be linked to the payment email",
            })
            await store.release_claim(db, record.id)
            await db.commit()
            logger.warning("No Tebra patient linked for Stripe event %s", event_id)
            return {"received": True, "patient_linked": False, "status": "stored"}

        await StripeWebhookService._create_receipt(db, service, patient_id, practice_id, obj)

        result = await sync_charge_and_payment(
            service,
            patient_id=patient_id,
            practice_id=practice_id,
            amount_cents=amount_cents,
            reference_number=payment_intent_id or event_id,
            mock=settings.TEBRA_BILLING_MOCK,
        )
        record_id = record.id
        record = await store.update_by_event_id(db, record.event_id, {**result, "patient_id": patient_id})
        await store.release_claim(db, record_id)
        await db.commit()

        logger.info("Stripe event %s billing sync finished with status %s", event_id, result["status"])
        return {
            "received": True,
            "patient_linked": True,
            "status": result["status"],
            "event_id": record.event_id if record is not None else event_id,
        }

    @staticmethod
    async def retry_sync(db: AsyncSession, event_id: str, service: TebraService) -> Optional[dict]:
        """Retry the Tebra sync for a persisted record.

        Works purely from the stored row; never inserts.  Returns None when
        no record exists for ``event_id``.  A row whose sync is running in
        another request is reported with ``in_progress`` and left alone.
        """
        record = await store.get_by_event_id(db, event_id)
        if record is None:
            return None
        if record.status in SYNCED_STATUSES:
            return {**record.to_dict(), "skipped": True}

        record_id = record.id
        claimed = await store.claim_for_sync(db, record_id)
        await db.commit()
        if not claimed:
            return {**record.to_dict(), "skipped": True, "in_progress": True}

        patient_id = record.patient_id
        if not patient_id:
            patient_id = await StripeWebhookService._resolve_patient(service, record.customer_email)
        if not patient_id:
            updated = await store.update_by_event_id(db, event_id, {
                "status": "stored",
                "error_message": "No Tebra patient could be linked to the payment email",
            })
            await store.release_claim(db, record_id)
            await db.commit()
            return {**updated.to_dict(), "skipped": False}

        result = await sync_charge_and_payment(
            service,
            patient_id=patient_id,
            practice_id=record.practice_id or service.practice_id,
            amount_cents=record.amount_cents or 0,
            reference_number=record.payment_intent_id or record.event_id,
            mock=service.settings.TEBRA_BILLING_MOCK,
        )
        updated = await store.update_by_event_id(db, event_id, {**result, "patient_id": patient_id})
        await store.release_claim(db, record_id)
        await db.commit()
        logger.info("Retried billing sync for %s: %s", event_id, result["status"])
        return {**updated.to_dict(), "skipped": False}
