"""
Daily recurring billing run for active subscriptions.

For each subscription due today: charge + payment in Tebra, a renewal
document on the patient chart, then the billing date is advanced.  A
failure on one subscription is counted and the run continues.
"""

import logging
import time
from datetime import date
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.services import subscription_service
from app.services.stripe_webhook_service import sync_charge_and_payment
from app.tebra.service import TebraService

logger = logging.getLogger(__name__)

SUBSCRIPTION_CPT_CODE = "99000"


async def run_recurring_billing(
    db: AsyncSession,
    service: TebraService,
    today: Optional[date] = None,
) -> dict:
    """Bill every due subscription. Returns ``{"due", "succeeded", "failed"}``."""
    today = today or date.today()
    due = await subscription_service.get_due_subscriptions(db, today)
    if not due:
        logger.info("Recurring billing: nothing due on %s", today.isoformat())
        return {"due": 0, "succeeded": 0, "failed": 0}

    logger.info("Recurring billing: %d subscription(s) due on %s", len(due), today.isoformat())
    succeeded = 0
    failed = 0
    rolled_back = False
    due_ids = [subscription.id for subscription in due]

    for sub_id, subscription in zip(due_ids, due):
        try:
            if rolled_back:
                # A rollback expires every instance loaded in the session
                await db.refresh(subscription)
            if not subscription.patient_id:
                logger.warning("Subscription %s has no Tebra patient id; skipping", sub_id)
                failed += 1
                continue

            result = await sync_charge_and_payment(
                service,
                patient_id=subscription.patient_id,
                practice_id=service.practice_id,
                amount_cents=subscription.amount_cents,
                reference_number=f"SUBSCRIPTION-{sub_id}-{int(time.time() * 1000)}",
                cpt_code=SUBSCRIPTION_CPT_CODE,
                modifier=None,
                mock=service.settings.TEBRA_BILLING_MOCK,
            )
            if result["status"] == "stored":
                logger.warning(
                    "Subscription %s charge not synced: %s", sub_id, result.get("error_message"),
                )

            try:
                await service.create_document(
                    db,
                    patient_id=subscription.patient_id,
                    name="Billing - Subscription Renewal",
                    file_name=f"subscription-{sub_id}-{today.isoformat()}.json",
                    label="Billing",
                    status="Completed",
                    file_content={
                        "subscriptionId": sub_id,
                        "customerId": subscription.customer_id,
                        "productId": subscription.product_id,
                        "amount": subscription.amount_cents / 100,
                        "currency": subscription.currency or "USD",
                        "frequency": subscription.frequency,
                        "tebraChargeId": result.get("charge_id"),
                        "tebraPaymentId": result.get("payment_id"),
                        "dateOfService": today.isoformat(),
                        "type": "subscription_renewal",
                    },
                )
            except Exception as e:
                logger.warning("Billing document failed for subscription %s: %s", sub_id, e)

            await subscription_service.advance_billing_date(db, subscription, today)
            await db.commit()
            succeeded += 1
        except Exception:
            logger.exception("Recurring billing failed for subscription %s", sub_id)
            await db.rollback()
            rolled_back = True
            failed += 1

    logger.info("Recurring billing complete: %d succeeded, %d failed", succeeded, failed)
    return {"due": len(due), "succeeded": succeeded, "failed": failed}
