"""
Stripe webhook endpoint.

No auth: deliveries are verified by the ``stripe-signature`` header.  A 2xx
is only returned once the event has been durably recorded; if that first
write fails the error propagates so Stripe redelivers.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.routes.tebra import get_tebra_service
from app.services.stripe_webhook_service import StripeWebhookService
from app.tebra.service import TebraService

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: TebraService = Depends(get_tebra_service),
):
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    try:
        event = StripeWebhookService.verify_and_parse(payload, sig_header)
    except RuntimeError as e:
        logger.error("stripe_webhook: %s", e)
        raise HTTPException(status_code=503, detail="Stripe webhooks are not configured")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return await StripeWebhookService.process_event(db, event, service)
