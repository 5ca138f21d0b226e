"""
Billing reconciliation API: inspect and retry Stripe -> Tebra syncs.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.routes.tebra import get_tebra_service
from app.services import billing_sync_store
from app.services import recurring_billing
from app.services.stripe_webhook_service import StripeWebhookService
from app.tebra.service import TebraService

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/sync")
async def list_billing_syncs(
    email: str = Query(..., min_length=3, max_length=320),
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    """Recent sync records for a customer email, one per payment."""
    records = await billing_sync_store.list_recent_for_email(db, email, limit=limit)
    return {"records": [r.to_dict() for r in records]}


@router.get("/sync/{event_id}")
async def get_billing_sync(event_id: str, db: AsyncSession = Depends(get_db)):
    record = await billing_sync_store.get_by_event_id(db, event_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Billing sync record not found")
    return record.to_dict()


@router.post("/sync/{event_id}/retry")
async def retry_billing_sync(
    event_id: str,
    db: AsyncSession = Depends(get_db),
    service: TebraService = Depends(get_tebra_service),
):
    result = await StripeWebhookService.retry_sync(db, event_id, service)
    if result is None:
        raise HTTPException(status_code=404, detail="Billing sync record not found")
    return result


@router.post("/recurring/run")
async def run_recurring_billing_now(
    db: AsyncSession = Depends(get_db),
    service: TebraService = Depends(get_tebra_service),
):
    """Run today's subscription billing immediately (normally nightly)."""
    return await recurring_billing.run_recurring_billing(db, service)
