"""
Billing reconciliation store.

One ``billing_sync`` row per Stripe payment, addressable by either the
webhook event id or the payment intent id.  Writes that share either key
merge into the existing row; rows are never hard-deleted.

Functions flush but do not commit; callers own the transaction.
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.billing_sync import BILLING_SYNC_STATUSES, SYNCED_STATUSES, BillingSyncRecord

logger = logging.getLogger(__name__)

# A claim older than this is treated as abandoned by a crashed worker
SYNC_CLAIM_TTL_SECONDS = 10 * 60

PATCHABLE_FIELDS = (
    "event_id",
    "payment_intent_id",
    "customer_email",
    "patient_id",
    "practice_id",
    "charge_id",
    "payment_id",
    "amount_cents",
    "currency",
    "status",
    "error_message",
)


def _validate_patch(patch: Mapping[str, Any]) -> None:
    unknown = set(patch) - set(PATCHABLE_FIELDS)
    if unknown:
        raise ValueError(f"Unknown billing sync field(s): {', '.join(sorted(unknown))}")
    status = patch.get("status")
    if status is not None and status not in BILLING_SYNC_STATUSES:
        raise ValueError(f"Invalid billing sync status: {status!r}")


def _merge(record: BillingSyncRecord, patch: Mapping[str, Any]) -> None:
    """Apply patch values that are not None; unspecified fields are preserved.

    An existing event id is never overwritten, and a synced row is never
    moved back to an unsynced status.
    """
    for field, value in patch.items():
        if value is None:
            continue
        if field == "event_id" and record.event_id:
            continue
        if field == "status" and record.status in SYNCED_STATUSES and value not in SYNCED_STATUSES:
            continue
        setattr(record, field, value)


def synthetic_event_id(payment_intent_id: str) -> str:
    return f"evt_sync_{payment_intent_id}_{int(time.time() * 1000)}"


async def get_by_event_id(db: AsyncSession, event_id: str) -> Optional[BillingSyncRecord]:
    if not event_id:
        return None
    result = await db.execute(select(BillingSyncRecord).where(BillingSyncRecord.event_id == event_id))
    return result.scalar_one_or_none()


async def get_by_payment_intent_id(db: AsyncSession, payment_intent_id: str) -> Optional[BillingSyncRecord]:
    """Most recent record for a payment intent."""
    if not payment_intent_id:
        return None
    result = await db.execute(
        select(BillingSyncRecord)
        .where(BillingSyncRecord.payment_intent_id == payment_intent_id)
        .order_by(BillingSyncRecord.created_at.desc(), BillingSyncRecord.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def upsert_by_event_id(db: AsyncSession, event_id: str, patch: Mapping[str, Any]) -> BillingSyncRecord:
    """Merge ``patch`` into the row for ``event_id`` (or its payment intent), else insert."""
    if not event_id:
        raise ValueError("event_id is required")
    _validate_patch(patch)

    record = await get_by_event_id(db, event_id)
    if record is None and patch.get("payment_intent_id"):
        record = await get_by_payment_intent_id(db, patch["payment_intent_id"])

    if record is not None:
        _merge(record, patch)
        await db.flush()
        await db.refresh(record)
        return record

    values = {k: v for k, v in patch.items() if v is not None and k != "event_id"}
    values.setdefault("status", "received")
    record = BillingSyncRecord(event_id=event_id, **values)
    db.add(record)
    await db.flush()
    await db.refresh(record)
    logger.info("billing_sync: inserted %s (status=%s)", event_id, record.status)
    return record


async def upsert_by_payment_intent_id(
    db: AsyncSession, payment_intent_id: str, patch: Mapping[str, Any],
) -> BillingSyncRecord:
    """Merge ``patch`` into the latest row for ``payment_intent_id`` (or its event), else insert.

    Inserts use ``patch["event_id"]`` when supplied, otherwise a synthetic
    ``evt_sync_<pi>_<epoch ms>`` id.
    """
    if not payment_intent_id:
        raise ValueError("payment_intent_id is required")
    _validate_patch(patch)

    record = await get_by_payment_intent_id(db, payment_intent_id)
    if record is None and patch.get("event_id"):
        record = await get_by_event_id(db, patch["event_id"])

    if record is not None:
        _merge(record, {**patch, "payment_intent_id": payment_intent_id})
        await db.flush()
        await db.refresh(record)
        return record

    event_id = patch.get("event_id") or synthetic_event_id(payment_intent_id)
    values = {k: v for k, v in patch.items() if v is not None and k not in ("event_id", "payment_intent_id")}
    values.setdefault("status", "received")
    record = BillingSyncRecord(event_id=event_id, payment_intent_id=payment_intent_id, **values)
    db.add(record)
    await db.flush()
    await db.refresh(record)
    logger.info("billing_sync: inserted %s for %s (status=%s)", event_id, payment_intent_id, record.status)
    return record


async def update_by_event_id(
    db: AsyncSession, event_id: str, patch: Mapping[str, Any],
) -> Optional[BillingSyncRecord]:
    """Merge into an existing row. Returns None, and inserts nothing, when absent."""
    _validate_patch(patch)
    record = await get_by_event_id(db, event_id)
    if record is None:
        return None
    _merge(record, patch)
    await db.flush()
    await db.refresh(record)
    return record


async def list_recent_for_email(db: AsyncSession, email: str, limit: int = 20) -> list[BillingSyncRecord]:
    """Most recent record per payment intent for ``email``, newest first."""
    result = await db.execute(
        select(BillingSyncRecord)
        .where(
            BillingSyncRecord.customer_email == email,
            BillingSyncRecord.payment_intent_id.is_not(None),
        )
        .order_by(BillingSyncRecord.created_at.desc(), BillingSyncRecord.id.desc())
        .limit(limit * 5)
    )
    seen: set[str] = set()
    records: list[BillingSyncRecord] = []
    for record in result.scalars().all():
        if record.payment_intent_id in seen:
            continue
        seen.add(record.payment_intent_id)
        records.append(record)
        if len(records) >= limit:
            break
    return records


async def claim_for_sync(
    db: AsyncSession, record_id: int, stale_after_seconds: int = SYNC_CLAIM_TTL_SECONDS,
) -> bool:
    """Take the right to run the Tebra sync for one row.

    A single conditional UPDATE, so only one worker wins even when deliveries
    for the same payment arrive together.  Fails for synced rows and for rows
    claimed less than ``stale_after_seconds`` ago.
    """
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=stale_after_seconds)
    result = await db.execute(
        update(BillingSyncRecord)
        .where(
            BillingSyncRecord.id == record_id,
            BillingSyncRecord.status.notin_(SYNCED_STATUSES),
            or_(
                BillingSyncRecord.sync_claimed_at.is_(None),
                BillingSyncRecord.sync_claimed_at < cutoff,
            ),
        )
        .values(sync_claimed_at=func.now())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def release_claim(db: AsyncSession, record_id: int) -> None:
    await db.execute(
        update(BillingSyncRecord)
        .where(BillingSyncRecord.id == record_id)
        .values(sync_claimed_at=None)
        .execution_options(synchronize_session=False)
    )
