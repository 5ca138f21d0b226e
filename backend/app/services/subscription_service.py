"""
Recurring subscriptions purchased through the storefront.

One active subscription per (customer, product); creating it again returns
the existing row.
"""

import calendar
import logging
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.subscription import Subscription

logger = logging.getLogger(__name__)

FREQUENCY_MONTHS = {"monthly": 1, "quarterly": 3}


def add_months(value: date, months: int) -> date:
    """Add calendar months, clamping the day to the end of the target month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def next_billing_date(frequency: str, from_date: date) -> date:
    try:
        return add_months(from_date, FREQUENCY_MONTHS[frequency])
    except KeyError:
        raise ValueError(f"Unsupported subscription frequency: {frequency!r}") from None


async def create_subscription(
    db: AsyncSession,
    *,
    customer_id: str,
    product_id: str,
    amount_cents: int,
    next_billing_date: date,
    order_id: Optional[str] = None,
    variant_id: Optional[str] = None,
    patient_id: Optional[str] = None,
    currency: str = "USD",
    frequency: str = "monthly",
) -> Subscription:
    if frequency not in FREQUENCY_MONTHS:
        raise ValueError(f"Unsupported subscription frequency: {frequency!r}")

    result = await db.execute(
        select(Subscription).where(
            Subscription.customer_id == customer_id,
            Subscription.product_id == product_id,
            Subscription.status == "active",
        ).limit(1)
    )
    existing = result.scalar_one_or_none()
    if existing:
        logger.info(
            "Subscription already exists for customer %s, product %s (id=%s)",
            customer_id, product_id, existing.id,
        )
        return existing

    subscription = Subscription(
        customer_id=customer_id,
        order_id=order_id,
        product_id=product_id,
        variant_id=variant_id,
        patient_id=patient_id,
        amount_cents=amount_cents,
        currency=currency,
        frequency=frequency,
        status="active",
        next_billing_date=next_billing_date,
    )
    db.add(subscription)
    await db.flush()
    await db.refresh(subscription)
    logger.info("Created subscription %s", subscription.id)
    return subscription


async def get_active_subscriptions(
    db: AsyncSession,
    patient_id: Optional[str] = None,
    customer_id: Optional[str] = None,
) -> list[Subscription]:
    stmt = select(Subscription).where(Subscription.status == "active")
    if patient_id:
        stmt = stmt.where(Subscription.patient_id == patient_id)
    elif customer_id:
        stmt = stmt.where(Subscription.customer_id == customer_id)
    result = await db.execute(stmt.order_by(Subscription.next_billing_date.asc()))
    return list(result.scalars().all())


async def get_due_subscriptions(db: AsyncSession, today: Optional[date] = None) -> list[Subscription]:
    """Active subscriptions with ``next_billing_date <= today``, earliest first."""
    today = today or date.today()
    result = await db.execute(
        select(Subscription)
        .where(
            Subscription.status == "active",
            Subscription.next_billing_date <= today,
        )
        .order_by(Subscription.next_billing_date.asc(), Subscription.id.asc())
    )
    return list(result.scalars().all())


async def advance_billing_date(
    db: AsyncSession,
    subscription: Subscription,
    billed_on: date,
) -> Subscription:
    subscription.last_billing_date = billed_on
    subscription.next_billing_date = next_billing_date(subscription.frequency, billed_on)
    await db.flush()
    return subscription


async def cancel_subscription(
    db: AsyncSession,
    subscription_id: Optional[int] = None,
    customer_id: Optional[str] = None,
    product_id: Optional[str] = None,
) -> Optional[Subscription]:
    """Cancel by id, or by (customer, product) among active rows."""
    if subscription_id is not None:
        stmt = select(Subscription).where(Subscription.id == subscription_id)
    elif customer_id and product_id:
        stmt = select(Subscription).where(
            Subscription.customer_id == customer_id,
            Subscription.product_id == product_id,
            Subscription.status == "active",
        )
    else:
        raise ValueError("Must provide subscription_id or both customer_id and product_id")

    result = await db.execute(stmt.limit(1))
    subscription = result.scalar_one_or_none()
    if subscription is None:
        return None

    subscription.status = "cancelled"
    subscription.cancelled_at = datetime.now(timezone.utc)
    await db.flush()
    logger.info("Cancelled subscription %s", subscription.id)
    return subscription
