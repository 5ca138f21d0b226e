from sqlalchemy import Column, Index, String, Integer, Date, DateTime, CheckConstraint
from sqlalchemy.sql import func

from app.database import Base


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_customer_product", "customer_id", "product_id"),
        Index("ix_subscriptions_due", "status", "next_billing_date"),
        CheckConstraint("frequency IN ('monthly', 'quarterly')", name="ck_subscriptions_frequency"),
        CheckConstraint("status IN ('active', 'cancelled')", name="ck_subscriptions_status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_id = Column(String(64), nullable=False)
    order_id = Column(String(64), nullable=True)
    product_id = Column(String(64), nullable=False)
    variant_id = Column(String(64), nullable=True)
    patient_id = Column(String(64), nullable=True)  # Tebra patient id
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(10), default="USD", nullable=False)
    frequency = Column(String(20), default="monthly", nullable=False)
    status = Column(String(20), default="active", nullable=False)
    next_billing_date = Column(Date, nullable=False)
    last_billing_date = Column(Date, nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<Subscription(id={self.id}, customer_id='{self.customer_id}', status='{self.status}')>"
