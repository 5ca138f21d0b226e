from sqlalchemy import Column, Index, String, Integer, Text, DateTime, CheckConstraint
from sqlalchemy.sql import func

from app.database import Base

BILLING_SYNC_STATUSES = ("received", "stored", "synced", "synced-mock", "failed")
SYNCED_STATUSES = ("synced", "synced-mock")


class BillingSyncRecord(Base):
    __tablename__ = "billing_sync"
    __table_args__ = (
        Index("ix_billing_sync_payment_intent", "payment_intent_id"),
        Index("ix_billing_sync_customer_email", "customer_email"),
        CheckConstraint(
            "status IN ('received', 'stored', 'synced', 'synced-mock', 'failed')",
            name="ck_billing_sync_status",
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(255), unique=True, nullable=False)
    payment_intent_id = Column(String(255), nullable=True)
    customer_email = Column(String(320), nullable=True)
    patient_id = Column(String(64), nullable=True)
    practice_id = Column(String(64), nullable=True)
    charge_id = Column(String(64), nullable=True)
    payment_id = Column(String(64), nullable=True)
    amount_cents = Column(Integer, nullable=True)
    currency = Column(String(10), default="usd", nullable=True)
    status = Column(String(20), default="received", nullable=False)  # received, stored, synced, synced-mock, failed
    error_message = Column(Text, nullable=True)
    # Set while one worker runs the Tebra sync for this row
    sync_claimed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "payment_intent_id": self.payment_intent_id,
            "customer_email": self.customer_email,
            "patient_id": self.patient_id,
            "practice_id": self.practice_id,
            "charge_id": self.charge_id,
            "payment_id": self.payment_id,
            "amount_cents": self.amount_cents,
            "currency": self.currency,
            "status": self.status,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<BillingSyncRecord(event_id='{self.event_id}', status='{self.status}')>"
