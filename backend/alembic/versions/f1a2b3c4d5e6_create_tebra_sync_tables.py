"""Create billing_sync, subscriptions and tebra_documents

Revision ID: f1a2b3c4d5e6
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = 'f1a2b3c4d5e6'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        'billing_sync',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('event_id', sa.String(length=255), nullable=False),
        sa.Column('payment_intent_id', sa.String(length=255), nullable=True),
        sa.Column('customer_email', sa.String(length=320), nullable=True),
        sa.Column('patient_id', sa.String(length=64), nullable=True),
        sa.Column('practice_id', sa.String(length=64), nullable=True),
        sa.Column('charge_id', sa.String(length=64), nullable=True),
        sa.Column('payment_id', sa.String(length=64), nullable=True),
        sa.Column('amount_cents', sa.Integer(), nullable=True),
        sa.Column('currency', sa.String(length=10), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='received'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('sync_claimed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('event_id'),
        sa.CheckConstraint(
            "status IN ('received', 'stored', 'synced', 'synced-mock', 'failed')",
            name='ck_billing_sync_status',
        ),
    )
    op.create_index('ix_billing_sync_payment_intent', 'billing_sync', ['payment_intent_id'])
    op.create_index('ix_billing_sync_customer_email', 'billing_sync', ['customer_email'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('customer_id', sa.String(length=64), nullable=False),
        sa.Column('order_id', sa.String(length=64), nullable=True),
        sa.Column('product_id', sa.String(length=64), nullable=False),
        sa.Column('variant_id', sa.String(length=64), nullable=True),
        sa.Column('patient_id', sa.String(length=64), nullable=True),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=10), nullable=False, server_default='USD'),
        sa.Column('frequency', sa.String(length=20), nullable=False, server_default='monthly'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
        sa.Column('next_billing_date', sa.Date(), nullable=False),
        sa.Column('last_billing_date', sa.Date(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint("frequency IN ('monthly', 'quarterly')", name='ck_subscriptions_frequency'),
        sa.CheckConstraint("status IN ('active', 'cancelled')", name='ck_subscriptions_status'),
    )
    op.create_index('ix_subscriptions_customer_product', 'subscriptions', ['customer_id', 'product_id'])
    op.create_index('ix_subscriptions_due', 'subscriptions', ['status', 'next_billing_date'])

    op.create_table(
        'tebra_documents',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('tebra_document_id', sa.String(length=64), nullable=True),
        sa.Column('patient_id', sa.String(length=64), nullable=False),
        sa.Column('practice_id', sa.String(length=64), nullable=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('file_name', sa.String(length=255), nullable=False),
        sa.Column('label', sa.String(length=100), nullable=True),
        sa.Column('status', sa.String(length=50), nullable=False, server_default='Completed'),
        sa.Column('document_date', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('document_notes', sa.Text(), nullable=True),
        sa.Column('file_content_base64', sa.Text(), nullable=True),
        sa.Column('file_size_bytes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('mime_type', sa.String(length=100), nullable=False, server_default='application/json'),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_tebra_documents_patient', 'tebra_documents', ['patient_id', 'deleted_at'])
    op.create_index('ix_tebra_documents_tebra_id', 'tebra_documents', ['tebra_document_id'])


def downgrade() -> None:
    op.drop_index('ix_tebra_documents_tebra_id', table_name='tebra_documents')
    op.drop_index('ix_tebra_documents_patient', table_name='tebra_documents')
    op.drop_table('tebra_documents')
    op.drop_index('ix_subscriptions_due', table_name='subscriptions')
    op.drop_index('ix_subscriptions_customer_product', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_index('ix_billing_sync_customer_email', table_name='billing_sync')
    op.drop_index('ix_billing_sync_payment_intent', table_name='billing_sync')
    op.drop_table('billing_sync')
