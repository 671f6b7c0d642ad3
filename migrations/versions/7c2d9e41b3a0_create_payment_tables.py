"""Create profiles and payment tables

Revision ID: 7c2d9e41b3a0
Revises:
Create Date: 2026-10-12 09:30:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '7c2d9e41b3a0'
down_revision = None
branch_labels = None
depends_on = None

ACTIVE_WHERE = "status IN ('pending', 'processing')"


def upgrade():
    op.create_table('profiles',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('display_name', sa.String(length=255), nullable=True),
        sa.Column('phone_number', sa.String(length=50), nullable=True),
        sa.Column('tier', sa.String(length=50), nullable=False, server_default='free'),
        sa.Column('member_tier', sa.String(length=50), nullable=True),
        sa.Column('is_admin', sa.Boolean(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email')
    )

    op.create_table('payment_transactions',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=36), nullable=False),
        sa.Column('subject_type', sa.String(length=20), nullable=False),
        sa.Column('previous_tier', sa.String(length=50), nullable=False),
        sa.Column('target_tier', sa.String(length=50), nullable=False),
        sa.Column('amount', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('currency', sa.String(length=10), nullable=False),
        sa.Column('billing_cycle', sa.String(length=20), nullable=False),
        sa.Column('payment_method', sa.String(length=50), nullable=False),
        sa.Column('gateway', sa.String(length=50), nullable=False),
        sa.Column('idempotency_key', sa.String(length=255), nullable=False),
        sa.Column('provider_reference', sa.String(length=255), nullable=True),
        sa.Column('provider_session_id', sa.String(length=255), nullable=True),
        sa.Column('checkout_url', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=50), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.Column('initiated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processing_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.Column('error_code', sa.String(length=100), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('error_details', sa.JSON(), nullable=True),
        sa.Column('verification_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('verification_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_verified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('tier_applied_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('tier_update_error', sa.Text(), nullable=True),
        sa.Column('ip_address', sa.String(length=64), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('contact', sa.JSON(), nullable=True),
        sa.CheckConstraint('amount > 0', name='ck_payment_transactions_amount'),
        sa.ForeignKeyConstraint(['user_id'], ['profiles.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('payment_transactions', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_payment_transactions_idempotency_key'), ['idempotency_key'], unique=False)
        batch_op.create_index(batch_op.f('ix_payment_transactions_provider_reference'), ['provider_reference'], unique=False)
        batch_op.create_index('ix_payment_transactions_subject_user_status', ['subject_type', 'user_id', 'status'], unique=False)
        batch_op.create_index('ix_payment_transactions_status_retry', ['status', 'next_retry_at'], unique=False)

    # One active upgrade per (subject, user, tier) and per idempotency key
    op.create_index(
        'uq_payment_transactions_active_upgrade',
        'payment_transactions',
        ['subject_type', 'user_id', 'target_tier'],
        unique=True,
        postgresql_where=sa.text(ACTIVE_WHERE),
        sqlite_where=sa.text(ACTIVE_WHERE),
    )
    op.create_index(
        'uq_payment_transactions_active_idempotency_key',
        'payment_transactions',
        ['idempotency_key'],
        unique=True,
        postgresql_where=sa.text(ACTIVE_WHERE),
        sqlite_where=sa.text(ACTIVE_WHERE),
    )

    op.create_table('payment_webhook_events',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('gateway', sa.String(length=50), nullable=False),
        sa.Column('event_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('transaction_id', sa.String(length=36), nullable=True),
        sa.Column('provider_reference', sa.String(length=255), nullable=True),
        sa.Column('reported_status', sa.String(length=50), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('signature', sa.String(length=512), nullable=True),
        sa.Column('signature_verified', sa.Boolean(), nullable=False),
        sa.Column('status', sa.String(length=50), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['transaction_id'], ['payment_transactions.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('gateway', 'event_id', name='uq_payment_webhook_events_gateway_event')
    )
    with op.batch_alter_table('payment_webhook_events', schema=None) as batch_op:
        batch_op.create_index('ix_payment_webhook_events_status', ['status'], unique=False)
        batch_op.create_index('ix_payment_webhook_events_transaction_id', ['transaction_id'], unique=False)

    op.create_table('payment_audit_log',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('transaction_id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=36), nullable=True),
        sa.Column('subject_type', sa.String(length=20), nullable=True),
        sa.Column('action', sa.String(length=50), nullable=False),
        sa.Column('previous_status', sa.String(length=50), nullable=True),
        sa.Column('new_status', sa.String(length=50), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('previous_hash', sa.String(length=64), nullable=True),
        sa.Column('entry_hash', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['transaction_id'], ['payment_transactions.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('transaction_id', 'sequence', name='uq_payment_audit_log_tx_sequence')
    )
    with op.batch_alter_table('payment_audit_log', schema=None) as batch_op:
        batch_op.create_index('ix_payment_audit_log_action', ['action'], unique=False)
        batch_op.create_index('ix_payment_audit_log_created_at', ['created_at'], unique=False)


def downgrade():
    op.drop_table('payment_audit_log')
    op.drop_table('payment_webhook_events')
    op.drop_index('uq_payment_transactions_active_idempotency_key', table_name='payment_transactions')
    op.drop_index('uq_payment_transactions_active_upgrade', table_name='payment_transactions')
    op.drop_table('payment_transactions')
    op.drop_table('profiles')
