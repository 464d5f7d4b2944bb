"""Create affiliate ledger and payout tables

Revision ID: 001_create_payout_tables
Revises:
Create Date: 2026-01-16

Tables:
- affiliate_accounts: lock row and report profile per affiliate
- commissions: commission ledger, normalized to USD at creation
- payout_batches / payout_batch_items: provider batches and their slots
- withdrawal_requests: payout requests reserving balance
- payout_audit_logs: append-only action trail
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_create_payout_tables'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        'affiliate_accounts',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('full_name', sa.String(200), nullable=True),
        sa.Column('email', sa.String(255), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_affiliate_accounts_email', 'affiliate_accounts', ['email'])

    op.create_table(
        'commissions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('affiliate_id', sa.Uuid(), sa.ForeignKey('affiliate_accounts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('source', sa.String(50), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('rate', sa.Numeric(14, 6), nullable=False),
        sa.Column('sale_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('amount_usd', sa.Numeric(12, 2), nullable=False),
        sa.Column('sale_amount_usd', sa.Numeric(12, 2), nullable=False),
        sa.Column('settled_usd', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('status', sa.String(50), nullable=False),
        sa.Column('linked_payment_id', sa.String(100), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('paid_reference', sa.String(100), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        *_timestamps(),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            'affiliate_id', 'source', 'linked_payment_id',
            name='uq_commission_affiliate_source_payment'
        ),
    )
    op.create_index('ix_commissions_affiliate_id', 'commissions', ['affiliate_id'])
    op.create_index('ix_commissions_status', 'commissions', ['status'])
    op.create_index('ix_commissions_created', 'commissions', ['created_at'])
    op.create_index('ix_commissions_affiliate_status', 'commissions', ['affiliate_id', 'status'])

    op.create_table(
        'payout_batches',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('batch_reference', sa.String(50), nullable=False, unique=True),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('status', sa.String(50), nullable=False),
        sa.Column('total_withdrawals', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_amount_usd', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('total_amount_local', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('successful_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('csv_content', sa.Text(), nullable=True),
        sa.Column('csv_generated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_by', sa.Uuid(), nullable=True),
        *_timestamps(),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_payout_batches_batch_reference', 'payout_batches', ['batch_reference'])
    op.create_index('ix_payout_batches_status', 'payout_batches', ['status'])
    op.create_index('ix_payout_batches_provider_currency', 'payout_batches', ['provider', 'currency'])

    op.create_table(
        'withdrawal_requests',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('reference', sa.String(50), nullable=False, unique=True),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('affiliate_accounts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('amount_usd', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('amount_local', sa.Numeric(12, 2), nullable=True),
        sa.Column('exchange_rate', sa.Numeric(14, 6), nullable=True),
        sa.Column('payout_channel', sa.String(20), nullable=False),
        sa.Column('account_details', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(50), nullable=False),
        sa.Column('provider', sa.String(20), nullable=True),
        sa.Column('batch_id', sa.Uuid(), sa.ForeignKey('payout_batches.id', ondelete='SET NULL'), nullable=True),
        sa.Column('provider_reference', sa.String(100), nullable=True),
        sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('approved_by', sa.Uuid(), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejected_by', sa.Uuid(), nullable=True),
        sa.Column('rejected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_withdrawal_requests_reference', 'withdrawal_requests', ['reference'])
    op.create_index('ix_withdrawal_requests_user_id', 'withdrawal_requests', ['user_id'])
    op.create_index('ix_withdrawal_requests_batch_id', 'withdrawal_requests', ['batch_id'])
    op.create_index('ix_withdrawal_requests_status', 'withdrawal_requests', ['status'])
    op.create_index('ix_withdrawal_requests_user_status', 'withdrawal_requests', ['user_id', 'status'])
    op.create_index('ix_withdrawal_requests_created', 'withdrawal_requests', ['created_at'])

    op.create_table(
        'payout_batch_items',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('batch_id', sa.Uuid(), sa.ForeignKey('payout_batches.id', ondelete='CASCADE'), nullable=False),
        sa.Column('withdrawal_id', sa.Uuid(), sa.ForeignKey('withdrawal_requests.id', ondelete='CASCADE'), nullable=False),
        sa.Column('reference', sa.String(50), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('amount_local', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('item_status', sa.String(20), nullable=False),
        sa.Column('provider_reference', sa.String(100), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('batch_id', 'withdrawal_id', name='uq_batch_item_withdrawal'),
    )
    op.create_index('ix_payout_batch_items_batch_id', 'payout_batch_items', ['batch_id'])
    op.create_index('ix_payout_batch_items_withdrawal_id', 'payout_batch_items', ['withdrawal_id'])

    op.create_table(
        'payout_audit_logs',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('withdrawal_id', sa.Uuid(), nullable=True),
        sa.Column('batch_id', sa.Uuid(), nullable=True),
        sa.Column('actor_id', sa.Uuid(), nullable=True),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('previous_status', sa.String(50), nullable=True),
        sa.Column('new_status', sa.String(50), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_payout_audit_logs_withdrawal', 'payout_audit_logs', ['withdrawal_id'])
    op.create_index('ix_payout_audit_logs_batch', 'payout_audit_logs', ['batch_id'])
    op.create_index('ix_payout_audit_logs_action', 'payout_audit_logs', ['action'])
    op.create_index('ix_payout_audit_logs_created_at', 'payout_audit_logs', ['created_at'])


def downgrade() -> None:
    op.drop_table('payout_audit_logs')
    op.drop_table('payout_batch_items')
    op.drop_table('withdrawal_requests')
    op.drop_table('payout_batches')
    op.drop_table('commissions')
    op.drop_table('affiliate_accounts')
