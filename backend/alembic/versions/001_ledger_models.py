"""Add credit ledger models.

Revision ID: 001
Revises:
Create Date: 2026-09-01 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'accounts',
        sa.Column('id', sa.String(64), nullable=False),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('subscription_tier', sa.String(20), nullable=False, server_default='starter'),
        sa.Column('credits_remaining', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('credits_used_this_month', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('lifetime_credits_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint('credits_remaining >= 0', name='ck_accounts_credits_non_negative'),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'billing_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('account_id', sa.String(64), nullable=False),
        sa.Column('type', sa.String(30), nullable=False),
        sa.Column('credit_delta', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(10), nullable=False, server_default='credits'),
        sa.Column('external_payment_id', sa.String(255), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='completed'),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_billing_events_account_id', 'billing_events', ['account_id'])
    op.create_index('ix_billing_events_account_created', 'billing_events', ['account_id', 'created_at'])
    op.create_index('ix_billing_events_type_status', 'billing_events', ['type', 'status'])
    op.create_index(
        'uq_billing_events_payment_type',
        'billing_events',
        ['external_payment_id', 'type'],
        unique=True,
        postgresql_where=sa.text("status IN ('completed', 'refunded')"),
    )


def downgrade() -> None:
    op.drop_index('uq_billing_events_payment_type', table_name='billing_events')
    op.drop_index('ix_billing_events_type_status', table_name='billing_events')
    op.drop_index('ix_billing_events_account_created', table_name='billing_events')
    op.drop_index('ix_billing_events_account_id', table_name='billing_events')
    op.drop_table('billing_events')
    op.drop_table('accounts')
