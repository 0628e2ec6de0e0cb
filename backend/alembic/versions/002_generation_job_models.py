"""Add generation job models.

Revision ID: 002
Revises: 001
Create Date: 2026-09-01 10:30:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '002'
down_revision: Union[str, None] = '001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'generation_jobs',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('account_id', sa.String(64), nullable=False),
        sa.Column('job_type', sa.String(30), nullable=False),
        sa.Column('spec', sa.JSON(), nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(20), nullable=False, server_default='queued'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('progress', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('estimated_credits', sa.Integer(), nullable=False),
        sa.Column('actual_credits', sa.Integer(), nullable=True),
        sa.Column('result', sa.JSON(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('error_details', sa.JSON(), nullable=True),
        sa.Column('worker_id', sa.String(100), nullable=True),
        sa.Column('lease_expires_at', sa.DateTime(), nullable=True),
        sa.Column('last_heartbeat_at', sa.DateTime(), nullable=True),
        sa.Column('next_retry_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_generation_jobs_account_status', 'generation_jobs', ['account_id', 'status'])
    op.create_index('ix_generation_jobs_status_priority', 'generation_jobs', ['status', 'priority', 'created_at'])
    op.create_index('ix_generation_jobs_status_lease', 'generation_jobs', ['status', 'lease_expires_at'])
    op.create_index('ix_generation_jobs_status_next_retry', 'generation_jobs', ['status', 'next_retry_at'])

    op.create_table(
        'generation_job_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('job_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('from_status', sa.String(20), nullable=True),
        sa.Column('to_status', sa.String(20), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('details', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['job_id'], ['generation_jobs.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'uq_generation_job_events_job_sequence',
        'generation_job_events',
        ['job_id', 'sequence'],
        unique=True,
    )


def downgrade() -> None:
    op.drop_index('uq_generation_job_events_job_sequence', table_name='generation_job_events')
    op.drop_table('generation_job_events')
    op.drop_index('ix_generation_jobs_status_next_retry', table_name='generation_jobs')
    op.drop_index('ix_generation_jobs_status_lease', table_name='generation_jobs')
    op.drop_index('ix_generation_jobs_status_priority', table_name='generation_jobs')
    op.drop_index('ix_generation_jobs_account_status', table_name='generation_jobs')
    op.drop_table('generation_jobs')
