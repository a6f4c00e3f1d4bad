"""Add stripe event log table for webhook idempotency

Revision ID: 002_add_stripe_event_log
Revises: 001_initial_schema
Create Date: 2025-08-28 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSONB

# revision identifiers
revision = '002_add_stripe_event_log'
down_revision = '001_initial_schema'
branch_labels = None
depends_on = None


def upgrade() -> None:
    # One row per Stripe event id; retries update the same row
    op.create_table(
        'stripe_event_log',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('stripe_event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('event_data', JSONB),
        sa.Column('processed', sa.Boolean, server_default=sa.text('false'), nullable=False),
        sa.Column('processing_attempts', sa.Integer, server_default=sa.text('0'), nullable=False),
        sa.Column('error_message', sa.Text),
        sa.Column('processed_at', sa.DateTime(timezone=True)),
        sa.Column('next_retry_at', sa.DateTime(timezone=True)),
        sa.Column('dead_letter', sa.Boolean, server_default=sa.text('false'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
        sa.CheckConstraint('processing_attempts >= 0', name='ck_stripe_event_attempts_non_negative'),
    )

    op.create_index('ix_stripe_event_log_stripe_event_id', 'stripe_event_log', ['stripe_event_id'], unique=True)
    op.create_index('ix_stripe_event_processed', 'stripe_event_log', ['processed', 'created_at'])
    op.create_index('ix_stripe_event_type', 'stripe_event_log', ['event_type'])
    # Partial index for the retry sweep: only events still waiting
    op.create_index(
        'ix_stripe_event_pending_retry',
        'stripe_event_log',
        ['next_retry_at'],
        postgresql_where=sa.text('processed = false AND dead_letter = false'),
    )


def downgrade() -> None:
    op.drop_index('ix_stripe_event_pending_retry', 'stripe_event_log')
    op.drop_index('ix_stripe_event_type', 'stripe_event_log')
    op.drop_index('ix_stripe_event_processed', 'stripe_event_log')
    op.drop_index('ix_stripe_event_log_stripe_event_id', 'stripe_event_log')
    op.drop_table('stripe_event_log')
