"""initial schema
Revision ID: 001_initial_schema
Revises:
Create Date: 2025-08-28 00:00:00
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = '001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None

transaction_type = postgresql.ENUM(
    'purchase', 'usage', 'refund', 'adjustment', 'test',
    name='credit_transaction_type',
    create_type=False,
)


def upgrade():
    transaction_type.create(op.get_bind(), checkfirst=True)

    op.create_table('users',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('external_id', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=255)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('credits_balance', sa.Integer(), nullable=False, server_default='0'),
        sa.CheckConstraint('credits_balance >= 0', name='ck_users_credits_balance_non_negative'),
    )
    op.create_index('ix_users_external_id', 'users', ['external_id'], unique=True)
    op.create_index('ix_users_email', 'users', ['email'])

    op.create_table('credit_transactions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('transaction_type', transaction_type, nullable=False),
        sa.Column('description', sa.Text()),
        sa.Column('payment_reference', sa.String(length=255)),
        sa.Column('reverses_transaction_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('credit_transactions.id'), unique=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('user_id', 'payment_reference', name='uq_credit_transactions_user_payment_reference'),
        sa.CheckConstraint('amount <> 0', name='ck_credit_transactions_amount_non_zero'),
    )
    op.create_index('ix_credit_transactions_user_id', 'credit_transactions', ['user_id'])
    op.create_index('ix_credit_transactions_user_created', 'credit_transactions', ['user_id', 'created_at'])

    op.create_table('credit_packages',
        sa.Column('id', sa.String(length=50), primary_key=True),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('credits', sa.Integer(), nullable=False),
        sa.Column('price_cents', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='eur'),
        sa.Column('stripe_price_id', sa.String(length=255), unique=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default='0'),
        sa.CheckConstraint('credits > 0', name='ck_credit_packages_credits_positive'),
    )


def downgrade():
    op.drop_table('credit_packages')
    op.drop_index('ix_credit_transactions_user_created', table_name='credit_transactions')
    op.drop_index('ix_credit_transactions_user_id', table_name='credit_transactions')
    op.drop_table('credit_transactions')
    op.drop_index('ix_users_email', table_name='users')
    op.drop_index('ix_users_external_id', table_name='users')
    op.drop_table('users')
    transaction_type.drop(op.get_bind(), checkfirst=True)
