"""Maintain users.credits_balance from credit_transactions with triggers

Revision ID: 003_credit_balance_triggers
Revises: 002_add_stripe_event_log
Create Date: 2025-09-04 00:00:00.000000
"""

from alembic import op

from fusion_ledger.projection import drop_balance_triggers, install_balance_triggers

revision = '003_credit_balance_triggers'
down_revision = '002_add_stripe_event_log'
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()
    # Balances written before the triggers existed start out equal to the ledger sum
    op.execute(
        """
        UPDATE users SET credits_balance = COALESCE(
            (SELECT SUM(amount) FROM credit_transactions WHERE credit_transactions.user_id = users.id), 0
        )
        """
    )
    install_balance_triggers(bind)


def downgrade() -> None:
    drop_balance_triggers(op.get_bind())
