import enum
import uuid
from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from .db import Base


class TransactionType(str, enum.Enum):
    PURCHASE = "purchase"
    USAGE = "usage"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"
    TEST = "test"


class User(Base):
    __tablename__ = "users"
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    external_id = Column(String(255), unique=True, index=True, nullable=False)
    email = Column(String(255), index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Projection of SUM(credit_transactions.amount); maintained by database triggers only.
    credits_balance = Column(Integer, nullable=False, default=0, server_default="0")

    transactions = relationship("CreditTransaction", back_populates="user", lazy="dynamic")

    __table_args__ = (
        CheckConstraint("credits_balance >= 0", name="ck_users_credits_balance_non_negative"),
    )


class CreditTransaction(Base):
    """Append-only credit ledger row."""
    __tablename__ = "credit_transactions"
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)  # +/- credits
    transaction_type = Column(
        Enum(TransactionType, name="credit_transaction_type", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    description = Column(Text)
    payment_reference = Column(String(255))
    reverses_transaction_id = Column(Uuid(as_uuid=True), ForeignKey("credit_transactions.id"), unique=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    user = relationship("User", back_populates="transactions")

    __table_args__ = (
        UniqueConstraint("user_id", "payment_reference", name="uq_credit_transactions_user_payment_reference"),
        CheckConstraint("amount <> 0", name="ck_credit_transactions_amount_non_zero"),
        Index("ix_credit_transactions_user_created", "user_id", "created_at"),
    )


class CreditPackage(Base):
    __tablename__ = "credit_packages"
    id = Column(String(50), primary_key=True)
    name = Column(String(100), nullable=False)
    credits = Column(Integer, nullable=False)
    price_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="eur")
    stripe_price_id = Column(String(255), unique=True)
    is_active = Column(Boolean, nullable=False, default=True)
    sort_order = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint("credits > 0", name="ck_credit_packages_credits_positive"),
    )


class StripeEventLog(Base):
    """Track processed Stripe webhook events for idempotency."""
    __tablename__ = "stripe_event_log"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    stripe_event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    event_data = Column(JSON)  # Store event data for debugging
    processed = Column(Boolean, default=False, nullable=False)
    processing_attempts = Column(Integer, default=0, nullable=False)
    error_message = Column(Text)
    processed_at = Column(DateTime(timezone=True))
    next_retry_at = Column(DateTime(timezone=True))
    dead_letter = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_stripe_event_processed", "processed", "created_at"),
        Index("ix_stripe_event_type", "event_type"),
    )


# Balance triggers attach to Base.metadata on import.
from . import projection  # noqa: E402,F401
