from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from .models import TransactionType


class SyncUserRequest(BaseModel):
    email: Optional[EmailStr] = None


class UserOut(BaseModel):
    id: UUID
    external_id: str
    email: Optional[EmailStr] = None
    credits_balance: int
    model_config = ConfigDict(from_attributes=True)


class CreditBalance(BaseModel):
    balance: int
    user_id: UUID


class SpendRequest(BaseModel):
    description: str = Field(default="Fusion generation", max_length=500)


class RefundRequest(BaseModel):
    reverses_transaction_id: UUID
    description: str = Field(default="Refund for failed fusion generation", max_length=500)


class AdjustmentRequest(BaseModel):
    user_id: UUID
    amount: int
    description: str = Field(min_length=1, max_length=500)
    transaction_type: TransactionType = TransactionType.ADJUSTMENT

    @field_validator("amount")
    @classmethod
    def amount_non_zero(cls, v: int) -> int:
        if v == 0:
            raise ValueError("amount must be non-zero")
        return v

    @field_validator("transaction_type")
    @classmethod
    def adjustment_types_only(cls, v: TransactionType) -> TransactionType:
        if v not in (TransactionType.ADJUSTMENT, TransactionType.TEST):
            raise ValueError("only adjustment or test transactions can be recorded here")
        return v


class LedgerResponse(BaseModel):
    success: bool
    status: str
    balance: int
    transaction_id: Optional[UUID] = None


class TransactionOut(BaseModel):
    id: UUID
    amount: int
    transaction_type: TransactionType
    description: Optional[str] = None
    payment_reference: Optional[str] = None
    reverses_transaction_id: Optional[UUID] = None
    created_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class TransactionPage(BaseModel):
    items: List[TransactionOut]
    limit: int
    offset: int


class CreditPackageOut(BaseModel):
    id: str
    name: str
    credits: int
    price: float
    currency: str
    price_id: Optional[str] = None


class BalanceCorrectionOut(BaseModel):
    user_id: UUID
    old_balance: int
    new_balance: int


class ReconciliationReport(BaseModel):
    corrected: int
    corrections: List[BalanceCorrectionOut]
    failed_user_ids: List[UUID] = []


class WebhookAck(BaseModel):
    status: str
    message: str


class StripeEventStatus(BaseModel):
    event_id: str = Field(validation_alias="stripe_event_id")
    event_type: str
    processed: bool
    processing_attempts: int
    error_message: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    dead_letter: bool = False
    model_config = ConfigDict(from_attributes=True)
