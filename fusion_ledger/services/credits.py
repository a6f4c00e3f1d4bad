import enum
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..exceptions import InvalidAmountError, RefundTargetError, UserNotFoundError
from ..models import CreditTransaction, TransactionType, User

logger = logging.getLogger(__name__)


class LedgerStatus(str, enum.Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    INSUFFICIENT_CREDITS = "insufficient_credits"


@dataclass(frozen=True)
class LedgerResult:
    """Outcome of a ledger write. Insufficient credits is a result, not an exception."""

    status: LedgerStatus
    balance: int
    transaction_id: Optional[uuid.UUID] = None
    required: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.status is not LedgerStatus.INSUFFICIENT_CREDITS


def _positive(credits) -> int:
    if isinstance(credits, bool) or not isinstance(credits, int) or credits <= 0:
        raise InvalidAmountError(credits)
    return credits


class CreditLedger:
    """Append-only credit ledger.

    Every balance change is an insert into ``credit_transactions``; the
    ``users.credits_balance`` projection is maintained by database triggers
    (see ``fusion_ledger.projection``) inside the same transaction.

    With ``autocommit=True`` (the default) each operation is its own unit of
    work and commits before returning. Pass ``autocommit=False`` to run inside a
    caller-managed transaction; writes are then only flushed.
    """

    def __init__(self, db: Session, autocommit: bool = True):
        self.db = db
        self.autocommit = autocommit

    @contextmanager
    def _unit_of_work(self):
        try:
            yield
            if self.autocommit:
                self.db.commit()
        except Exception:
            if self.autocommit:
                self.db.rollback()
            raise

    # ------------------------------------------------------------------
    # Users and reads
    # ------------------------------------------------------------------

    def get_or_create_user(self, external_id: str, email: Optional[str] = None) -> User:
        """Resolve an identity-provider id to the internal user, creating it with a zero balance."""
        with self._unit_of_work():
            user = self.db.execute(select(User).where(User.external_id == external_id)).scalar_one_or_none()
            if user is None:
                try:
                    with self.db.begin_nested():
                        user = User(external_id=external_id, email=email, credits_balance=0)
                        self.db.add(user)
                        self.db.flush()
                    logger.info(f"Provisioned user {user.id} for external id {external_id}")
                except IntegrityError:
                    # Lost a provisioning race to a concurrent request
                    user = self.db.execute(select(User).where(User.external_id == external_id)).scalar_one()
            elif email and user.email != email:
                user.email = email
                self.db.flush()
        return user

    def get_user(self, user_id: uuid.UUID) -> User:
        user = self.db.get(User, user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    def get_balance(self, user_id: uuid.UUID) -> int:
        balance = self.db.execute(select(User.credits_balance).where(User.id == user_id)).scalar_one_or_none()
        if balance is None:
            raise UserNotFoundError(user_id)
        return balance

    def history(self, user_id: uuid.UUID, limit: int = 50, offset: int = 0) -> List[CreditTransaction]:
        stmt = (
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(self.db.execute(stmt).scalars())

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _locked_balance(self, user_id: uuid.UUID) -> int:
        # FOR UPDATE serializes concurrent writers for this user on PostgreSQL;
        # SQLite transactions already start with BEGIN IMMEDIATE.
        balance = self.db.execute(
            select(User.credits_balance).where(User.id == user_id).with_for_update()
        ).scalar_one_or_none()
        if balance is None:
            raise UserNotFoundError(user_id)
        return balance

    def _append(self, user_id: uuid.UUID, amount: int, transaction_type: TransactionType, description: Optional[str], **extra) -> CreditTransaction:
        with self.db.begin_nested():
            txn = CreditTransaction(
                user_id=user_id,
                amount=amount,
                transaction_type=transaction_type,
                description=description,
                **extra,
            )
            self.db.add(txn)
            self.db.flush()
        return txn

    def purchase(self, user_id: uuid.UUID, credits: int, payment_reference: str, description: Optional[str] = None) -> LedgerResult:
        """Credit a confirmed payment. Replaying the same payment reference is a no-op."""
        credits = _positive(credits)
        if not payment_reference:
            raise ValueError("payment_reference is required for purchases")
        description = description or f"Purchase of {credits} credits"

        with self._unit_of_work():
            self._locked_balance(user_id)
            try:
                txn = self._append(user_id, credits, TransactionType.PURCHASE, description, payment_reference=payment_reference)
            except IntegrityError:
                existing = self.db.execute(
                    select(CreditTransaction.id).where(
                        CreditTransaction.user_id == user_id,
                        CreditTransaction.payment_reference == payment_reference,
                    )
                ).scalar_one_or_none()
                if existing is None:
                    raise
                logger.info(f"Payment {payment_reference} already credited to user {user_id}")
                result = LedgerResult(LedgerStatus.DUPLICATE, self.get_balance(user_id), existing)
            else:
                result = LedgerResult(LedgerStatus.APPLIED, self.get_balance(user_id), txn.id)
                logger.info(f"Added {credits} credits to user {user_id} for payment {payment_reference}, balance {result.balance}")
        return result

    def spend(self, user_id: uuid.UUID, credits_to_use: int, description: Optional[str] = "Fusion generation") -> LedgerResult:
        """Debit credits if, and only if, the balance covers them."""
        credits = _positive(credits_to_use)

        with self._unit_of_work():
            balance = self._locked_balance(user_id)
            if balance < credits:
                logger.info(f"User {user_id} has {balance} credits, {credits} required")
                return LedgerResult(LedgerStatus.INSUFFICIENT_CREDITS, balance, required=credits)
            try:
                txn = self._append(user_id, -credits, TransactionType.USAGE, description)
            except IntegrityError:
                # ck_users_credits_balance_non_negative: a concurrent debit got there first
                balance = self.get_balance(user_id)
                logger.warning(f"Debit of {credits} for user {user_id} rejected by balance constraint")
                return LedgerResult(LedgerStatus.INSUFFICIENT_CREDITS, balance, required=credits)
            result = LedgerResult(LedgerStatus.APPLIED, self.get_balance(user_id), txn.id)
            logger.info(f"Used {credits} credits for user {user_id}, balance {result.balance}")
        return result

    def refund(
        self,
        user_id: uuid.UUID,
        credits_to_add: int,
        description: Optional[str] = "Refund for failed fusion generation",
        reverses_transaction_id: Optional[uuid.UUID] = None,
    ) -> LedgerResult:
        """Give credits back, optionally linked to the usage row being reversed.

        A linked refund may reverse a usage row only once; repeating it returns
        ``DUPLICATE`` so retried requests are safe.
        """
        credits = _positive(credits_to_add)

        with self._unit_of_work():
            self._locked_balance(user_id)
            if reverses_transaction_id is not None:
                self._check_reversible(user_id, reverses_transaction_id, credits)
                previous = self.db.execute(
                    select(CreditTransaction.id).where(CreditTransaction.reverses_transaction_id == reverses_transaction_id)
                ).scalar_one_or_none()
                if previous is not None:
                    logger.info(f"Transaction {reverses_transaction_id} already refunded by {previous}")
                    return LedgerResult(LedgerStatus.DUPLICATE, self.get_balance(user_id), previous)

            txn = self._append(
                user_id,
                credits,
                TransactionType.REFUND,
                description,
                reverses_transaction_id=reverses_transaction_id,
            )
            result = LedgerResult(LedgerStatus.APPLIED, self.get_balance(user_id), txn.id)
            logger.info(f"Refunded {credits} credits to user {user_id}, balance {result.balance}")
        return result

    def _check_reversible(self, user_id: uuid.UUID, transaction_id: uuid.UUID, credits: int) -> None:
        original = self.db.get(CreditTransaction, transaction_id)
        if original is None or original.user_id != user_id:
            raise RefundTargetError(transaction_id, "no such transaction for this user")
        if original.transaction_type != TransactionType.USAGE:
            raise RefundTargetError(transaction_id, "only usage transactions can be refunded")
        if credits > -original.amount:
            raise RefundTargetError(transaction_id, f"refund of {credits} exceeds debit of {-original.amount}")

    def adjust(
        self,
        user_id: uuid.UUID,
        amount: int,
        description: str,
        transaction_type: TransactionType = TransactionType.ADJUSTMENT,
    ) -> LedgerResult:
        """Administrative signed correction. Negative adjustments cannot overdraw."""
        if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
            raise InvalidAmountError(amount, "Adjustment must be a non-zero integer")
        if transaction_type not in (TransactionType.ADJUSTMENT, TransactionType.TEST):
            raise ValueError(f"Adjustments cannot be recorded as {transaction_type.value}")

        with self._unit_of_work():
            balance = self._locked_balance(user_id)
            if balance + amount < 0:
                return LedgerResult(LedgerStatus.INSUFFICIENT_CREDITS, balance, required=-amount)
            txn = self._append(user_id, amount, transaction_type, description)
            result = LedgerResult(LedgerStatus.APPLIED, self.get_balance(user_id), txn.id)
            logger.info(f"Adjusted user {user_id} by {amount} ({description}), balance {result.balance}")
        return result
