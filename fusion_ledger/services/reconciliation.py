"""Detect and repair drift between ``users.credits_balance`` and the ledger.

Drift should be impossible while the projection triggers are installed, but
balances written before the triggers existed, by a suspended guard, or by a
manual fix can still disagree with ``SUM(credit_transactions.amount)``.
"""
import logging
import uuid
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..exceptions import UserNotFoundError
from ..models import CreditTransaction, User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BalanceCorrection:
    user_id: uuid.UUID
    old_balance: int
    new_balance: int


@dataclass
class ReconciliationRun:
    corrections: List[BalanceCorrection] = field(default_factory=list)
    failed_user_ids: List[uuid.UUID] = field(default_factory=list)


def _ledger_totals():
    return (
        select(
            CreditTransaction.user_id.label("user_id"),
            func.sum(CreditTransaction.amount).label("total"),
        )
        .group_by(CreditTransaction.user_id)
        .subquery()
    )


class BalanceReconciler:
    def __init__(self, db: Session):
        self.db = db

    def find_drift(self, user_id: Optional[uuid.UUID] = None) -> List[BalanceCorrection]:
        """Report users whose stored balance differs from the ledger sum. Writes nothing."""
        totals = _ledger_totals()
        calculated = func.coalesce(totals.c.total, 0)
        stmt = (
            select(User.id, User.credits_balance, calculated.label("calculated"))
            .outerjoin(totals, totals.c.user_id == User.id)
            .where(User.credits_balance != calculated)
            .order_by(User.created_at, User.id)
        )
        if user_id is not None:
            stmt = stmt.where(User.id == user_id)
        return [
            BalanceCorrection(user_id=row.id, old_balance=row.credits_balance, new_balance=int(row.calculated))
            for row in self.db.execute(stmt)
        ]

    def _ledger_sum(self, user_id: uuid.UUID) -> int:
        return int(
            self.db.execute(
                select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(CreditTransaction.user_id == user_id)
            ).scalar_one()
        )

    def reconcile_user(self, user_id: uuid.UUID) -> Optional[BalanceCorrection]:
        """Recompute one user's balance and overwrite it if it drifted.

        Returns the correction, or ``None`` when the stored balance was already right.
        """
        try:
            stored = self.db.execute(
                select(User.credits_balance).where(User.id == user_id).with_for_update()
            ).scalar_one_or_none()
            if stored is None:
                raise UserNotFoundError(user_id)
            calculated = self._ledger_sum(user_id)
            if stored == calculated:
                self.db.commit()
                return None
            # Matches the recomputed sum, so protect_credits_balance lets it through.
            self.db.execute(
                update(User)
                .where(User.id == user_id)
                .values(credits_balance=calculated)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        correction = BalanceCorrection(user_id=user_id, old_balance=stored, new_balance=calculated)
        logger.warning(f"Corrected balance drift for user {user_id}: {stored} -> {calculated}")
        return correction

    def reconcile_all(self) -> ReconciliationRun:
        """Batch pass over every drifted user. One short transaction per user."""
        run = ReconciliationRun()
        candidates = self.find_drift()
        self.db.commit()
        for candidate in candidates:
            try:
                correction = self.reconcile_user(candidate.user_id)
            except IntegrityError as e:
                # e.g. a ledger that sums below zero violates ck_users_credits_balance_non_negative
                logger.error(f"Could not reconcile user {candidate.user_id}: {e.orig}")
                run.failed_user_ids.append(candidate.user_id)
                continue
            if correction is not None:
                run.corrections.append(correction)
        logger.info(
            f"Reconciliation finished: {len(run.corrections)} corrected, "
            f"{len(run.failed_user_ids)} failed, {len(candidates)} candidates"
        )
        return run
