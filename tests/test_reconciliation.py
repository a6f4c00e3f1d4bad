import logging
import uuid

import pytest
from sqlalchemy import update
from sqlalchemy.orm import Session

from fusion_ledger.exceptions import UserNotFoundError
from fusion_ledger.models import User
from fusion_ledger.projection import suspend_balance_guard
from fusion_ledger.services.credits import CreditLedger
from fusion_ledger.services.reconciliation import BalanceCorrection, BalanceReconciler


def force_balance(db: Session, user: User, value: int) -> None:
    """Write a stored balance that disagrees with the ledger."""
    with suspend_balance_guard(db.connection()):
        db.execute(
            update(User).where(User.id == user.id).values(credits_balance=value)
            .execution_options(synchronize_session=False)
        )
    db.commit()


@pytest.fixture
def drifted_user(db_session: Session, test_user: User) -> User:
    CreditLedger(db_session).purchase(test_user.id, 8, payment_reference=f"cs_{uuid.uuid4().hex}")
    force_balance(db_session, test_user, 10)
    return test_user


def test_find_drift_reports_without_writing(db_session: Session, drifted_user: User):
    reconciler = BalanceReconciler(db_session)

    drift = reconciler.find_drift(drifted_user.id)

    assert drift == [BalanceCorrection(user_id=drifted_user.id, old_balance=10, new_balance=8)]
    db_session.refresh(drifted_user)
    assert drifted_user.credits_balance == 10


def test_reconcile_all_corrects_drift(db_session: Session, drifted_user: User, caplog):
    reconciler = BalanceReconciler(db_session)

    with caplog.at_level(logging.WARNING, logger="fusion_ledger.services.reconciliation"):
        run = reconciler.reconcile_all()

    assert BalanceCorrection(user_id=drifted_user.id, old_balance=10, new_balance=8) in run.corrections
    assert drifted_user.id not in run.failed_user_ids
    assert any(str(drifted_user.id) in record.getMessage() for record in caplog.records)

    db_session.refresh(drifted_user)
    assert drifted_user.credits_balance == 8

    # Idempotent: nothing left to fix
    second = reconciler.reconcile_all()
    assert all(c.user_id != drifted_user.id for c in second.corrections)
    assert reconciler.find_drift(drifted_user.id) == []


def test_reconcile_user_single(db_session: Session, drifted_user: User, make_user):
    bystander = make_user()
    force_balance(db_session, bystander, 3)
    reconciler = BalanceReconciler(db_session)

    correction = reconciler.reconcile_user(drifted_user.id)

    assert correction == BalanceCorrection(user_id=drifted_user.id, old_balance=10, new_balance=8)
    assert reconciler.reconcile_user(drifted_user.id) is None
    # Other users are left alone
    assert reconciler.find_drift(bystander.id) == [
        BalanceCorrection(user_id=bystander.id, old_balance=3, new_balance=0)
    ]
    reconciler.reconcile_user(bystander.id)


def test_user_without_transactions_reconciles_to_zero(db_session: Session, test_user: User):
    force_balance(db_session, test_user, 4)

    correction = BalanceReconciler(db_session).reconcile_user(test_user.id)

    assert correction.new_balance == 0
    db_session.refresh(test_user)
    assert test_user.credits_balance == 0


def test_consistent_user_needs_no_correction(db_session: Session, test_user: User):
    CreditLedger(db_session).purchase(test_user.id, 2, payment_reference=f"cs_{uuid.uuid4().hex}")

    assert BalanceReconciler(db_session).reconcile_user(test_user.id) is None


def test_reconcile_unknown_user(db_session: Session):
    with pytest.raises(UserNotFoundError):
        BalanceReconciler(db_session).reconcile_user(uuid.uuid4())


def test_ledger_writes_after_reconciliation(db_session: Session, drifted_user: User):
    BalanceReconciler(db_session).reconcile_user(drifted_user.id)

    result = CreditLedger(db_session).spend(drifted_user.id, 8)

    assert result.ok
    assert result.balance == 0
