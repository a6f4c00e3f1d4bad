import pytest
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fusion_ledger.models import CreditTransaction, TransactionType, User
from fusion_ledger.projection import suspend_balance_guard
from fusion_ledger.services.credits import CreditLedger
from fusion_ledger.services.reconciliation import BalanceReconciler


def _stored_balance(db: Session, user: User) -> int:
    db.refresh(user)
    return user.credits_balance


def test_insert_updates_projection_in_same_transaction(db_session: Session, test_user: User):
    db_session.add(CreditTransaction(
        user_id=test_user.id,
        amount=4,
        transaction_type=TransactionType.ADJUSTMENT,
        description="Trigger check",
    ))
    db_session.flush()

    # Visible before commit: the trigger ran inside this transaction
    assert _stored_balance(db_session, test_user) == 4
    db_session.rollback()
    assert _stored_balance(db_session, test_user) == 0


def test_direct_balance_update_is_rejected(db_session: Session, test_user: User):
    CreditLedger(db_session).purchase(test_user.id, 5, payment_reference="cs_test_guard")

    with pytest.raises(IntegrityError):
        db_session.execute(
            update(User).where(User.id == test_user.id).values(credits_balance=100)
            .execution_options(synchronize_session=False)
        )
    db_session.rollback()

    assert _stored_balance(db_session, test_user) == 5


def test_update_to_ledger_sum_is_allowed(db_session: Session, test_user: User):
    CreditLedger(db_session).purchase(test_user.id, 5, payment_reference="cs_test_guard_ok")

    db_session.execute(
        update(User).where(User.id == test_user.id).values(credits_balance=5)
        .execution_options(synchronize_session=False)
    )
    db_session.commit()

    assert _stored_balance(db_session, test_user) == 5


def test_deleting_a_row_recomputes_balance(db_session: Session, test_user: User):
    ledger = CreditLedger(db_session)
    ledger.purchase(test_user.id, 5, payment_reference="cs_test_delete_a")
    second = ledger.purchase(test_user.id, 3, payment_reference="cs_test_delete_b")

    db_session.execute(delete(CreditTransaction).where(CreditTransaction.id == second.transaction_id))
    db_session.commit()

    assert _stored_balance(db_session, test_user) == 5


def test_ledger_sum_below_zero_violates_check(db_session: Session, test_user: User):
    with pytest.raises(IntegrityError):
        db_session.add(CreditTransaction(
            user_id=test_user.id,
            amount=-1,
            transaction_type=TransactionType.USAGE,
            description="Overdraw",
        ))
        db_session.flush()
    db_session.rollback()

    assert _stored_balance(db_session, test_user) == 0


def test_zero_amount_rows_are_rejected(db_session: Session, test_user: User):
    with pytest.raises(IntegrityError):
        db_session.add(CreditTransaction(
            user_id=test_user.id,
            amount=0,
            transaction_type=TransactionType.ADJUSTMENT,
        ))
        db_session.flush()
    db_session.rollback()


def test_suspended_guard_allows_direct_write_then_restores(db_session: Session, test_user: User):
    with suspend_balance_guard(db_session.connection()):
        db_session.execute(
            update(User).where(User.id == test_user.id).values(credits_balance=12)
            .execution_options(synchronize_session=False)
        )
    db_session.commit()
    assert _stored_balance(db_session, test_user) == 12

    with pytest.raises(IntegrityError):
        db_session.execute(
            update(User).where(User.id == test_user.id).values(credits_balance=13)
            .execution_options(synchronize_session=False)
        )
    db_session.rollback()

    BalanceReconciler(db_session).reconcile_user(test_user.id)
    assert _stored_balance(db_session, test_user) == 0


def test_guard_is_restored_when_the_suspended_block_fails(db_session: Session, test_user: User):
    with pytest.raises(RuntimeError):
        with suspend_balance_guard(db_session.connection()):
            db_session.execute(
                update(User).where(User.id == test_user.id).values(credits_balance=7)
                .execution_options(synchronize_session=False)
            )
            raise RuntimeError("historical load failed")

    assert _stored_balance(db_session, test_user) == 0
    with pytest.raises(IntegrityError):
        db_session.execute(
            update(User).where(User.id == test_user.id).values(credits_balance=7)
            .execution_options(synchronize_session=False)
        )
    db_session.rollback()
