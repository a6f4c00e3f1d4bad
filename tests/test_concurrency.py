import threading
import uuid

from fusion_ledger.db import SessionLocal
from fusion_ledger.models import User
from fusion_ledger.services.credits import CreditLedger, LedgerStatus


def _new_user_with_credits(credits: int) -> uuid.UUID:
    session = SessionLocal()
    try:
        user = User(external_id=f"user_{uuid.uuid4().hex[:12]}", credits_balance=0)
        session.add(user)
        session.commit()
        user_id = user.id
        if credits:
            CreditLedger(session).purchase(user_id, credits, payment_reference=f"cs_{uuid.uuid4().hex}")
        return user_id
    finally:
        session.close()


def _run_concurrently(worker, count: int) -> list:
    barrier = threading.Barrier(count)
    results, errors = [], []
    lock = threading.Lock()

    def _target():
        barrier.wait()
        session = SessionLocal()
        try:
            outcome = worker(CreditLedger(session))
            with lock:
                results.append(outcome)
        except Exception as e:  # surfaced by the assertion below
            with lock:
                errors.append(e)
        finally:
            session.close()

    threads = [threading.Thread(target=_target) for _ in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    assert errors == []
    return results


def test_concurrent_spends_of_last_credit():
    user_id = _new_user_with_credits(1)

    results = _run_concurrently(lambda ledger: ledger.spend(user_id, 1), count=6)

    statuses = [r.status for r in results]
    assert statuses.count(LedgerStatus.APPLIED) == 1
    assert statuses.count(LedgerStatus.INSUFFICIENT_CREDITS) == 5

    session = SessionLocal()
    try:
        assert CreditLedger(session).get_balance(user_id) == 0
    finally:
        session.close()


def test_concurrent_replays_of_one_payment_credit_once():
    user_id = _new_user_with_credits(0)

    results = _run_concurrently(
        lambda ledger: ledger.purchase(user_id, 20, payment_reference="cs_test_concurrent_replay"),
        count=5,
    )

    statuses = [r.status for r in results]
    assert statuses.count(LedgerStatus.APPLIED) == 1
    assert statuses.count(LedgerStatus.DUPLICATE) == 4

    session = SessionLocal()
    try:
        ledger = CreditLedger(session)
        assert ledger.get_balance(user_id) == 20
        assert len(ledger.history(user_id)) == 1
    finally:
        session.close()


def test_concurrent_first_requests_provision_one_user():
    external_id = f"user_{uuid.uuid4().hex[:12]}"

    results = _run_concurrently(lambda ledger: ledger.get_or_create_user(external_id).id, count=4)

    assert len(set(results)) == 1
