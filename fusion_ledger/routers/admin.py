from typing import List
from uuid import UUID
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import require_admin
from ..db import get_db
from ..exceptions import InsufficientCreditsError, handle_ledger_exceptions
from ..schemas import AdjustmentRequest, BalanceCorrectionOut, LedgerResponse, ReconciliationReport
from ..services.credits import CreditLedger
from ..services.reconciliation import BalanceReconciler

router = APIRouter(dependencies=[Depends(require_admin)])


def _corrections_out(corrections) -> List[BalanceCorrectionOut]:
    return [
        BalanceCorrectionOut(user_id=c.user_id, old_balance=c.old_balance, new_balance=c.new_balance)
        for c in corrections
    ]


@router.get('/balances/drift', response_model=List[BalanceCorrectionOut])
@handle_ledger_exceptions
def balance_drift(db: Session = Depends(get_db)):
    """Users whose stored balance disagrees with their ledger. Read only."""
    return _corrections_out(BalanceReconciler(db).find_drift())


@router.post('/balances/reconcile', response_model=ReconciliationReport)
@handle_ledger_exceptions
def reconcile_all(db: Session = Depends(get_db)):
    run = BalanceReconciler(db).reconcile_all()
    return ReconciliationReport(
        corrected=len(run.corrections),
        corrections=_corrections_out(run.corrections),
        failed_user_ids=run.failed_user_ids,
    )


@router.post('/balances/{user_id}/reconcile', response_model=ReconciliationReport)
@handle_ledger_exceptions
def reconcile_user(user_id: UUID, db: Session = Depends(get_db)):
    correction = BalanceReconciler(db).reconcile_user(user_id)
    corrections = [correction] if correction else []
    return ReconciliationReport(corrected=len(corrections), corrections=_corrections_out(corrections))


@router.post('/credits/adjust', response_model=LedgerResponse)
@handle_ledger_exceptions
def adjust(payload: AdjustmentRequest, db: Session = Depends(get_db)):
    ledger = CreditLedger(db)
    ledger.get_user(payload.user_id)
    result = ledger.adjust(payload.user_id, payload.amount, payload.description, payload.transaction_type)
    if not result.ok:
        raise InsufficientCreditsError(required=result.required, available=result.balance, user_id=str(payload.user_id))
    return LedgerResponse(
        success=result.ok,
        status=result.status.value,
        balance=result.balance,
        transaction_id=result.transaction_id,
    )
