from typing import List
from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..config import settings
from ..db import get_db
from ..exceptions import InsufficientCreditsError, handle_ledger_exceptions
from ..models import CreditPackage, User
from ..schemas import (
    CreditBalance,
    CreditPackageOut,
    LedgerResponse,
    RefundRequest,
    SpendRequest,
    TransactionOut,
    TransactionPage,
)
from ..services.credits import CreditLedger, LedgerResult

router = APIRouter()


def _response(result: LedgerResult) -> LedgerResponse:
    return LedgerResponse(
        success=result.ok,
        status=result.status.value,
        balance=result.balance,
        transaction_id=result.transaction_id,
    )


@router.get('/balance', response_model=CreditBalance)
@handle_ledger_exceptions
def balance(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return CreditBalance(balance=CreditLedger(db).get_balance(user.id), user_id=user.id)


@router.get('/transactions', response_model=TransactionPage)
@handle_ledger_exceptions
def transactions(
    limit: int = Query(50, ge=1),
    offset: int = Query(0, ge=0),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    limit = min(limit, settings.max_history_page)
    items = CreditLedger(db).history(user.id, limit=limit, offset=offset)
    return TransactionPage(items=[TransactionOut.model_validate(t) for t in items], limit=limit, offset=offset)


@router.get('/packages', response_model=List[CreditPackageOut])
@handle_ledger_exceptions
def packages(db: Session = Depends(get_db)):
    rows = db.execute(
        select(CreditPackage).where(CreditPackage.is_active.is_(True)).order_by(CreditPackage.sort_order, CreditPackage.credits)
    ).scalars()
    return [
        CreditPackageOut(
            id=pkg.id,
            name=pkg.name,
            credits=pkg.credits,
            price=pkg.price_cents / 100,
            currency=pkg.currency,
            price_id=pkg.stripe_price_id,
        )
        for pkg in rows
    ]


@router.post('/use', response_model=LedgerResponse)
@handle_ledger_exceptions
def use(payload: SpendRequest = None, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    payload = payload or SpendRequest()
    result = CreditLedger(db).spend(user.id, settings.fusion_cost, payload.description)
    if not result.ok:
        raise InsufficientCreditsError(required=result.required, available=result.balance, user_id=str(user.id))
    return _response(result)


@router.post('/refund', response_model=LedgerResponse)
@handle_ledger_exceptions
def refund(payload: RefundRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    # Only a fusion the caller paid for can be given back; other credits go through admin adjustments
    result = CreditLedger(db).refund(
        user.id,
        settings.fusion_cost,
        payload.description,
        reverses_transaction_id=payload.reverses_transaction_id,
    )
    return _response(result)
