from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import get_current_user, get_external_user_id
from ..db import get_db
from ..exceptions import handle_ledger_exceptions
from ..models import User
from ..schemas import SyncUserRequest, UserOut
from ..services.credits import CreditLedger

router = APIRouter()


@router.post('/sync-user', response_model=UserOut)
@handle_ledger_exceptions
def sync_user(payload: SyncUserRequest = None, external_id: str = Depends(get_external_user_id), db: Session = Depends(get_db)):
    """Map the identity-provider account to an internal user, creating it with zero credits."""
    payload = payload or SyncUserRequest()
    user = CreditLedger(db).get_or_create_user(external_id, email=payload.email)
    db.refresh(user)
    return user


@router.get('/me', response_model=UserOut)
@handle_ledger_exceptions
def me(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    db.refresh(user)
    return user
