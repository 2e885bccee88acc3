"""Connected accounts: register after the user links a provider, list per user."""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth import require_api_key
from ..database import get_sync_db
from ..models import Account
from ..schemas import AccountCreate, AccountResponse

router = APIRouter(prefix="/api/accounts", tags=["accounts"], dependencies=[Depends(require_api_key)])


@router.post("", response_model=AccountResponse)
def register_account(body: AccountCreate, db: Session = Depends(get_sync_db)):
    """Create the account, or update it if this external account id is already known."""
    account = db.query(Account).filter(Account.external_account_id == body.external_account_id).first()
    if account:
        if account.user_id != body.user_id:
            raise HTTPException(status_code=409, detail="Account is connected to another user")
        account.provider = body.provider
        account.email = body.email or account.email
        account.is_active = body.is_active
    else:
        account = Account(
            user_id=body.user_id,
            external_account_id=body.external_account_id,
            provider=body.provider,
            email=body.email,
            is_active=body.is_active,
            sync_state={},
        )
        db.add(account)
    db.commit()
    db.refresh(account)
    return account


@router.get("", response_model=List[AccountResponse])
def list_accounts(user_id: Optional[str] = None, db: Session = Depends(get_sync_db)):
    q = db.query(Account)
    if user_id:
        q = q.filter(Account.user_id == user_id)
    return q.order_by(Account.created_at.desc()).all()


@router.get("/{account_id}", response_model=AccountResponse)
def get_account(account_id: str, db: Session = Depends(get_sync_db)):
    account = db.query(Account).filter(Account.id == account_id).first()
    if not account:
        raise HTTPException(status_code=404, detail="Account not found")
    return account
