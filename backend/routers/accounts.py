import logging
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from database import get_db
from models import Account
from schemas import AccountCreate, AccountResponse
from routers.auth import get_current_user_dep
from services.bank_names import get_bank_identifier, normalize_bank_name

logger = logging.getLogger("Ledgerline.Accounts")

router = APIRouter()


@router.post("/accounts", response_model=AccountResponse)
def create_account(
    body: AccountCreate,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_dep),
):
    """Create an account, or return the existing one with the same bank, number and currency."""
    bank_name = normalize_bank_name(body.bank_name)
    account_number = (body.account_number or "").strip() or None
    currency = (body.currency or "USD").upper()

    existing = (
        db.query(Account)
        .filter(
            Account.user_id == user_id,
            Account.bank_name == bank_name,
            Account.account_number == account_number,
            Account.currency == currency,
        )
        .first()
    )
    if existing:
        logger.info(f"Reusing account {existing.id} ({bank_name} {currency})")
        return AccountResponse.model_validate(existing)

    account = Account(
        user_id=user_id,
        bank_name=bank_name,
        bank_identifier=get_bank_identifier(bank_name),
        account_number=account_number,
        account_type=body.account_type,
        currency=currency,
    )
    db.add(account)
    db.commit()
    db.refresh(account)
    logger.info(f"Created account {account.id} ({bank_name} {currency})")
    return AccountResponse.model_validate(account)


@router.get("/accounts/{account_id}", response_model=AccountResponse)
def get_account(
    account_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_dep),
):
    account = db.query(Account).filter(Account.id == account_id, Account.user_id == user_id).first()
    if not account:
        raise HTTPException(status_code=404, detail="Account not found")
    return AccountResponse.model_validate(account)
