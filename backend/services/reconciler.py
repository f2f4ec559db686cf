"""Account counters and running balance after a statement is stored."""
import logging
from datetime import date
from typing import Optional

from sqlalchemy.orm import Session

from models import Account, utcnow

logger = logging.getLogger("Ledgerline.Reconciler")


def should_update_balance(
    current_balance: Optional[float],
    latest_period_end: Optional[date],
    closing_balance: Optional[float],
    period_end: Optional[date],
) -> bool:
    """A statement may move the balance only if it is not older than the latest one seen."""
    if closing_balance is None:
        return False
    if current_balance is None or latest_period_end is None:
        return True
    return period_end is not None and period_end >= latest_period_end


def reconcile_account(
    db: Session,
    account_id: str,
    new_transaction_count: int,
    closing_balance: Optional[float],
    period_end: Optional[date],
) -> bool:
    """
    Bump counters unconditionally and move the balance when the statement is current.

    Counters use SQL-side increments. The balance check is read-then-write and
    is not guarded against a concurrent run on the same account.
    Returns whether the balance moved.
    """
    db.query(Account).filter(Account.id == account_id).update(
        {
            Account.transaction_count: Account.transaction_count + new_transaction_count,
            Account.statement_count: Account.statement_count + 1,
            Account.last_statement_date: utcnow(),
        },
        synchronize_session=False,
    )

    account = db.query(Account).filter(Account.id == account_id).first()
    db.refresh(account)
    updated = should_update_balance(account.balance, account.latest_period_end, closing_balance, period_end)
    if updated:
        account.balance = closing_balance
        if period_end is not None:
            account.latest_period_end = period_end
        logger.info(f"  🏦 Account balance -> {closing_balance} (period end {period_end})")
    else:
        logger.info(f"  🏦 Keeping account balance {account.balance} "
                    f"(period end {period_end} is not newer than {account.latest_period_end})")
    db.commit()
    return updated
