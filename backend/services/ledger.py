"""Writing and removing stored transactions in bounded batches."""
import logging
from datetime import date

from sqlalchemy.orm import Session

from config import settings
from models import Account, Statement, StatementStatus, Transaction
from schemas import ExtractedTransaction

logger = logging.getLogger("Ledgerline.Ledger")

# statuses whose run already bumped the account counters
_COUNTED_STATUSES = {StatementStatus.COMPLETED.value, StatementStatus.NEEDS_REVIEW.value}


def _to_row(statement: Statement, currency: str, tx_date: date, tx: ExtractedTransaction,
            average_confidence: float) -> Transaction:
    description = tx.description or ""
    return Transaction(
        user_id=statement.user_id,
        account_id=statement.account_id,
        statement_id=statement.id,
        date=tx_date,
        description=description,
        description_original=description,
        amount=tx.amount,
        type=tx.type,
        balance=tx.balance,
        reference=tx.reference,
        category=tx.category,
        currency=currency,
        search_text=f"{description} {tx.reference or ''} {tx.category or ''}".lower(),
        month=f"{tx_date.year}-{tx_date.month:02d}",
        confidence=tx.confidence or average_confidence,
        needs_review=(tx.confidence or 1) < settings.REVIEW_TX_CONFIDENCE,
    )


def store_transactions(
    db: Session,
    statement: Statement,
    new_transactions: list[tuple[date, ExtractedTransaction]],
    average_confidence: float,
    currency: str = "USD",
    batch_size: int = None,
) -> int:
    """Insert deduplicated transactions, committing one batch at a time."""
    batch_size = batch_size or settings.STORE_BATCH_SIZE
    stored = 0
    for start in range(0, len(new_transactions), batch_size):
        batch = new_transactions[start:start + batch_size]
        db.add_all(_to_row(statement, currency, d, tx, average_confidence) for d, tx in batch)
        db.commit()
        stored += len(batch)
        logger.info(f"  💾 Saved batch {start // batch_size + 1} ({len(batch)} rows)")
    return stored


def delete_statement_cascade(db: Session, statement_id: str, batch_size: int = None) -> int:
    """
    Delete a statement and its transactions, then roll the account counters back.

    Idempotent: an unknown statement id is a no-op. Returns the number of
    transactions removed.
    """
    batch_size = batch_size or settings.STORE_BATCH_SIZE
    statement = db.query(Statement).filter(Statement.id == statement_id).first()
    if not statement:
        logger.info(f"No statement {statement_id} to delete")
        return 0

    account_id = statement.account_id
    was_counted = statement.status in _COUNTED_STATUSES

    deleted = 0
    while True:
        ids = [
            row.id for row in
            db.query(Transaction.id).filter(Transaction.statement_id == statement_id).limit(batch_size).all()
        ]
        if not ids:
            break
        db.query(Transaction).filter(Transaction.id.in_(ids)).delete(synchronize_session=False)
        db.commit()
        deleted += len(ids)

    db.delete(statement)
    if account_id and (deleted or was_counted):
        db.query(Account).filter(Account.id == account_id).update(
            {
                Account.transaction_count: Account.transaction_count - deleted,
                Account.statement_count: Account.statement_count - (1 if was_counted else 0),
            },
            synchronize_session=False,
        )
    db.commit()
    logger.info(f"🗑️  Deleted statement {statement_id} and {deleted} transaction(s)")
    return deleted
