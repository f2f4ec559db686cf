"""Duplicate detection against stored transactions and within the incoming batch."""
import logging
from datetime import date
from typing import Iterable, Optional, Union

from sqlalchemy.orm import Session

from models import Transaction
from schemas import ExtractedTransaction
from services.csv_parser import parse_date

logger = logging.getLogger("Ledgerline.Dedup")


def coerce_date(value: Union[str, date, None]) -> Optional[date]:
    """ISO first, then the CSV heuristics. None when the value isn't a date."""
    if value is None:
        return None
    if isinstance(value, date):
        return value
    text = str(value).strip()
    for candidate in (text[:10], parse_date(text)):
        if not candidate:
            continue
        try:
            return date.fromisoformat(candidate)
        except ValueError:
            continue
    return None


def strict_signature(tx_date: date, tx_type: str, amount: float, balance: Optional[float]) -> str:
    """``YYYY-MM-DD|type|amount|balance`` with cents rounding; missing balance is ``null``."""
    balance_part = "null" if balance is None else f"{round(balance, 2):.2f}"
    return f"{tx_date.isoformat()}|{tx_type}|{round(amount, 2):.2f}|{balance_part}"


def load_existing_signatures(db: Session, account_id: str) -> set[str]:
    rows = (
        db.query(Transaction.date, Transaction.type, Transaction.amount, Transaction.balance)
        .filter(Transaction.account_id == account_id)
        .all()
    )
    signatures = {strict_signature(r.date, r.type, r.amount, r.balance) for r in rows}
    logger.info(f"  🔎 Found {len(signatures)} existing transaction signatures")
    return signatures


def filter_duplicates(
    transactions: Iterable[ExtractedTransaction],
    existing_signatures: set[str],
) -> tuple[list[tuple[date, ExtractedTransaction]], list[ExtractedTransaction]]:
    """
    Split a batch into (new, duplicates).

    Invalid rows (no date, no amount, unparsable date) are dropped from both.
    New rows come back paired with their parsed date.
    """
    new: list[tuple[date, ExtractedTransaction]] = []
    duplicates: list[ExtractedTransaction] = []
    batch_signatures: set[str] = set()

    for tx in transactions:
        if not tx.date or tx.amount is None:
            logger.debug(f"Skipping invalid transaction: {tx.model_dump_json()[:100]}")
            continue
        tx_date = coerce_date(tx.date)
        if tx_date is None:
            logger.debug(f"Skipping transaction with invalid date: {tx.date}")
            continue

        signature = strict_signature(tx_date, tx.type, tx.amount, tx.balance)
        if signature in existing_signatures:
            logger.info(f"  ♻️  Duplicate (existing): {signature} - {(tx.description or '')[:50]}")
            duplicates.append(tx)
        elif signature in batch_signatures:
            logger.info(f"  ♻️  Duplicate (batch): {signature} - {(tx.description or '')[:50]}")
            duplicates.append(tx)
        else:
            batch_signatures.add(signature)
            new.append((tx_date, tx))

    logger.info(f"  ✅ {len(new)} new transactions, {len(duplicates)} duplicates")
    return new, duplicates
