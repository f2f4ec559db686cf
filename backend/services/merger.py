"""Merge per-page / per-chunk extraction results into one statement result."""
import logging
from dataclasses import dataclass, field
from typing import Optional

from schemas import DocumentContext, ExtractedTransaction, PageExtractionResult
from services.continuation import looks_like_continuation

logger = logging.getLogger("Ledgerline.Merger")

CONTINUATION_WARNING = "Merged continuation text from page break into transaction"


@dataclass
class MergedResult:
    transactions: list[ExtractedTransaction] = field(default_factory=list)
    raw_count: int = 0
    opening_balance: Optional[float] = None
    closing_balance: Optional[float] = None
    period_start: Optional[str] = None
    period_end: Optional[str] = None
    average_confidence: float = 0.8
    input_tokens: int = 0
    output_tokens: int = 0
    warnings: list[str] = field(default_factory=list)


def _is_continuation(tx: ExtractedTransaction) -> bool:
    return (tx.type or "").lower() == "continuation" or tx.continued_from == "previous_page"


def _append_text(target: ExtractedTransaction, fragment: str) -> None:
    target.description = f"{target.description or ''} {fragment or ''}".strip()


def stitch_continuations(raw: list[ExtractedTransaction]) -> tuple[list[ExtractedTransaction], list[str]]:
    """
    Fold page-break fragments into the transaction emitted just before them.

    Order dependent: a fragment always belongs to the previous kept transaction.
    A fragment with nothing before it is dropped.
    """
    kept: list[ExtractedTransaction] = []
    warnings: list[str] = []

    for tx in raw:
        if _is_continuation(tx):
            if kept:
                _append_text(kept[-1], tx.description)
                warnings.append(CONTINUATION_WARNING)
                logger.info(f"  🧵 Merged continuation into: {kept[-1].description[:100]}")
            continue

        if not tx.amount and tx.description and kept and looks_like_continuation(tx.description):
            _append_text(kept[-1], tx.description)
            logger.info(f"  🧵 Merged zero-amount continuation: {tx.description[:50]}")
            continue

        kept.append(tx)

    return kept, warnings


def _normalize_sign(tx: ExtractedTransaction) -> ExtractedTransaction:
    """Amount becomes a magnitude; a missing type is taken from the sign."""
    tx_type = (tx.type or "").lower()
    if tx_type not in ("credit", "debit"):
        tx_type = "debit" if (tx.amount or 0) < 0 else "credit"
    tx.type = tx_type
    if tx.amount is not None:
        tx.amount = abs(tx.amount)
    return tx


def merge_results(
    results: list[PageExtractionResult],
    context: Optional[DocumentContext] = None,
    single_pass: bool = False,
) -> MergedResult:
    """
    Combine unit results in page order.

    Opening balance and period come from the first unit that reports them.
    Closing balance comes from the last unit, or from unit 1 when the whole
    file was parsed in a single pass. Context-pass values fill any gaps.
    """
    ordered = sorted(results, key=lambda r: r.page)
    merged = MergedResult()

    raw: list[ExtractedTransaction] = []
    total_confidence = 0.0
    for result in ordered:
        raw.extend(result.transactions)
        merged.input_tokens += result.input_tokens
        merged.output_tokens += result.output_tokens
        total_confidence += result.confidence
        merged.warnings.extend(result.warnings)

        if merged.opening_balance is None and result.opening_balance is not None:
            merged.opening_balance = result.opening_balance
        if merged.period_start is None and result.period_start:
            merged.period_start = result.period_start
        if merged.period_end is None and result.period_end:
            merged.period_end = result.period_end

    if ordered:
        closing_unit = ordered[0] if single_pass else ordered[-1]
        merged.closing_balance = closing_unit.closing_balance
        merged.average_confidence = total_confidence / len(ordered)

    if context is not None:
        merged.input_tokens += context.input_tokens
        merged.output_tokens += context.output_tokens
        if merged.opening_balance is None and context.opening_balance is not None:
            merged.opening_balance = context.opening_balance
            logger.info(f"  ↩️  Using context opening balance: {context.opening_balance}")
        if merged.closing_balance is None and context.closing_balance is not None:
            merged.closing_balance = context.closing_balance
            logger.info(f"  ↩️  Using context closing balance: {context.closing_balance}")
        merged.period_start = merged.period_start or context.period_start
        merged.period_end = merged.period_end or context.period_end

    merged.raw_count = len(raw)
    stitched, stitch_warnings = stitch_continuations(raw)
    merged.transactions = [_normalize_sign(tx) for tx in stitched]
    merged.warnings.extend(stitch_warnings)

    logger.info(f"  🔗 Merged {len(ordered)} unit(s): {len(merged.transactions)} transactions "
                f"(from {merged.raw_count} raw), opening={merged.opening_balance}, "
                f"closing={merged.closing_balance}")
    return merged
