import logging
import asyncio
import time
from datetime import date
from functools import partial
from typing import Callable, Optional

from config import settings
from database import SessionLocal
from models import Account, Statement, StatementStatus, utcnow
from schemas import DocumentContext, ExtractedTransaction, PageExtractionResult, ParsingRuleSpec
from services import file_loader
from services.bank_names import normalize_bank_name
from services.csv_parser import chunk_csv, parse_csv_with_rules
from services.dedup import coerce_date, filter_duplicates, load_existing_signatures
from services.ledger import store_transactions
from services.merger import merge_results
from services.pdf_processor import extract_page_texts, image_bytes_to_base64, pdf_pages_to_base64
from services.reconciler import reconcile_account
from services.rule_store import find_parsing_rule, increment_rule_usage
from services.usage import record_usage

logger = logging.getLogger("Ledgerline.Orchestrator")

PENDING = StatementStatus.PENDING_EXTRACTION.value


class ExtractionHalted(Exception):
    """Run ended early in a terminal state that is not an error (e.g. rules need confirming)."""


# ─── Trigger ──────────────────────────────────────────────────────────────────

def should_start_extraction(before_status: Optional[str], after_status: Optional[str]) -> bool:
    """Only a transition *into* pending_extraction starts a run."""
    return before_status != PENDING and after_status == PENDING


def handle_status_change(statement_id: str, before_status: Optional[str], after_status: Optional[str]) -> bool:
    """Entry point for status-field updates. Returns whether a run was started."""
    if not should_start_extraction(before_status, after_status):
        logger.debug(f"Ignoring status change {before_status} -> {after_status} for {statement_id}")
        return False
    run_extraction(statement_id)
    return True


def handle_statement_created(statement_id: str, status: Optional[str]) -> bool:
    """A statement created directly in pending_extraction runs like a transition."""
    return handle_status_change(statement_id, None, status)


def run_extraction(statement_id: str):
    """Run the extraction pipeline for one statement. Called as a background task."""
    asyncio.run(_run_extraction_async(statement_id))


# ─── Helpers ──────────────────────────────────────────────────────────────────

def _update(db, statement: Statement, **fields):
    for key, value in fields.items():
        setattr(statement, key, value)
    db.commit()


def _bank_context(account: Account) -> str:
    last4 = (account.account_number or "0000")[-4:]
    return f"{account.bank_name or 'Unknown'}, Account: ****{last4}, Currency: {account.currency or 'USD'}"


def _balances_from_rows(transactions: list[ExtractedTransaction]) -> tuple[Optional[float], Optional[float]]:
    """Opening = balance on the oldest dated row, closing = balance on the newest."""
    dated = [
        (coerce_date(tx.date), tx.balance) for tx in transactions
        if tx.balance is not None and coerce_date(tx.date) is not None
    ]
    if not dated:
        return None, None
    dated.sort(key=lambda pair: pair[0])
    return dated[0][1], dated[-1][1]


async def _run_unit_groups(db, statement: Statement, calls: list[tuple[int, Callable]]) -> list[PageExtractionResult]:
    """
    Run extraction calls in groups of PAGE_BATCH_SIZE, joining each group before
    the next. A failed call becomes an empty result for its page.
    """
    loop = asyncio.get_running_loop()
    total = len(calls)
    batch_size = settings.PAGE_BATCH_SIZE
    results: list[PageExtractionResult] = []
    completed = 0

    for start in range(0, total, batch_size):
        group = calls[start:start + batch_size]
        wave_start = time.time()
        logger.info(f"  🌊 Extracting units {start + 1}-{start + len(group)} of {total}")
        outcomes = await asyncio.gather(
            *(loop.run_in_executor(None, call) for _, call in group),
            return_exceptions=True,
        )
        for (page, _), outcome in zip(group, outcomes):
            completed += 1
            if isinstance(outcome, BaseException):
                logger.error(f"  ❌ Page {page} extraction failed: {outcome}")
                results.append(PageExtractionResult(
                    page=page,
                    transactions=[],
                    confidence=0,
                    warnings=[f"Extraction failed: {outcome}"],
                ))
            else:
                results.append(outcome)

        _update(db, statement,
                extraction_progress=20 + int(completed / total * 60),
                pages_completed=completed)
        logger.info(f"  ✅ Group done in {time.time() - wave_start:.2f}s ({completed}/{total})")

    return results


# ─── Branches ─────────────────────────────────────────────────────────────────

async def _extract_tabular(db, statement: Statement, account: Account, data: bytes,
                           kind: str, bank_context: str):
    """CSV / spreadsheet. Returns (results, units, single_pass)."""
    from agents.page_extractor import PageExtractorAgent
    from agents.rule_corrector import RuleCorrectorAgent, needs_self_healing

    loop = asyncio.get_running_loop()

    if kind == file_loader.SPREADSHEET:
        try:
            content = file_loader.spreadsheet_to_csv(data, statement.original_file_name or "")
        except Exception as e:
            logger.error(f"  ❌ Failed to parse Excel file: {e}")
            _update(db, statement,
                    status=StatementStatus.FAILED.value,
                    error_message="Failed to parse Excel file.",
                    extraction_progress=0,
                    processed_at=utcnow())
            raise ExtractionHalted() from e
    else:
        content = file_loader.decode_text(data)

    _update(db, statement, extraction_progress=15, pages_total=1, pages_completed=0, actual_pdf_pages=0)

    bank_name = normalize_bank_name(account.bank_name or "Unknown")
    rule = find_parsing_rule(db, statement.user_id, bank_name)
    _update(db, statement, extraction_progress=20)

    if rule is None:
        if settings.AI_SPREADSHEET_FALLBACK:
            chunks = chunk_csv(content, settings.CSV_CHUNK_MAX_CHARS)
            logger.info(f"  📑 No confirmed rule for {bank_name}; AI extraction over {len(chunks)} chunk(s)")
            _update(db, statement, pages_total=len(chunks))
            agent = PageExtractorAgent()
            calls = [
                (i, partial(agent.run, page=i, total_pages=len(chunks), bank_context=bank_context, csv_content=chunk))
                for i, chunk in enumerate(chunks, start=1)
            ]
            return await _run_unit_groups(db, statement, calls), len(chunks), False

        logger.warning(f"  ⏸️  No confirmed parsing rule for {bank_name}. User must confirm rules first.")
        _update(db, statement,
                status=StatementStatus.NEEDS_RULES_CONFIRMATION.value,
                error_message="Please confirm the CSV parsing rules before extraction can proceed.",
                processed_at=utcnow())
        raise ExtractionHalted()

    logger.info(f"  📐 Using confirmed parsing rule {rule.id} for {bank_name}")
    _update(db, statement, extraction_progress=30, parsing_rule_id=rule.id)
    spec = ParsingRuleSpec.model_validate(rule)
    parsed, warnings = parse_csv_with_rules(content, spec)
    input_tokens = output_tokens = 0

    if needs_self_healing(content, spec, len(parsed)):
        logger.info("  🩹 0 transactions from a populated file. Asking the model to fix the rules...")
        _update(db, statement, extraction_progress=35, status=StatementStatus.SELF_HEALING.value)
        outcome = await loop.run_in_executor(
            None, lambda: RuleCorrectorAgent().run(db, content, spec, warnings)
        )
        parsed, warnings = outcome.transactions, outcome.warnings
        input_tokens, output_tokens = outcome.input_tokens, outcome.output_tokens
        _update(db, statement, extraction_progress=50)

    transactions = [ExtractedTransaction.model_validate(tx.model_dump()) for tx in parsed]
    opening, closing = _balances_from_rows(transactions)
    result = PageExtractionResult(
        page=1,
        transactions=transactions,
        opening_balance=opening,
        closing_balance=closing,
        confidence=0.95,
        warnings=warnings,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
    )
    increment_rule_usage(db, rule.id)
    _update(db, statement, extraction_progress=80)
    return [result], 1, True


async def _extract_document(db, statement: Statement, data: bytes, kind: str, bank_context: str):
    """PDF / image. Returns (results, units, context)."""
    from agents.context_scanner import ContextScannerAgent
    from agents.page_extractor import PageExtractorAgent

    loop = asyncio.get_running_loop()

    if kind == file_loader.PDF:
        images = await loop.run_in_executor(None, pdf_pages_to_base64, data)
        try:
            texts = await loop.run_in_executor(None, extract_page_texts, data)
        except Exception as e:
            logger.warning(f"  ⚠️  No text layer available ({e}); using page images only")
            texts = []
    else:
        images = [await loop.run_in_executor(None, image_bytes_to_base64, data)]
        texts = []

    pages = len(images)
    if pages == 0:
        raise ValueError("Document has no pages")
    _update(db, statement, extraction_progress=15, pages_total=pages, pages_completed=0, actual_pdf_pages=pages)

    context: Optional[DocumentContext] = None
    if kind == file_loader.PDF and pages > 1:
        logger.info(f"  🗺️  PASS 1: document context for {pages} page PDF...")
        _update(db, statement, extraction_progress=18)
        try:
            context = await loop.run_in_executor(
                None, lambda: ContextScannerAgent().run(images, bank_context, texts)
            )
        except Exception as e:
            logger.error(f"  ⚠️  Failed to get document context, proceeding without: {e}")
            context = None

    _update(db, statement, extraction_progress=20)

    agent = PageExtractorAgent()
    calls = [
        (page, partial(
            agent.run,
            page=page,
            total_pages=pages,
            bank_context=bank_context,
            image=images[page - 1],
            page_text=texts[page - 1] if page <= len(texts) else None,
            context=context,
        ))
        for page in range(1, pages + 1)
    ]
    results = await _run_unit_groups(db, statement, calls)
    return results, pages, context


# ─── Pipeline ─────────────────────────────────────────────────────────────────

async def _run_extraction_async(statement_id: str):
    """Async implementation of run_extraction. Every exit leaves a terminal status."""
    db = SessionLocal()
    try:
        statement = db.query(Statement).filter(Statement.id == statement_id).first()
        if not statement:
            logger.error(f"Statement {statement_id} not found")
            return

        if not (statement.user_id and statement.account_id and statement.file_url):
            logger.error(f"Missing required fields for extraction of {statement_id}")
            _update(db, statement,
                    status=StatementStatus.FAILED.value,
                    error_message="Missing required fields",
                    processed_at=utcnow())
            return

        try:
            await _extract(db, statement)
        except ExtractionHalted:
            logger.info(f"⏸️  Extraction for {statement_id} stopped in status {statement.status}")
        except Exception as e:
            logger.error(f"❌ Extraction error for {statement_id}: {e}", exc_info=True)
            db.rollback()
            _update(db, statement,
                    status=StatementStatus.FAILED.value,
                    error_message=str(e) or type(e).__name__,
                    extraction_progress=0,
                    processed_at=utcnow())
    finally:
        db.close()


async def _extract(db, statement: Statement):
    total_start = time.time()
    logger.info(f"🔮 Starting extraction for statement {statement.id} ({statement.original_file_name})")

    _update(db, statement, status=StatementStatus.EXTRACTING.value, extraction_progress=5, error_message=None)

    account = db.query(Account).filter(Account.id == statement.account_id).first()
    if not account:
        raise ValueError(f"Account {statement.account_id} not found")
    model_name = settings.AZURE_OPENAI_DEPLOYMENT

    _update(db, statement, extraction_progress=10)
    loop = asyncio.get_running_loop()
    data = await loop.run_in_executor(None, file_loader.load_file_bytes, statement.file_url)

    bank_context = _bank_context(account)
    kind = file_loader.detect_file_kind(statement.original_file_name, statement.mime_type, statement.file_type)
    logger.info(f"  📄 File kind: {kind}")

    context = None
    if kind in (file_loader.CSV, file_loader.SPREADSHEET):
        results, units, single_pass = await _extract_tabular(db, statement, account, data, kind, bank_context)
        actual_pdf_pages = 0
    else:
        results, units, context = await _extract_document(db, statement, data, kind, bank_context)
        single_pass = False
        actual_pdf_pages = units

    logger.info(f"  🔗 All {len(results)} result sets processed, merging...")
    _update(db, statement, extraction_progress=85)
    merged = merge_results(results, context=context, single_pass=single_pass)

    avg_confidence = merged.average_confidence
    needs_review = avg_confidence < settings.REVIEW_AVG_CONFIDENCE or any(
        t.confidence is not None and t.confidence < settings.REVIEW_TX_CONFIDENCE for t in merged.transactions
    )
    _update(db, statement, extraction_progress=90)

    usage_record_id = record_usage(
        db,
        user_id=statement.user_id,
        statement_id=statement.id,
        account_id=account.id,
        ai_model=model_name,
        input_tokens=merged.input_tokens,
        output_tokens=merged.output_tokens,
        pages_processed=actual_pdf_pages,
        transactions_extracted=len(merged.transactions),
        confidence=avg_confidence,
        status="needs_review" if needs_review else "success",
        processing_time_ms=int((time.time() - total_start) * 1000),
    )

    existing = load_existing_signatures(db, account.id)
    new_transactions, duplicates = filter_duplicates(merged.transactions, existing)
    store_transactions(db, statement, new_transactions, avg_confidence, currency=account.currency or "USD")

    period_start: Optional[date] = coerce_date(merged.period_start)
    period_end: Optional[date] = coerce_date(merged.period_end)
    reconcile_account(db, account.id, len(new_transactions), merged.closing_balance, period_end)

    warnings = list(merged.warnings)
    if duplicates:
        warnings.append(f"{len(duplicates)} duplicate transactions were skipped")

    final_status = StatementStatus.NEEDS_REVIEW if needs_review else StatementStatus.COMPLETED
    _update(db, statement,
            status=final_status.value,
            transaction_count=len(new_transactions),
            duplicates_skipped=len(duplicates),
            transactions_extracted=len(merged.transactions),
            period_start=period_start,
            period_end=period_end,
            opening_balance=merged.opening_balance,
            closing_balance=merged.closing_balance,
            confidence=avg_confidence,
            extraction_model=model_name,
            usage_record_id=usage_record_id,
            warnings=warnings[:settings.MAX_STATEMENT_WARNINGS],
            pages_total=units,
            pages_completed=units,
            actual_pdf_pages=actual_pdf_pages,
            extraction_progress=100,
            processed_at=utcnow())

    logger.info(
        f"✅ Extracted {len(merged.transactions)} transactions, saved {len(new_transactions)} new "
        f"in {time.time() - total_start:.1f}s ({final_status.value})"
    )
