import io
from datetime import date

import pandas as pd
import pytest

import orchestrator
from config import settings
from models import Account, ParsingRule, Statement, StatementStatus, Transaction, UsageRecord
from orchestrator import handle_statement_created, handle_status_change, run_extraction, should_start_extraction

PENDING = StatementStatus.PENDING_EXTRACTION.value

THREE_ROWS = "Date,Desc,Amount\n2024-01-05,Coffee Shop,-4.50\n2024-01-06,Salary,2000.00\n2024-01-06,Salary,2000.00"


def _reload(db, model, id_):
    db.expire_all()
    return db.query(model).filter(model.id == id_).one()


def _stored(db, statement_id):
    return (
        db.query(Transaction)
        .filter(Transaction.statement_id == statement_id)
        .order_by(Transaction.date, Transaction.amount)
        .all()
    )


# ─── Trigger ──────────────────────────────────────────────────────────────────

@pytest.mark.parametrize("before, after, expected", [
    ("uploaded", PENDING, True),
    (None, PENDING, True),
    (PENDING, PENDING, False),
    ("uploaded", "completed", False),
    (PENDING, "extracting", False),
])
def test_only_transitions_into_pending_start_a_run(before, after, expected):
    assert should_start_extraction(before, after) is expected


def test_guard_does_not_run(db, make_statement, monkeypatch):
    calls = []
    monkeypatch.setattr(orchestrator, "run_extraction", calls.append)
    statement = make_statement(THREE_ROWS, status=PENDING)

    assert handle_status_change(statement.id, PENDING, PENDING) is False
    assert handle_status_change(statement.id, PENDING, "failed") is False
    assert calls == []
    assert handle_statement_created(statement.id, PENDING) is True
    assert calls == [statement.id]


# ─── CSV ──────────────────────────────────────────────────────────────────────

def test_three_row_csv_stores_two_transactions(db, account, make_rule, make_statement, fake_llm):
    rule = make_rule()
    statement = make_statement(THREE_ROWS)

    assert handle_status_change(statement.id, "uploaded", PENDING) is True

    statement = _reload(db, Statement, statement.id)
    assert statement.status == StatementStatus.COMPLETED.value
    assert statement.extraction_progress == 100
    assert statement.transaction_count == 2
    assert statement.duplicates_skipped == 1
    assert statement.transactions_extracted == 3
    assert statement.pages_total == 1
    assert statement.parsing_rule_id == rule.id
    assert "1 duplicate transactions were skipped" in statement.warnings
    assert statement.processed_at is not None

    rows = _stored(db, statement.id)
    assert [(r.date, r.type, r.amount) for r in rows] == [
        (date(2024, 1, 5), "debit", 4.50),
        (date(2024, 1, 6), "credit", 2000.00),
    ]
    assert all(r.month == "2024-01" for r in rows)

    acc = _reload(db, Account, account.id)
    assert acc.transaction_count == 2
    assert acc.statement_count == 1
    assert _reload(db, ParsingRule, rule.id).usage_count == 1
    assert db.query(UsageRecord).filter(UsageRecord.statement_id == statement.id).count() == 1
    assert fake_llm.calls == []


def test_reupload_is_fully_deduplicated(db, account, make_rule, make_statement, fake_llm):
    make_rule()
    first = make_statement(THREE_ROWS)
    run_extraction(first.id)
    second = make_statement(THREE_ROWS)
    run_extraction(second.id)

    second = _reload(db, Statement, second.id)
    assert second.transaction_count == 0
    assert second.duplicates_skipped == 3
    assert db.query(Transaction).count() == 2
    assert _reload(db, Account, account.id).statement_count == 2


def test_balances_come_from_oldest_and_newest_rows(db, account, make_rule, make_statement, fake_llm):
    make_rule(balance_column="Balance")
    content = (
        "Date,Desc,Amount,Balance\n"
        "2024-02-02,Rent,-800.00,200.00\n"
        "2024-02-01,Salary,1000.00,1000.00\n"
    )
    statement = make_statement(content)
    run_extraction(statement.id)

    statement = _reload(db, Statement, statement.id)
    assert statement.opening_balance == 1000.0
    assert statement.closing_balance == 200.0
    assert _reload(db, Account, account.id).balance == 200.0


def test_missing_rule_needs_confirmation(db, make_rule, make_statement, fake_llm):
    make_rule(confirmed=False)
    statement = make_statement(THREE_ROWS)
    run_extraction(statement.id)

    statement = _reload(db, Statement, statement.id)
    assert statement.status == StatementStatus.NEEDS_RULES_CONFIRMATION.value
    assert statement.error_message == "Please confirm the CSV parsing rules before extraction can proceed."
    assert db.query(Transaction).count() == 0
    assert fake_llm.calls == []


def test_ai_fallback_without_rule(db, make_statement, fake_llm, monkeypatch):
    monkeypatch.setattr(settings, "AI_SPREADSHEET_FALLBACK", True)
    fake_llm.queue({
        "transactions": [
            {"date": "2024-01-05", "description": "Coffee Shop", "amount": 4.5, "type": "debit", "confidence": 0.95},
            {"date": "2024-01-06", "description": "Salary", "amount": 2000, "type": "credit", "confidence": 0.95},
        ],
        "confidence": 0.95,
    })
    statement = make_statement(THREE_ROWS)
    run_extraction(statement.id)

    statement = _reload(db, Statement, statement.id)
    assert statement.status == StatementStatus.COMPLETED.value
    assert statement.transaction_count == 2
    assert "CHUNK 1 of 1" in fake_llm.calls[0]["prompt"]


def test_self_healing_fixes_a_fifty_row_csv(db, make_rule, make_statement, fake_llm):
    rule = make_rule(date_format="YYYY-MM-DD")
    lines = ["Date,Desc,Amount"] + [f"{i % 28 + 1:02d}/03/2024,Purchase {i},-{i + 1}.00" for i in range(50)]
    statement = make_statement("\n".join(lines))
    fake_llm.queue({"dateFormat": "DD/MM/YYYY"})

    run_extraction(statement.id)

    statement = _reload(db, Statement, statement.id)
    assert statement.status == StatementStatus.COMPLETED.value
    assert statement.transaction_count == 50

    healed = _reload(db, ParsingRule, rule.id)
    assert healed.self_healed_at is not None
    assert healed.date_format == "DD/MM/YYYY"
    assert healed.confirmed_at is not None
    assert healed.bank_identifier == "maduro_curiel_s_bank"

    usage = db.query(UsageRecord).filter(UsageRecord.statement_id == statement.id).one()
    assert (usage.input_tokens, usage.output_tokens) == (100, 50)


def test_failed_self_healing_completes_with_warning(db, make_rule, make_statement, fake_llm):
    make_rule(date_format="YYYY-MM-DD")
    lines = ["Date,Desc,Amount"] + [f"{i % 28 + 1:02d}/03/2024,Purchase {i},-{i + 1}.00" for i in range(12)]
    statement = make_statement("\n".join(lines))
    fake_llm.queue({"dateFormat": "MM-DD-YYYY", "dateColumn": "Nope"})

    run_extraction(statement.id)

    statement = _reload(db, Statement, statement.id)
    assert statement.status == StatementStatus.COMPLETED.value
    assert statement.transaction_count == 0
    assert "Self-healing attempted but failed. Manual rule correction needed." in statement.warnings


def test_spreadsheet(db, make_rule, make_statement, fake_llm):
    make_rule()
    buffer = io.BytesIO()
    pd.DataFrame({
        "Date": ["2024-01-05", "2024-01-06"],
        "Desc": ["Coffee Shop", "Salary"],
        "Amount": ["-4.50", "2000.00"],
    }).to_excel(buffer, index=False)
    statement = make_statement(
        buffer.getvalue(), file_name="jan.xlsx", file_type="excel",
        mime_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    )
    run_extraction(statement.id)

    statement = _reload(db, Statement, statement.id)
    assert statement.status == StatementStatus.COMPLETED.value
    assert statement.transaction_count == 2


# ─── Failures ─────────────────────────────────────────────────────────────────

def test_unreadable_spreadsheet_fails(db, make_rule, make_statement, fake_llm):
    make_rule()
    statement = make_statement(b"definitely not a workbook", file_name="jan.xlsx", file_type="excel")
    run_extraction(statement.id)

    statement = _reload(db, Statement, statement.id)
    assert statement.status == StatementStatus.FAILED.value
    assert statement.error_message == "Failed to parse Excel file."


def test_missing_required_fields_fail(db, make_statement):
    statement = make_statement(THREE_ROWS)
    statement.file_url = None
    db.commit()
    run_extraction(statement.id)

    statement = _reload(db, Statement, statement.id)
    assert statement.status == StatementStatus.FAILED.value
    assert statement.error_message == "Missing required fields"


def test_missing_file_fails_with_message(db, make_rule, make_statement):
    make_rule()
    statement = make_statement(THREE_ROWS)
    statement.file_url = "/nonexistent/ledgerline/statement.csv"
    db.commit()
    run_extraction(statement.id)

    statement = _reload(db, Statement, statement.id)
    assert statement.status == StatementStatus.FAILED.value
    assert statement.extraction_progress == 0
    assert "statement.csv" in statement.error_message


def test_unknown_statement_is_ignored(db):
    run_extraction("missing")


# ─── PDF ──────────────────────────────────────────────────────────────────────

CONTEXT = {
    "totalPages": 3,
    "periodStart": "2024-01-01",
    "periodEnd": "2024-01-31",
    "openingBalance": 13521.09,
    "transactionSummary": [
        {"page": 1, "date": "2024-01-27", "amount": 10135.22, "type": "debit",
         "descriptionPreview": "Outward SWIFT Payment", "continuesOnNextPage": True},
    ],
}

PAGES = {
    1: {
        "transactions": [
            {"date": "2024-01-27", "description": "Outward SWIFT Payment", "amount": 10135.22,
             "type": "debit", "balance": 3385.87, "confidence": 0.95},
        ],
        "confidence": 0.9,
    },
    3: {
        "transactions": [
            {"date": None, "description": "ACME Corp Miami, United States", "amount": 0,
             "type": "continuation", "continuedFrom": "previous_page"},
            {"date": "2024-01-30", "description": "Bank fee", "amount": 15, "type": "debit",
             "balance": 3370.87, "confidence": 0.95},
        ],
        "closingBalance": 3370.87,
        "periodEnd": "2024-01-31",
        "confidence": 0.9,
    },
}


@pytest.fixture
def pdf_statement(make_statement, monkeypatch):
    monkeypatch.setattr(orchestrator, "pdf_pages_to_base64", lambda data: ["img1", "img2", "img3"])
    monkeypatch.setattr(orchestrator, "extract_page_texts", lambda data: ["", "", ""])
    monkeypatch.setattr(settings, "PAGE_BATCH_SIZE", 2)
    return make_statement(b"%PDF-1.4 stub", file_name="jan.pdf", mime_type="application/pdf", file_type="pdf")


def _pdf_handler(prompt):
    if "Scan ALL pages" in prompt:
        return CONTEXT
    if "PAGE 2 of 3" in prompt:
        return RuntimeError("boom")
    for number, response in PAGES.items():
        if f"PAGE {number} of 3" in prompt:
            return response
    raise AssertionError(prompt[:80])


def test_pdf_two_pass_with_failed_page(db, account, pdf_statement, fake_llm):
    fake_llm.handler = _pdf_handler
    run_extraction(pdf_statement.id)

    statement = _reload(db, Statement, pdf_statement.id)
    assert statement.status == StatementStatus.NEEDS_REVIEW.value
    assert statement.pages_total == 3
    assert statement.actual_pdf_pages == 3
    assert statement.transaction_count == 2
    assert statement.opening_balance == 13521.09
    assert statement.closing_balance == 3370.87
    assert statement.period_start == date(2024, 1, 1)
    assert statement.period_end == date(2024, 1, 31)
    assert "Extraction failed: boom" in statement.warnings
    assert "Merged continuation text from page break into transaction" in statement.warnings

    rows = _stored(db, statement.id)
    assert [r.description for r in rows] == ["Outward SWIFT Payment ACME Corp Miami, United States", "Bank fee"]
    assert "continuation" not in {r.type for r in rows}

    acc = _reload(db, Account, account.id)
    assert acc.balance == 3370.87
    assert acc.latest_period_end == date(2024, 1, 31)
    assert acc.statement_count == 1

    context_calls = [c for c in fake_llm.calls if "Scan ALL pages" in c["prompt"]]
    assert len(context_calls) == 1
    assert context_calls[0]["images"] == ["img1", "img2", "img3"]
    page_two = next(c for c in fake_llm.calls if "PAGE 2 of 3" in c["prompt"])
    assert "CONTINUATION FROM PAGE 1" in page_two["prompt"]


def test_pdf_without_context_still_extracts(db, pdf_statement, fake_llm):
    def handler(prompt):
        if "Scan ALL pages" in prompt:
            return TimeoutError("context timed out")
        if "PAGE 2 of 3" in prompt:
            return {"transactions": [], "confidence": 0.9}
        return _pdf_handler(prompt)

    fake_llm.handler = handler
    run_extraction(pdf_statement.id)

    statement = _reload(db, Statement, pdf_statement.id)
    assert statement.status == StatementStatus.COMPLETED.value
    assert statement.transaction_count == 2
    assert statement.opening_balance is None


def test_single_image_skips_context_pass(db, make_statement, fake_llm, monkeypatch):
    monkeypatch.setattr(orchestrator, "image_bytes_to_base64", lambda data: "img")
    fake_llm.queue(PAGES[1])
    statement = make_statement(b"\x89PNG stub", file_name="scan.png", mime_type="image/png", file_type="image")
    run_extraction(statement.id)

    statement = _reload(db, Statement, statement.id)
    assert statement.status == StatementStatus.COMPLETED.value
    assert statement.transaction_count == 1
    assert len(fake_llm.calls) == 1
    assert "PAGE 1 of 1" in fake_llm.calls[0]["prompt"]


def _image_page(*tx_confidences):
    return {
        "transactions": [
            {"date": f"2024-01-{day:02d}", "description": f"Card purchase {day}", "amount": 10 + day,
             "type": "debit", "confidence": c}
            for day, c in enumerate(tx_confidences, start=1)
        ],
        "confidence": 0.95,
    }


@pytest.mark.parametrize("tx_confidences, expected", [
    ((0.95, 0.5), StatementStatus.NEEDS_REVIEW),
    ((0.95, 0.0), StatementStatus.NEEDS_REVIEW),
    ((0.9, 0.9), StatementStatus.COMPLETED),
    ((0.9, None), StatementStatus.COMPLETED),
])
def test_one_low_confidence_transaction_needs_review(db, make_statement, fake_llm, monkeypatch,
                                                      tx_confidences, expected):
    monkeypatch.setattr(orchestrator, "image_bytes_to_base64", lambda data: "img")
    fake_llm.queue(_image_page(*tx_confidences))
    statement = make_statement(b"\x89PNG stub", file_name="scan.png", mime_type="image/png", file_type="image")
    run_extraction(statement.id)

    statement = _reload(db, Statement, statement.id)
    assert statement.status == expected.value
    assert statement.transaction_count == 2
