from agents.context_scanner import ContextScannerAgent


def test_context_with_extra_fields(fake_llm):
    fake_llm.queue({
        "totalPages": "3",
        "periodStart": "2025-06-01",
        "openingBalance": "13,521.09",
        "closingBalance": 9649.19,
        "transactionSummary": [
            {"page": 1, "date": "2025-06-15", "amount": 10135.22, "type": "debit",
             "continuesOnNextPage": "true", "swiftRef": "ABC123"},
        ],
        "branchCode": "WIL-01",
    })
    context = ContextScannerAgent().run(["p1", "p2", "p3"], "MCB", ["page one text", "", ""])

    assert context.total_pages == 3
    assert context.opening_balance == 13521.09
    assert context.transaction_summary[0].continues_on_next_page is True
    assert context.transaction_summary[0].extras == {"swiftRef": "ABC123"}
    assert context.extras == {"branchCode": "WIL-01"}
    assert context.input_tokens == 100

    call = fake_llm.calls[0]
    assert call["images"] == ["p1", "p2", "p3"]
    assert "--- PAGE 1 ---\npage one text" in call["prompt"]


def test_malformed_context_degrades_to_empty(fake_llm):
    fake_llm.queue("this is not json")
    context = ContextScannerAgent().run(["p1", "p2"], "MCB")

    assert context.transaction_summary == []
    assert context.multi_page_transactions == []
    assert context.output_tokens == 50


def test_wrong_shape_degrades_to_empty(fake_llm):
    fake_llm.queue({"transactionSummary": "lots"})
    context = ContextScannerAgent().run(["p1", "p2"], "MCB")
    assert context.transaction_summary == []


def test_bad_multi_page_item_keeps_the_rest(fake_llm):
    fake_llm.queue({
        "totalPages": 3,
        "openingBalance": 100.0,
        "transactionSummary": [
            {"page": 1, "date": "2025-06-15", "amount": 25.0, "type": "debit"},
        ],
        "multiPageTransactions": [
            {"startPage": None, "endPage": None, "amount": 10.0, "type": "debit"},
            {"startPage": "2", "endPage": 3, "amount": 55.5, "type": "credit"},
            "not an object",
        ],
    })
    context = ContextScannerAgent().run(["p1", "p2", "p3"], "MCB")

    assert context.total_pages == 3
    assert context.opening_balance == 100.0
    assert len(context.transaction_summary) == 1
    assert len(context.multi_page_transactions) == 2
    assert [m.amount for m in context.multi_page_spanning(2)] == [55.5]
    assert context.multi_page_spanning(1) == []


def test_bad_summary_item_is_dropped(fake_llm):
    fake_llm.queue({
        "periodStart": "2025-06-01",
        "closingBalance": "9.649,19",
        "transactionSummary": [
            {"page": 1, "amount": 25.0, "type": "debit"},
            {"page": 2, "date": ["2025-06-20"], "amount": 5.0},
        ],
    })
    context = ContextScannerAgent().run(["p1", "p2"], "MCB")

    assert context.period_start == "2025-06-01"
    assert context.closing_balance == 9649.19
    assert [t.page for t in context.transaction_summary] == [1]
