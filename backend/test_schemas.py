import pytest

from schemas import ExtractedTransaction, coerce_float, coerce_int


@pytest.mark.parametrize("raw, expected", [
    ("1,234.50", 1234.50),
    ("1.234,56", 1234.56),
    ("(12.00)", -12.00),
    ("45.00-", -45.00),
    ("1.500.000", 1500000.0),
    ("USD 7", 7.0),
    (".50", 0.50),
    (7, 7.0),
    ("", None),
    ("null", None),
    (True, None),
])
def test_coerce_float(raw, expected):
    assert coerce_float(raw) == (pytest.approx(expected) if expected is not None else None)


def test_coerce_int():
    assert coerce_int("2") == 2
    assert coerce_int(3.0) == 3
    assert coerce_int(None) is None
    assert coerce_int("n/a") is None


def test_extracted_transaction_european_amount():
    tx = ExtractedTransaction.model_validate({"date": "2024-01-05", "amount": "1.234,56", "balance": "9.876,00"})
    assert tx.amount == pytest.approx(1234.56)
    assert tx.balance == pytest.approx(9876.00)
