from datetime import date

from models import Account
from services.reconciler import reconcile_account, should_update_balance


def test_older_statement_keeps_balance():
    assert not should_update_balance(500.0, date(2024, 5, 31), 300.0, date(2024, 4, 30))


def test_newer_or_same_period_moves_balance():
    assert should_update_balance(500.0, date(2024, 5, 31), 300.0, date(2024, 6, 30))
    assert should_update_balance(500.0, date(2024, 5, 31), 300.0, date(2024, 5, 31))


def test_first_statement_moves_balance():
    assert should_update_balance(None, date(2024, 5, 31), 300.0, date(2024, 4, 30))
    assert should_update_balance(500.0, None, 300.0, None)


def test_missing_closing_balance_never_moves_balance():
    assert not should_update_balance(None, None, None, date(2024, 4, 30))


def test_unknown_period_end_does_not_overwrite_a_dated_balance():
    assert not should_update_balance(500.0, date(2024, 5, 31), 300.0, None)


def test_backfilled_statement_only_bumps_counters(db, account):
    account.balance = 500.0
    account.latest_period_end = date(2024, 5, 31)
    account.transaction_count = 10
    account.statement_count = 2
    db.commit()

    moved = reconcile_account(db, account.id, 4, 300.0, date(2024, 4, 30))

    db.expire_all()
    refreshed = db.query(Account).filter(Account.id == account.id).one()
    assert moved is False
    assert refreshed.balance == 500.0
    assert refreshed.latest_period_end == date(2024, 5, 31)
    assert refreshed.transaction_count == 14
    assert refreshed.statement_count == 3
    assert refreshed.last_statement_date is not None


def test_current_statement_moves_balance(db, account):
    moved = reconcile_account(db, account.id, 2, 1234.5, date(2024, 6, 30))

    db.expire_all()
    refreshed = db.query(Account).filter(Account.id == account.id).one()
    assert moved is True
    assert refreshed.balance == 1234.5
    assert refreshed.latest_period_end == date(2024, 6, 30)
    assert refreshed.transaction_count == 2
    assert refreshed.statement_count == 1
