from datetime import datetime, timedelta, timezone

import pytest

from lending.database import unit_of_work
from lending.errors import AlreadyBorrowed, AlreadyReturned, TransactionNotFound
from lending.loan import LoanStatus, Transaction, close_loan, is_overdue, open_loan


def make_transaction(t0, **overrides):
    data = dict(id=1, book_id=1, borrower_id=1, borrowed_at=t0, due_date=t0 + timedelta(days=14))
    data.update(overrides)
    return Transaction(**data)


def test_is_overdue_one_second_after_due(t0):
    t = make_transaction(t0)
    assert is_overdue(t, t.due_date + timedelta(seconds=1)) is True


def test_not_overdue_one_second_before_due(t0):
    t = make_transaction(t0)
    assert is_overdue(t, t.due_date - timedelta(seconds=1)) is False


def test_not_overdue_exactly_at_due(t0):
    t = make_transaction(t0)
    assert is_overdue(t, t.due_date) is False


def test_returned_loan_is_never_overdue(t0):
    t = make_transaction(t0, status=LoanStatus.RETURNED, returned_at=t0 + timedelta(days=30))
    assert is_overdue(t, t0 + timedelta(days=365)) is False


def test_is_overdue_accepts_naive_now_as_utc(t0):
    t = make_transaction(t0)
    naive_later = (t.due_date + timedelta(hours=1)).replace(tzinfo=None)
    assert is_overdue(t, naive_later) is True


def test_is_overdue_is_pure(t0):
    t = make_transaction(t0)
    later = t0 + timedelta(days=20)
    assert is_overdue(t, later) == is_overdue(t, later)
    assert t.status == LoanStatus.BORROWED
    assert t.returned_at is None


def test_to_dict_reports_derived_overdue_flag(t0):
    t = make_transaction(t0)
    assert "overdue" not in t.to_dict()
    assert t.to_dict(t0 + timedelta(days=15))["overdue"] is True
    assert t.to_dict(t0 + timedelta(days=15))["status"] == "borrowed"


@pytest.fixture
def seeded(lib):
    book = lib.add_book("Dune", "Frank Herbert", 2)
    borrower = lib.add_borrower("Ada", "ada@example.com")
    return lib, book, borrower


def test_open_loan_sets_due_date_from_loan_period(seeded, t0):
    lib, book, borrower = seeded
    with unit_of_work(lib.db_file) as conn:
        t = open_loan(conn, book.id, borrower.id, t0, 14)
    assert t.status == LoanStatus.BORROWED
    assert t.borrowed_at == t0
    assert t.due_date == t0 + timedelta(days=14)
    assert t.returned_at is None


def test_second_open_loan_for_same_pair_is_rejected_by_storage(seeded, t0):
    lib, book, borrower = seeded
    with unit_of_work(lib.db_file) as conn:
        open_loan(conn, book.id, borrower.id, t0, 14)
    with pytest.raises(AlreadyBorrowed):
        with unit_of_work(lib.db_file) as conn:
            open_loan(conn, book.id, borrower.id, t0, 14)


def test_close_loan_transitions_once(seeded, t0):
    lib, book, borrower = seeded
    with unit_of_work(lib.db_file) as conn:
        t = open_loan(conn, book.id, borrower.id, t0, 14)
    returned_at = t0 + timedelta(days=3)
    with unit_of_work(lib.db_file) as conn:
        closed = close_loan(conn, t.id, returned_at)
    assert closed.status == LoanStatus.RETURNED
    assert closed.returned_at == returned_at

    with pytest.raises(AlreadyReturned) as excinfo:
        with unit_of_work(lib.db_file) as conn:
            close_loan(conn, t.id, returned_at + timedelta(days=1))
    assert excinfo.value.returned_at == returned_at
    assert lib.find_transaction(t.id).returned_at == returned_at


def test_close_unknown_loan(lib):
    with pytest.raises(TransactionNotFound):
        with unit_of_work(lib.db_file) as conn:
            close_loan(conn, 999, datetime.now(timezone.utc))
