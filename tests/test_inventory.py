import pytest

from lending.database import get_db_connection, unit_of_work
from lending.errors import BookNotFound, CopiesInUse, NoCopiesAvailable, OverRelease, ValidationError
from lending.inventory import InventoryLedger

ledger = InventoryLedger()


def test_reserve_and_release_copy(lib):
    book = lib.add_book("Dune", "Frank Herbert", 2)
    with unit_of_work(lib.db_file) as conn:
        ledger.reserve_copy(conn, ledger.load(conn, book.id))
    assert lib.find_book(book.id).available_copies == 1

    with unit_of_work(lib.db_file) as conn:
        ledger.release_copy(conn, ledger.load(conn, book.id))
    assert lib.find_book(book.id).available_copies == 2


def test_reserve_last_copy_then_refuse(lib):
    book = lib.add_book("Dune", "Frank Herbert", 1)
    with unit_of_work(lib.db_file) as conn:
        ledger.reserve_copy(conn, ledger.load(conn, book.id))
    with pytest.raises(NoCopiesAvailable):
        with unit_of_work(lib.db_file) as conn:
            ledger.reserve_copy(conn, ledger.load(conn, book.id))
    assert lib.find_book(book.id).available_copies == 0


def test_reserve_refused_when_row_changed_underneath(lib):
    book = lib.add_book("Dune", "Frank Herbert", 1)
    with unit_of_work(lib.db_file) as conn:
        stale = ledger.load(conn, book.id)
        conn.execute("UPDATE books SET available_copies = 0 WHERE id = ?", (book.id,))
        # the in-memory copy still says 1; the conditional update must refuse
        with pytest.raises(NoCopiesAvailable):
            ledger.reserve_copy(conn, stale)


def test_reserve_inactive_book(lib):
    book = lib.add_book("Dune", "Frank Herbert", 3, is_active=False)
    with pytest.raises(NoCopiesAvailable):
        with unit_of_work(lib.db_file) as conn:
            ledger.reserve_copy(conn, ledger.load(conn, book.id))
    assert lib.find_book(book.id).available_copies == 3


def test_release_beyond_total_is_refused(lib):
    book = lib.add_book("Dune", "Frank Herbert", 2)
    with pytest.raises(OverRelease):
        with unit_of_work(lib.db_file) as conn:
            ledger.release_copy(conn, ledger.load(conn, book.id))
    assert lib.find_book(book.id).available_copies == 2


def test_load_missing_book(lib):
    with pytest.raises(BookNotFound):
        with unit_of_work(lib.db_file) as conn:
            ledger.load(conn, 42)


def test_adjust_total_copies_moves_available_by_delta(lib, t0):
    book = lib.add_book("Dune", "Frank Herbert", 3)
    borrower = lib.add_borrower("Ada", "ada@example.com")
    lib.borrow(book.id, borrower.id, t0)

    updated = lib.update_book(book.id, total_copies=5)
    assert (updated.total_copies, updated.available_copies) == (5, 4)

    updated = lib.update_book(book.id, total_copies=1)
    assert (updated.total_copies, updated.available_copies) == (1, 0)


def test_adjust_total_below_copies_on_loan(lib, t0):
    book = lib.add_book("Dune", "Frank Herbert", 2)
    for i in range(2):
        borrower = lib.add_borrower(f"B{i}", f"b{i}@example.com")
        lib.borrow(book.id, borrower.id, t0)

    with pytest.raises(CopiesInUse) as excinfo:
        lib.update_book(book.id, total_copies=1)
    assert excinfo.value.on_loan == 2
    after = lib.find_book(book.id)
    assert (after.total_copies, after.available_copies) == (2, 0)


def test_adjust_total_to_zero_is_invalid(lib):
    book = lib.add_book("Dune", "Frank Herbert", 2)
    with pytest.raises(ValidationError):
        with unit_of_work(lib.db_file) as conn:
            ledger.adjust_total_copies(conn, ledger.load(conn, book.id), 0)


def test_audit_reports_drift(lib, t0):
    book = lib.add_book("Dune", "Frank Herbert", 3)
    other = lib.add_book("Emma", "Jane Austen", 1)
    borrower = lib.add_borrower("Ada", "ada@example.com")
    lib.borrow(book.id, borrower.id, t0)
    assert lib.audit_inventory() == []

    conn = get_db_connection(lib.db_file)
    try:
        conn.execute("UPDATE books SET available_copies = 3 WHERE id = ?", (book.id,))
    finally:
        conn.close()

    drift = lib.audit_inventory()
    assert [d.book_id for d in drift] == [book.id]
    assert drift[0].open_loans == 1
    assert drift[0].expected_available == 2
    assert other.id not in [d.book_id for d in drift]
