import threading
from datetime import timedelta

import pytest

from lending.config import settings
from lending.database import get_db_connection, run_in_transaction, unit_of_work
from lending.errors import NoCopiesAvailable, TransientStorageError
from lending.library import Library, LoanQuery


def race(workers):
    """Start every callable at the same moment; collect results or exceptions."""
    barrier = threading.Barrier(len(workers))
    outcomes = [None] * len(workers)

    def run(i, fn):
        barrier.wait()
        try:
            outcomes[i] = fn()
        except Exception as e:
            outcomes[i] = e

    threads = [threading.Thread(target=run, args=(i, fn)) for i, fn in enumerate(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    return outcomes


def test_two_borrowers_race_for_last_copy(lib, t0):
    book = lib.add_book("Dune", "Frank Herbert", 1)
    ada = lib.add_borrower("Ada", "ada@example.com")
    bob = lib.add_borrower("Bob", "bob@example.com")

    # each thread gets its own Library, like separate API workers
    outcomes = race([
        lambda: Library(db_file=lib.db_file).borrow(book.id, ada.id, t0),
        lambda: Library(db_file=lib.db_file).borrow(book.id, bob.id, t0),
    ])

    failures = [o for o in outcomes if isinstance(o, Exception)]
    successes = [o for o in outcomes if not isinstance(o, Exception)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], NoCopiesAvailable)
    assert lib.find_book(book.id).available_copies == 0
    assert len(lib.list_transactions(LoanQuery(status="borrowed"), t0)) == 1
    assert lib.audit_inventory() == []


def test_many_borrowers_never_overdraw(lib, t0):
    book = lib.add_book("Dune", "Frank Herbert", 3)
    borrowers = [lib.add_borrower(f"B{i}", f"b{i}@example.com") for i in range(8)]

    outcomes = race([
        (lambda b=b: lib.borrow(book.id, b.id, t0)) for b in borrowers
    ])

    successes = [o for o in outcomes if not isinstance(o, Exception)]
    failures = [o for o in outcomes if isinstance(o, Exception)]
    assert len(successes) == 3
    assert all(isinstance(f, NoCopiesAvailable) for f in failures)
    assert lib.find_book(book.id).available_copies == 0
    assert lib.audit_inventory() == []


def test_concurrent_double_return_releases_once(lib, t0):
    book = lib.add_book("Dune", "Frank Herbert", 2)
    ada = lib.add_borrower("Ada", "ada@example.com")
    t = lib.borrow(book.id, ada.id, t0)
    later = t0 + timedelta(days=1)

    outcomes = race([
        lambda: lib.return_loan(t.id, ada.id, False, later),
        lambda: lib.return_loan(t.id, ada.id, False, later),
    ])

    assert sum(1 for o in outcomes if not isinstance(o, Exception)) == 1
    assert lib.find_book(book.id).available_copies == 2
    assert lib.find_borrower(ada.id, later).borrowed_books == 0


def test_unit_of_work_rolls_back_on_error(lib):
    with pytest.raises(RuntimeError):
        with unit_of_work(lib.db_file) as conn:
            conn.execute(
                "INSERT INTO books (title, author, total_copies, available_copies, created_at) "
                "VALUES ('Ghost', 'Nobody', 1, 1, '2024-01-01T00:00:00.000000')"
            )
            raise RuntimeError("interrupted")
    assert lib.list_books() == []


def test_run_in_transaction_retries_transient_errors(lib):
    calls = []

    def work(conn):
        calls.append(1)
        if len(calls) < 3:
            raise TransientStorageError("busy")
        return "done"

    assert run_in_transaction(work, db_file=lib.db_file, retries=3, backoff=0) == "done"
    assert len(calls) == 3


def test_run_in_transaction_gives_up(lib):
    def work(conn):
        raise TransientStorageError("busy")

    with pytest.raises(TransientStorageError):
        run_in_transaction(work, db_file=lib.db_file, retries=2, backoff=0)


def test_held_write_lock_surfaces_as_transient(lib, t0, monkeypatch):
    book = lib.add_book("Dune", "Frank Herbert", 1)
    ada = lib.add_borrower("Ada", "ada@example.com")
    monkeypatch.setattr(settings, "lock_timeout", 0.05)
    monkeypatch.setattr(settings, "retry_attempts", 1)

    holder = get_db_connection(lib.db_file)
    try:
        holder.execute("BEGIN IMMEDIATE")
        with pytest.raises(TransientStorageError):
            lib.borrow(book.id, ada.id, t0)
        holder.execute("ROLLBACK")
    finally:
        holder.close()

    # nothing was written while the lock was held
    assert lib.find_book(book.id).available_copies == 1
    lib.borrow(book.id, ada.id, t0)
    assert lib.find_book(book.id).available_copies == 0
