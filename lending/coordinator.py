"""Borrowing coordinator.

Runs each borrow or return as one unit of work across the inventory ledger,
the loan state machine and the borrower aggregate. The unit holds the
database write lock from its first read to its commit, so two calls touching
the same book or borrower never interleave: when two callers race for the
last copy, one commits and the other sees ``available_copies == 0``.
"""

import logging
import sqlite3
from datetime import datetime
from typing import Optional, Tuple

from lending import loan as loans
from lending.book import Book
from lending.borrowers import BorrowerAggregate
from lending.config import settings
from lending.database import run_in_transaction
from lending.errors import AlreadyBorrowed, AlreadyReturned, BookInactive, Conflict, Unauthorized
from lending.inventory import InventoryLedger
from lending.loan import LoanStatus, Transaction

logger = logging.getLogger(__name__)


class BorrowingCoordinator:

    def __init__(self, db_file: Optional[str] = None, loan_period_days: Optional[int] = None,
                 ledger: Optional[InventoryLedger] = None,
                 borrowers: Optional[BorrowerAggregate] = None) -> None:
        self.db_file = db_file
        self.loan_period_days = loan_period_days or settings.loan_period_days
        self.ledger = ledger or InventoryLedger()
        self.borrowers = borrowers or BorrowerAggregate()

    def borrow(self, book_id: int, borrower_id: int, now: datetime) -> Transaction:
        """Lend one copy of ``book_id`` to ``borrower_id``.

        Raises BookNotFound, BookInactive, BorrowerNotFound, AlreadyBorrowed or
        NoCopiesAvailable; nothing is written when any of them is raised.
        """
        try:
            transaction, book = run_in_transaction(
                lambda conn: self._borrow(conn, book_id, borrower_id, now), db_file=self.db_file
            )
        except Conflict as e:
            logger.info(f"Borrow refused: book={book_id} borrower={borrower_id} reason={e.code}")
            raise
        logger.info(f"Borrowed: transaction={transaction.id} book={book_id} borrower={borrower_id} "
                    f"due={transaction.due_date.isoformat()} available={book.available_copies}")
        return transaction

    def return_loan(self, transaction_id: int, acting_borrower_id: Optional[int], is_admin: bool,
                    now: datetime) -> Transaction:
        """Close a loan and put its copy back.

        Raises TransactionNotFound, Unauthorized or AlreadyReturned.
        """
        try:
            transaction, book = run_in_transaction(
                lambda conn: self._return(conn, transaction_id, acting_borrower_id, is_admin, now),
                db_file=self.db_file,
            )
        except Conflict as e:
            logger.info(f"Return refused: transaction={transaction_id} reason={e.code}")
            raise
        logger.info(f"Returned: transaction={transaction.id} book={transaction.book_id} "
                    f"borrower={transaction.borrower_id} available={book.available_copies}")
        return transaction

    # ------------------------- Units of work ------------------------- #
    def _borrow(self, conn: sqlite3.Connection, book_id: int, borrower_id: int,
                now: datetime) -> Tuple[Transaction, Book]:
        book = self.ledger.load(conn, book_id)
        if not book.is_active:
            raise BookInactive(book_id)
        self.borrowers.load(conn, borrower_id)

        if loans.find_open_loan(conn, book_id, borrower_id) is not None:
            raise AlreadyBorrowed(book_id, borrower_id)

        self.ledger.reserve_copy(conn, book)
        transaction = loans.open_loan(conn, book_id, borrower_id, now, self.loan_period_days)
        self.borrowers.loan_opened(conn, borrower_id, now)
        return transaction, book

    def _return(self, conn: sqlite3.Connection, transaction_id: int, acting_borrower_id: Optional[int],
                is_admin: bool, now: datetime) -> Tuple[Transaction, Book]:
        transaction = loans.get_transaction(conn, transaction_id)
        if not is_admin and acting_borrower_id != transaction.borrower_id:
            raise Unauthorized(f"Not allowed to return transaction {transaction_id}.")
        if transaction.status != LoanStatus.BORROWED:
            raise AlreadyReturned(transaction.id, transaction.returned_at)

        closed = loans.close_loan(conn, transaction_id, now)
        book = self.ledger.load(conn, transaction.book_id, include_deleted=True)
        self.ledger.release_copy(conn, book)
        self.borrowers.loan_closed(conn, transaction.borrower_id, now)
        return closed, book
