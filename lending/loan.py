"""Loan state machine.

A transaction starts ``borrowed`` and moves to ``returned`` exactly once;
``returned`` is terminal. Borrowing the same title again creates a new
transaction. ``overdue`` is never stored: it is derived from the record and
the current time by :func:`is_overdue` wherever a status is reported.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, List, Mapping, Optional

from lending.database import as_utc, from_db_timestamp, to_db_timestamp
from lending.errors import AlreadyBorrowed, AlreadyReturned, TransactionNotFound


class LoanStatus(str, Enum):
    BORROWED = "borrowed"
    RETURNED = "returned"


@dataclass
class Transaction:
    id: int
    book_id: int
    borrower_id: int
    borrowed_at: datetime
    due_date: datetime
    returned_at: Optional[datetime] = None
    status: LoanStatus = LoanStatus.BORROWED

    @property
    def is_open(self) -> bool:
        return self.status == LoanStatus.BORROWED

    def to_dict(self, now: Optional[datetime] = None) -> dict:
        data = {
            "id": self.id,
            "book_id": self.book_id,
            "borrower_id": self.borrower_id,
            "borrowed_at": self.borrowed_at.isoformat(),
            "due_date": self.due_date.isoformat(),
            "returned_at": self.returned_at.isoformat() if self.returned_at else None,
            "status": self.status.value,
        }
        if now is not None:
            data["overdue"] = is_overdue(self, now)
        return data

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Transaction":
        return Transaction(
            id=row["id"],
            book_id=row["book_id"],
            borrower_id=row["borrower_id"],
            borrowed_at=from_db_timestamp(row["borrowed_at"]),
            due_date=from_db_timestamp(row["due_date"]),
            returned_at=from_db_timestamp(row["returned_at"]),
            status=LoanStatus(row["status"]),
        )


def is_overdue(transaction: Transaction, now: datetime) -> bool:
    """Pure function of (status, due_date, returned_at, now)."""
    return (
        transaction.status == LoanStatus.BORROWED
        and transaction.returned_at is None
        and as_utc(transaction.due_date) < as_utc(now)
    )


def get_transaction(conn: sqlite3.Connection, transaction_id: int) -> Transaction:
    row = conn.execute("SELECT * FROM transactions WHERE id = ?", (transaction_id,)).fetchone()
    if row is None:
        raise TransactionNotFound(transaction_id)
    return Transaction.from_row(row)


def find_open_loan(conn: sqlite3.Connection, book_id: int, borrower_id: int) -> Optional[Transaction]:
    row = conn.execute(
        "SELECT * FROM transactions WHERE book_id = ? AND borrower_id = ? AND status = ?",
        (book_id, borrower_id, LoanStatus.BORROWED.value),
    ).fetchone()
    return Transaction.from_row(row) if row else None


def list_open_loans(conn: sqlite3.Connection, *, book_id: Optional[int] = None,
                    borrower_id: Optional[int] = None) -> List[Transaction]:
    clauses = ["status = ?"]
    params: list = [LoanStatus.BORROWED.value]
    if book_id is not None:
        clauses.append("book_id = ?")
        params.append(book_id)
    if borrower_id is not None:
        clauses.append("borrower_id = ?")
        params.append(borrower_id)
    rows = conn.execute(
        f"SELECT * FROM transactions WHERE {' AND '.join(clauses)} ORDER BY due_date", params
    ).fetchall()
    return [Transaction.from_row(r) for r in rows]


def open_loan(conn: sqlite3.Connection, book_id: int, borrower_id: int, now: datetime,
              loan_period_days: int) -> Transaction:
    """Record a new ``borrowed`` transaction due ``loan_period_days`` after ``now``."""
    borrowed_at = as_utc(now)
    due_date = borrowed_at + timedelta(days=loan_period_days)
    try:
        cursor = conn.execute(
            """
            INSERT INTO transactions (book_id, borrower_id, borrowed_at, due_date, returned_at, status)
            VALUES (?, ?, ?, ?, NULL, ?)
            """,
            (book_id, borrower_id, to_db_timestamp(borrowed_at), to_db_timestamp(due_date),
             LoanStatus.BORROWED.value),
        )
    except sqlite3.IntegrityError as e:
        # uq_transactions_open_loan fired
        raise AlreadyBorrowed(book_id, borrower_id) from e
    return get_transaction(conn, cursor.lastrowid)


def close_loan(conn: sqlite3.Connection, transaction_id: int, now: datetime) -> Transaction:
    """Fire ``borrowed -> returned``.

    Raises TransactionNotFound for an unknown id and AlreadyReturned when the
    transaction is already terminal; a second return is an error, not a no-op.
    """
    transaction = get_transaction(conn, transaction_id)
    if transaction.status == LoanStatus.RETURNED:
        raise AlreadyReturned(transaction.id, transaction.returned_at)

    cursor = conn.execute(
        "UPDATE transactions SET status = ?, returned_at = ? WHERE id = ? AND status = ?",
        (LoanStatus.RETURNED.value, to_db_timestamp(now), transaction_id, LoanStatus.BORROWED.value),
    )
    if cursor.rowcount != 1:
        current = get_transaction(conn, transaction_id)
        raise AlreadyReturned(current.id, current.returned_at)
    return get_transaction(conn, transaction_id)
