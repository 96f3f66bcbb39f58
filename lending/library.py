import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from lending import loan as loans
from lending.book import Book
from lending.borrower import Borrower, BorrowerStatus
from lending.borrowers import BorrowerAggregate
from lending.coordinator import BorrowingCoordinator
from lending.database import (
    default_database_file,
    get_db_connection,
    initialize_database,
    run_in_transaction,
    to_db_timestamp,
    utcnow,
)
from lending.errors import ActiveLoansExist, BookNotFound, BorrowerNotFound, ValidationError
from lending.inventory import InventoryDrift, InventoryLedger
from lending.loan import LoanStatus, Transaction, is_overdue

logger = logging.getLogger(__name__)

BOOK_SORT_FIELDS = ("created_at", "title", "author", "available_copies", "id")
SORT_ORDERS = ("asc", "desc")
LOAN_STATUS_FILTERS = ("borrowed", "returned", "overdue")
BOOK_DETAIL_FIELDS = ("isbn", "genre", "description", "publisher", "publication_year", "language")


@dataclass
class BookQuery:
    """Recognized catalog listing filters."""
    search: Optional[str] = None
    genre: Optional[str] = None
    available: bool = False
    active_only: bool = True
    sort_by: str = "created_at"
    sort_order: str = "desc"

    def validate(self) -> None:
        if self.sort_by not in BOOK_SORT_FIELDS:
            raise ValidationError(f"Invalid sort_by. Allowed: {', '.join(BOOK_SORT_FIELDS)}")
        if self.sort_order.lower() not in SORT_ORDERS:
            raise ValidationError(f"Invalid sort_order. Allowed: {', '.join(SORT_ORDERS)}")


@dataclass
class LoanQuery:
    borrower_id: Optional[int] = None
    book_id: Optional[int] = None
    status: Optional[str] = None

    def validate(self) -> None:
        if self.status is not None and self.status not in LOAN_STATUS_FILTERS:
            raise ValidationError(f"Invalid status. Allowed: {', '.join(LOAN_STATUS_FILTERS)}")


class Library:
    """Catalog, borrowers and loans on top of one SQLite database."""

    def __init__(self, db_file: Optional[str] = None, loan_period_days: Optional[int] = None) -> None:
        self.db_file = db_file or default_database_file()
        initialize_database(self.db_file)
        self.ledger = InventoryLedger()
        self.borrower_aggregate = BorrowerAggregate()
        self.coordinator = BorrowingCoordinator(
            db_file=self.db_file,
            loan_period_days=loan_period_days,
            ledger=self.ledger,
            borrowers=self.borrower_aggregate,
        )

    def _transaction(self, work):
        return run_in_transaction(work, db_file=self.db_file)

    # ------------------------- Catalog ------------------------- #
    def add_book(self, title: str, author: str, total_copies: int = 1, *, is_active: bool = True,
                 now: Optional[datetime] = None, **details: Any) -> Book:
        """Add a title with ``total_copies`` copies, all of them available."""
        if not title or not title.strip():
            raise ValidationError("Title cannot be empty.")
        if not author or not author.strip():
            raise ValidationError("Author cannot be empty.")
        if total_copies < 1:
            raise ValidationError("total_copies must be at least 1.")
        unknown = set(details) - set(BOOK_DETAIL_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown book fields: {', '.join(sorted(unknown))}")

        book = Book(id=None, title=title, author=author, total_copies=total_copies,
                    is_active=is_active, **details)

        def work(conn: sqlite3.Connection) -> Book:
            cursor = conn.execute(
                """
                INSERT INTO books (
                    title, author, isbn, genre, description, publisher, publication_year,
                    language, total_copies, available_copies, is_active, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (book.title, book.author, book.isbn, book.genre, book.description, book.publisher,
                 book.publication_year, book.language, book.total_copies, book.available_copies,
                 int(book.is_active), to_db_timestamp(now or utcnow())),
            )
            return self.ledger.load(conn, cursor.lastrowid)

        created = self._transaction(work)
        logger.info(f"Book added: id={created.id} title={created.title!r} copies={created.total_copies}")
        return created

    def find_book(self, book_id: int, include_deleted: bool = False) -> Optional[Book]:
        conn = get_db_connection(self.db_file)
        try:
            return self.ledger.load(conn, book_id, include_deleted=include_deleted)
        except BookNotFound:
            return None
        finally:
            conn.close()

    def list_books(self, query: Optional[BookQuery] = None) -> List[Book]:
        query = query or BookQuery()
        query.validate()
        clauses = ["deleted_at IS NULL"]
        params: List[Any] = []
        if query.search:
            term = f"%{query.search.strip()}%"
            clauses.append("(title LIKE ? OR author LIKE ? OR isbn LIKE ? OR genre LIKE ?)")
            params.extend([term] * 4)
        if query.genre:
            clauses.append("genre = ?")
            params.append(query.genre)
        if query.available:
            clauses.append("available_copies > 0 AND is_active = 1")
        if query.active_only:
            clauses.append("is_active = 1")
        # sort_by/sort_order are validated against fixed lists above
        sql = (f"SELECT * FROM books WHERE {' AND '.join(clauses)} "
               f"ORDER BY {query.sort_by} {query.sort_order.upper()}, id")
        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(sql, params).fetchall()
            return [Book.from_row(r) for r in rows]
        finally:
            conn.close()

    def update_book(self, book_id: int, **fields: Any) -> Book:
        """Update catalog fields; a new ``total_copies`` keeps the copies on loan out."""
        allowed = set(BOOK_DETAIL_FIELDS) | {"title", "author", "total_copies", "is_active"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValidationError(f"Unknown book fields: {', '.join(sorted(unknown))}")
        if not fields:
            raise ValidationError("Nothing to update.")
        for name in ("title", "author"):
            if name in fields and (fields[name] is None or not str(fields[name]).strip()):
                raise ValidationError(f"{name.capitalize()} cannot be empty.")
        for name in ("total_copies", "is_active"):
            if name in fields and fields[name] is None:
                raise ValidationError(f"{name} cannot be null.")

        def work(conn: sqlite3.Connection) -> Book:
            book = self.ledger.load(conn, book_id)
            updates = dict(fields)
            new_total = updates.pop("total_copies", None)
            if new_total is not None and new_total != book.total_copies:
                self.ledger.adjust_total_copies(conn, book, new_total)
            if "is_active" in updates:
                updates["is_active"] = int(bool(updates["is_active"]))
            for name in ("title", "author"):
                if name in updates:
                    updates[name] = updates[name].strip()
            if updates:
                set_clause = ", ".join(f"{name} = ?" for name in updates)
                conn.execute(f"UPDATE books SET {set_clause} WHERE id = ?", [*updates.values(), book_id])
            return self.ledger.load(conn, book_id)

        return self._transaction(work)

    def remove_book(self, book_id: int, now: Optional[datetime] = None) -> bool:
        """Soft-delete a book. Returns False when there is no such book."""
        def work(conn: sqlite3.Connection) -> bool:
            try:
                self.ledger.load(conn, book_id)
            except BookNotFound:
                return False
            if loans.list_open_loans(conn, book_id=book_id):
                raise ActiveLoansExist(f"Cannot delete book {book_id} with active borrowings.")
            conn.execute("UPDATE books SET deleted_at = ? WHERE id = ?", (to_db_timestamp(now or utcnow()), book_id))
            return True

        removed = self._transaction(work)
        if removed:
            logger.info(f"Book removed: id={book_id}")
        return removed

    def restore_book(self, book_id: int) -> Book:
        def work(conn: sqlite3.Connection) -> Book:
            self.ledger.load(conn, book_id, include_deleted=True)
            conn.execute("UPDATE books SET deleted_at = NULL WHERE id = ?", (book_id,))
            return self.ledger.load(conn, book_id)

        return self._transaction(work)

    def book_summary(self, book_id: int, now: datetime) -> Dict[str, Any]:
        """Book fields plus borrowed and overdue copy counts."""
        conn = get_db_connection(self.db_file)
        try:
            book = self.ledger.load(conn, book_id)
            open_loans = loans.list_open_loans(conn, book_id=book_id)
        finally:
            conn.close()
        summary = book.to_dict()
        summary["borrowed_copies"] = len(open_loans)
        summary["overdue_copies"] = sum(1 for t in open_loans if is_overdue(t, now))
        return summary

    # ------------------------- Borrowers ------------------------- #
    def add_borrower(self, name: str, email: str, now: Optional[datetime] = None) -> Borrower:
        if not name or not name.strip():
            raise ValidationError("Name cannot be empty.")
        if not email or "@" not in email:
            raise ValidationError("A valid email is required.")

        def work(conn: sqlite3.Connection) -> Borrower:
            try:
                cursor = conn.execute(
                    "INSERT INTO borrowers (name, email, borrowed_books, status, created_at) VALUES (?, ?, 0, ?, ?)",
                    (name.strip(), email.strip().lower(), BorrowerStatus.ACTIVE.value,
                     to_db_timestamp(now or utcnow())),
                )
            except sqlite3.IntegrityError as e:
                raise ValidationError(f"Email {email} is already registered.") from e
            return self.borrower_aggregate.load(conn, cursor.lastrowid)

        borrower = self._transaction(work)
        logger.info(f"Borrower added: id={borrower.id}")
        return borrower

    def find_borrower(self, borrower_id: int, now: datetime) -> Optional[Borrower]:
        """Read a borrower, re-deriving status and counter from their open loans."""
        try:
            return self._transaction(lambda conn: self.borrower_aggregate.refresh(conn, borrower_id, now))
        except BorrowerNotFound:
            return None

    def list_borrowers(self, now: datetime) -> List[Borrower]:
        def work(conn: sqlite3.Connection) -> List[Borrower]:
            ids = [r["id"] for r in conn.execute(
                "SELECT id FROM borrowers WHERE deleted_at IS NULL ORDER BY id").fetchall()]
            return [self.borrower_aggregate.refresh(conn, borrower_id, now) for borrower_id in ids]

        return self._transaction(work)

    def update_borrower(self, borrower_id: int, *, name: Optional[str] = None,
                        email: Optional[str] = None, now: Optional[datetime] = None) -> Borrower:
        """Update contact details; the returned borrower has a freshly derived status."""
        updates: Dict[str, str] = {}
        if name is not None and name.strip():
            updates["name"] = name.strip()
        if email is not None and email.strip():
            if "@" not in email:
                raise ValidationError("A valid email is required.")
            updates["email"] = email.strip().lower()
        if not updates:
            raise ValidationError("Nothing to update. Provide name and/or email.")

        def work(conn: sqlite3.Connection) -> Borrower:
            self.borrower_aggregate.load(conn, borrower_id)
            set_clause = ", ".join(f"{k} = ?" for k in updates)
            try:
                conn.execute(f"UPDATE borrowers SET {set_clause} WHERE id = ?", [*updates.values(), borrower_id])
            except sqlite3.IntegrityError as e:
                raise ValidationError(f"Email {email} is already registered.") from e
            return self.borrower_aggregate.refresh(conn, borrower_id, now or utcnow())

        return self._transaction(work)

    def remove_borrower(self, borrower_id: int, now: Optional[datetime] = None) -> bool:
        """Soft-delete a borrower with no open loans. Returns False when not found."""
        def work(conn: sqlite3.Connection) -> bool:
            try:
                borrower = self.borrower_aggregate.load(conn, borrower_id)
            except BorrowerNotFound:
                return False
            if borrower.borrowed_books > 0 or loans.list_open_loans(conn, borrower_id=borrower_id):
                raise ActiveLoansExist(f"Cannot delete borrower {borrower_id} with active borrowings.")
            conn.execute("UPDATE borrowers SET deleted_at = ? WHERE id = ?",
                         (to_db_timestamp(now or utcnow()), borrower_id))
            return True

        return self._transaction(work)

    # ------------------------- Loans ------------------------- #
    def borrow(self, book_id: int, borrower_id: int, now: datetime) -> Transaction:
        return self.coordinator.borrow(book_id, borrower_id, now)

    def return_loan(self, transaction_id: int, acting_borrower_id: Optional[int], is_admin: bool,
                    now: datetime) -> Transaction:
        return self.coordinator.return_loan(transaction_id, acting_borrower_id, is_admin, now)

    def find_transaction(self, transaction_id: int) -> Optional[Transaction]:
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute("SELECT * FROM transactions WHERE id = ?", (transaction_id,)).fetchone()
            return Transaction.from_row(row) if row else None
        finally:
            conn.close()

    def list_transactions(self, query: Optional[LoanQuery], now: datetime) -> List[Transaction]:
        """Transactions newest first; ``status='overdue'`` applies :func:`is_overdue`."""
        query = query or LoanQuery()
        query.validate()
        clauses: List[str] = []
        params: List[Any] = []
        if query.borrower_id is not None:
            clauses.append("borrower_id = ?")
            params.append(query.borrower_id)
        if query.book_id is not None:
            clauses.append("book_id = ?")
            params.append(query.book_id)
        if query.status in ("borrowed", "overdue"):
            clauses.append("status = ?")
            params.append(LoanStatus.BORROWED.value)
        elif query.status == "returned":
            clauses.append("status = ?")
            params.append(LoanStatus.RETURNED.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(f"SELECT * FROM transactions {where} ORDER BY borrowed_at DESC, id DESC",
                                params).fetchall()
        finally:
            conn.close()
        result = [Transaction.from_row(r) for r in rows]
        if query.status == "overdue":
            result = [t for t in result if is_overdue(t, now)]
        return result

    def overdue_report(self, now: datetime) -> List[Transaction]:
        return self.list_transactions(LoanQuery(status="overdue"), now)

    # ------------------------- Reports ------------------------- #
    def get_statistics(self, now: datetime) -> Dict[str, Any]:
        conn = get_db_connection(self.db_file)
        try:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT COUNT(*), COALESCE(SUM(total_copies), 0), COALESCE(SUM(available_copies), 0) "
                "FROM books WHERE deleted_at IS NULL"
            )
            total_books, total_copies, available_copies = cursor.fetchone()
            cursor.execute("SELECT COUNT(*) FROM borrowers WHERE deleted_at IS NULL")
            total_borrowers = cursor.fetchone()[0]
            open_loans = loans.list_open_loans(conn)
        finally:
            conn.close()

        overdue = [t for t in open_loans if is_overdue(t, now)]
        return {
            "total_books": total_books,
            "total_copies": total_copies,
            "available_copies": available_copies,
            "borrowed_copies": len(open_loans),
            "overdue_loans": len(overdue),
            "total_borrowers": total_borrowers,
            "overdue_borrowers": len({t.borrower_id for t in overdue}),
        }

    def audit_inventory(self) -> List[InventoryDrift]:
        """Books whose available copies differ from total minus open loans."""
        conn = get_db_connection(self.db_file)
        try:
            return self.ledger.audit(conn)
        finally:
            conn.close()

    def close(self) -> None:
        """Connections are opened per operation, so there is nothing to release."""
        return None
