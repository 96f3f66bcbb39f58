import logging
import sqlite3
from dataclasses import dataclass
from typing import List

from lending.book import Book
from lending.errors import BookNotFound, CopiesInUse, NoCopiesAvailable, OverRelease, ValidationError
from lending.loan import LoanStatus

logger = logging.getLogger(__name__)


@dataclass
class InventoryDrift:
    """A book whose copy counts disagree with its open loans."""
    book_id: int
    total_copies: int
    available_copies: int
    open_loans: int

    @property
    def expected_available(self) -> int:
        return self.total_copies - self.open_loans

    def to_dict(self) -> dict:
        return {
            "book_id": self.book_id,
            "total_copies": self.total_copies,
            "available_copies": self.available_copies,
            "open_loans": self.open_loans,
            "expected_available": self.expected_available,
        }


class InventoryLedger:
    """Owns each book's (total_copies, available_copies) pair.

    Every method runs on the caller's connection so it joins the caller's
    unit of work; nothing here commits.
    """

    def load(self, conn: sqlite3.Connection, book_id: int, include_deleted: bool = False) -> Book:
        query = "SELECT * FROM books WHERE id = ?"
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        row = conn.execute(query, (book_id,)).fetchone()
        if row is None:
            raise BookNotFound(book_id)
        return Book.from_row(row)

    def reserve_copy(self, conn: sqlite3.Connection, book: Book) -> None:
        """Take one copy off the shelf."""
        if not book.is_active or book.available_copies <= 0:
            raise NoCopiesAvailable(book.id)
        # Conditional decrement: the row itself refuses to go below zero
        cursor = conn.execute(
            """
            UPDATE books SET available_copies = available_copies - 1
            WHERE id = ? AND is_active = 1 AND deleted_at IS NULL AND available_copies > 0
            """,
            (book.id,),
        )
        if cursor.rowcount != 1:
            raise NoCopiesAvailable(book.id)
        book.available_copies -= 1

    def release_copy(self, conn: sqlite3.Connection, book: Book) -> None:
        """Put one copy back on the shelf."""
        cursor = conn.execute(
            "UPDATE books SET available_copies = available_copies + 1 WHERE id = ? AND available_copies < total_copies",
            (book.id,),
        )
        if cursor.rowcount != 1:
            logger.warning(f"Over-release refused for book {book.id} "
                           f"(available={book.available_copies}, total={book.total_copies})")
            raise OverRelease(book.id)
        book.available_copies += 1

    def adjust_total_copies(self, conn: sqlite3.Connection, book: Book, new_total: int) -> None:
        """Change the total, moving available copies by the same delta."""
        if new_total < 1:
            raise ValidationError("total_copies must be at least 1.")
        delta = new_total - book.total_copies
        new_available = book.available_copies + delta
        if new_available < 0:
            raise CopiesInUse(book.id, new_total, book.total_copies - book.available_copies)
        conn.execute(
            "UPDATE books SET total_copies = ?, available_copies = ? WHERE id = ?",
            (new_total, new_available, book.id),
        )
        book.total_copies = new_total
        book.available_copies = new_available

    def audit(self, conn: sqlite3.Connection) -> List[InventoryDrift]:
        """Books violating available == total - open loans."""
        rows = conn.execute(
            """
            SELECT b.id, b.total_copies, b.available_copies,
                   (SELECT COUNT(*) FROM transactions t WHERE t.book_id = b.id AND t.status = ?) AS open_loans
            FROM books b
            ORDER BY b.id
            """,
            (LoanStatus.BORROWED.value,),
        ).fetchall()
        drift = [
            InventoryDrift(r["id"], r["total_copies"], r["available_copies"], r["open_loans"])
            for r in rows
            if r["available_copies"] != r["total_copies"] - r["open_loans"]
        ]
        for d in drift:
            logger.warning(f"Inventory drift on book {d.book_id}: available={d.available_copies}, "
                           f"expected={d.expected_available}")
        return drift
