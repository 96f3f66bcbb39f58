import logging
import sqlite3
from datetime import datetime

from lending.borrower import Borrower, BorrowerStatus
from lending.errors import BorrowerNotFound
from lending.loan import is_overdue, list_open_loans

logger = logging.getLogger(__name__)


class BorrowerAggregate:
    """Keeps a borrower's ``borrowed_books`` and ``status`` in line with their open loans."""

    def load(self, conn: sqlite3.Connection, borrower_id: int) -> Borrower:
        row = conn.execute(
            "SELECT * FROM borrowers WHERE id = ? AND deleted_at IS NULL", (borrower_id,)
        ).fetchone()
        if row is None:
            raise BorrowerNotFound(borrower_id)
        return Borrower.from_row(row)

    def recompute_status(self, conn: sqlite3.Connection, borrower_id: int, now: datetime) -> BorrowerStatus:
        loans = list_open_loans(conn, borrower_id=borrower_id)
        status = BorrowerStatus.OVERDUE if any(is_overdue(t, now) for t in loans) else BorrowerStatus.ACTIVE
        conn.execute(
            "UPDATE borrowers SET status = ? WHERE id = ? AND status != ?",
            (status.value, borrower_id, status.value),
        )
        return status

    def loan_opened(self, conn: sqlite3.Connection, borrower_id: int, now: datetime) -> None:
        conn.execute("UPDATE borrowers SET borrowed_books = borrowed_books + 1 WHERE id = ?", (borrower_id,))
        self.recompute_status(conn, borrower_id, now)

    def loan_closed(self, conn: sqlite3.Connection, borrower_id: int, now: datetime) -> None:
        cursor = conn.execute(
            "UPDATE borrowers SET borrowed_books = borrowed_books - 1 WHERE id = ? AND borrowed_books > 0",
            (borrower_id,),
        )
        if cursor.rowcount != 1:
            logger.warning(f"Borrower {borrower_id} counter already at zero on return; recounting")
            self._recount(conn, borrower_id)
        self.recompute_status(conn, borrower_id, now)

    def refresh(self, conn: sqlite3.Connection, borrower_id: int, now: datetime) -> Borrower:
        """Self-heal on read: recount open loans and re-derive status."""
        borrower = self.load(conn, borrower_id)
        open_count = self._recount(conn, borrower_id)
        if open_count != borrower.borrowed_books:
            logger.warning(f"Borrower {borrower_id} counter drift: stored={borrower.borrowed_books}, "
                           f"open loans={open_count}")
        self.recompute_status(conn, borrower_id, now)
        return self.load(conn, borrower_id)

    def _recount(self, conn: sqlite3.Connection, borrower_id: int) -> int:
        open_count = len(list_open_loans(conn, borrower_id=borrower_id))
        conn.execute("UPDATE borrowers SET borrowed_books = ? WHERE id = ?", (open_count, borrower_id))
        return open_count
