"""Error taxonomy for the lending core.

Every error carries a stable ``code`` so the HTTP and CLI layers can map it
without parsing messages. The core raises these and never swallows them.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional


class LendingError(Exception):
    code = "lending_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


# --- NotFound ---
class NotFound(LendingError):
    code = "not_found"


class BookNotFound(NotFound):
    code = "book_not_found"

    def __init__(self, book_id: int) -> None:
        super().__init__(f"Book {book_id} not found.")
        self.book_id = book_id


class BorrowerNotFound(NotFound):
    code = "borrower_not_found"

    def __init__(self, borrower_id: int) -> None:
        super().__init__(f"Borrower {borrower_id} not found.")
        self.borrower_id = borrower_id


class TransactionNotFound(NotFound):
    code = "transaction_not_found"

    def __init__(self, transaction_id: int) -> None:
        super().__init__(f"Transaction {transaction_id} not found.")
        self.transaction_id = transaction_id


# --- Conflict ---
class Conflict(LendingError):
    code = "conflict"


class BookInactive(Conflict):
    code = "book_inactive"

    def __init__(self, book_id: int) -> None:
        super().__init__(f"Book {book_id} is not active.")
        self.book_id = book_id


class AlreadyBorrowed(Conflict):
    code = "already_borrowed"

    def __init__(self, book_id: int, borrower_id: int) -> None:
        super().__init__(f"Borrower {borrower_id} already has book {book_id} borrowed.")
        self.book_id = book_id
        self.borrower_id = borrower_id


class AlreadyReturned(Conflict):
    code = "already_returned"

    def __init__(self, transaction_id: int, returned_at: Optional[datetime]) -> None:
        when = returned_at.isoformat() if returned_at else "unknown time"
        super().__init__(f"Transaction {transaction_id} was already returned at {when}.")
        self.transaction_id = transaction_id
        self.returned_at = returned_at


class ActiveLoansExist(Conflict):
    code = "active_loans_exist"


class InventoryError(Conflict):
    code = "inventory_error"


class NoCopiesAvailable(InventoryError):
    code = "no_copies_available"

    def __init__(self, book_id: int) -> None:
        super().__init__(f"No copies of book {book_id} are available.")
        self.book_id = book_id


class OverRelease(InventoryError):
    code = "over_release"

    def __init__(self, book_id: int) -> None:
        super().__init__(f"Releasing a copy of book {book_id} would exceed its total copies.")
        self.book_id = book_id


class CopiesInUse(InventoryError):
    code = "copies_in_use"

    def __init__(self, book_id: int, requested_total: int, on_loan: int) -> None:
        super().__init__(
            f"Book {book_id} cannot have {requested_total} total copies while {on_loan} are on loan."
        )
        self.book_id = book_id
        self.requested_total = requested_total
        self.on_loan = on_loan


# --- Others ---
class Unauthorized(LendingError):
    code = "unauthorized"


class ValidationError(LendingError):
    code = "invalid"


class TransientStorageError(LendingError):
    """Lock or timeout contention; the whole unit of work may be retried."""

    code = "storage_busy"
