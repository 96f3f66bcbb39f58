import logging
import os
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Iterator, Optional, TypeVar

from dotenv import load_dotenv

from lending.config import settings
from lending.errors import TransientStorageError

# Make sure .env is loaded before LIBRARY_DB_FILE is read.
load_dotenv()

logger = logging.getLogger(__name__)

T = TypeVar("T")

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f"

# sqlite reports lock contention through OperationalError messages only
_TRANSIENT_MARKERS = ("database is locked", "database is busy", "database table is locked")


def default_database_file() -> str:
    """Database file to use when none is given.

    1) LIBRARY_DB_FILE (read on every call so tests can switch files)
    2) settings.database_file
    """
    return os.environ.get("LIBRARY_DB_FILE") or settings.database_file


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db_timestamp(value: datetime) -> str:
    """UTC text with fixed precision so string order equals time order."""
    return as_utc(value).replace(tzinfo=None).strftime(TIMESTAMP_FORMAT)


def from_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection in autocommit mode; transactions are started explicitly."""
    conn = sqlite3.connect(
        db_file or default_database_file(),
        timeout=settings.lock_timeout,
        isolation_level=None,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def is_transient(exc: sqlite3.Error) -> bool:
    message = str(exc).lower()
    return isinstance(exc, sqlite3.OperationalError) and any(m in message for m in _TRANSIENT_MARKERS)


@contextmanager
def unit_of_work(db_file: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    """Run a block inside one write transaction.

    BEGIN IMMEDIATE takes the write lock before the first read, so a
    check-then-act sequence in the block is serialized against every other
    unit of work on the same database. Any exception (cancellation included)
    rolls the whole block back.
    """
    conn = get_db_connection(db_file)
    try:
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as e:
            if is_transient(e):
                raise TransientStorageError("Timed out waiting for the write lock.") from e
            raise
        try:
            yield conn
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        try:
            conn.execute("COMMIT")
        except sqlite3.OperationalError as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            if is_transient(e):
                raise TransientStorageError("Timed out committing the unit of work.") from e
            raise
    except sqlite3.OperationalError as e:
        if is_transient(e):
            raise TransientStorageError(str(e)) from e
        logger.error(f"Storage error in unit of work: {e}")
        raise
    finally:
        conn.close()


def run_in_transaction(
    work: Callable[[sqlite3.Connection], T],
    db_file: Optional[str] = None,
    retries: Optional[int] = None,
    backoff: Optional[float] = None,
) -> T:
    """Run ``work(conn)`` atomically, retrying the whole unit on lock contention."""
    retries = settings.retry_attempts if retries is None else retries
    backoff = settings.retry_backoff if backoff is None else backoff
    attempts = max(retries, 1)
    for attempt in range(attempts):
        try:
            with unit_of_work(db_file) as conn:
                return work(conn)
        except TransientStorageError as e:
            if attempt < attempts - 1:
                wait_time = backoff * (2 ** attempt)
                logger.warning(f"Storage busy ({e}); retrying in {wait_time:.3f}s (attempt {attempt + 1}/{attempts})")
                time.sleep(wait_time)
                continue
            raise
    raise TransientStorageError("Unit of work was not attempted.")


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the lending tables if they do not exist yet."""
    conn = get_db_connection(db_file)
    try:
        # WAL lets readers proceed while a borrow/return holds the write lock
        conn.execute("PRAGMA journal_mode=WAL;")
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                isbn TEXT,
                genre TEXT,
                description TEXT,
                publisher TEXT,
                publication_year INTEGER,
                language TEXT DEFAULT 'English',
                total_copies INTEGER NOT NULL DEFAULT 1 CHECK (total_copies >= 1),
                available_copies INTEGER NOT NULL DEFAULT 1,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                deleted_at TEXT,
                CHECK (available_copies >= 0 AND available_copies <= total_copies)
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS borrowers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                email TEXT NOT NULL UNIQUE,
                borrowed_books INTEGER NOT NULL DEFAULT 0 CHECK (borrowed_books >= 0),
                status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'overdue')),
                created_at TEXT NOT NULL,
                deleted_at TEXT
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                book_id INTEGER NOT NULL,
                borrower_id INTEGER NOT NULL,
                borrowed_at TEXT NOT NULL,
                due_date TEXT NOT NULL,
                returned_at TEXT,
                status TEXT NOT NULL DEFAULT 'borrowed' CHECK (status IN ('borrowed', 'returned')),
                FOREIGN KEY (book_id) REFERENCES books(id),
                FOREIGN KEY (borrower_id) REFERENCES borrowers(id)
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_transactions_book_status ON transactions(book_id, status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_transactions_borrower_status ON transactions(borrower_id, status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_transactions_status_due ON transactions(status, due_date)")
        # Storage backstop for one open loan per (book, borrower)
        cursor.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS uq_transactions_open_loan
            ON transactions(book_id, borrower_id) WHERE status = 'borrowed'
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_author ON books(author)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_genre ON books(genre)")
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Initialize the database, creating tables when needed."""
    create_tables(db_file)
