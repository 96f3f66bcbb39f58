import subprocess
import sys
from functools import wraps
from typing import Optional

import typer
from rich.console import Console

from lending import database
from lending.config import settings
from lending.database import utcnow
from lending.errors import LendingError
from lending.library import BookQuery, Library, LoanQuery
from lending.logging_setup import configure_logging
from lending.ui_helpers import print_rows, print_stats_result, set_output_mode

console = Console()

BOOK_COLUMNS = ("id", "title", "author", "available_copies", "total_copies", "is_active")
BORROWER_COLUMNS = ("id", "name", "email", "borrowed_books", "status")
LOAN_COLUMNS = ("id", "book_id", "borrower_id", "borrowed_at", "due_date", "returned_at", "status", "overdue")


class LibraryManager:
    """One Library per database file for the life of the process."""
    _instance: Optional[Library] = None
    _db_file_snapshot: Optional[str] = None

    @classmethod
    def get_instance(cls) -> Library:
        current_db = database.default_database_file()
        if cls._instance is None or current_db != cls._db_file_snapshot:
            cls._instance = Library(db_file=current_db)
            cls._db_file_snapshot = current_db
        return cls._instance


def reports_errors(func):
    """Print core errors as 'Error: ...' and exit with status 1."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except LendingError as e:
            print(f"Error: {e.message}")
            raise typer.Exit(code=1)
    return wrapper


app = typer.Typer(help="Library lending CLI")


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Output format: plain | json | rich"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Logging level (default from LOG_LEVEL)"),
):
    """Global options for the CLI."""
    configure_logging(log_level or "WARNING")
    if output:
        set_output_mode(output)


@app.command("books")
@reports_errors
def cli_books(
    search: Optional[str] = typer.Option(None, "--search", "-s"),
    available: bool = typer.Option(False, "--available", help="Only titles with a copy on the shelf"),
):
    """List the catalog."""
    books = LibraryManager.get_instance().list_books(BookQuery(search=search, available=available))
    print_rows("Books", BOOK_COLUMNS, [b.to_dict() for b in books], "No books in library.")


@app.command("add-book")
@reports_errors
def cli_add_book(
    title: str,
    author: str,
    copies: int = typer.Option(1, "--copies", "-c", help="Total copies"),
    genre: Optional[str] = typer.Option(None, "--genre"),
    isbn: Optional[str] = typer.Option(None, "--isbn"),
):
    """Add a title to the catalog."""
    book = LibraryManager.get_instance().add_book(title, author, copies, genre=genre, isbn=isbn)
    print(f"Added book {book.id}: {book.title} by {book.author} ({book.total_copies} copies)")


@app.command("add-borrower")
@reports_errors
def cli_add_borrower(name: str, email: str):
    """Register a borrower."""
    borrower = LibraryManager.get_instance().add_borrower(name, email)
    print(f"Added borrower {borrower.id}: {borrower.name} <{borrower.email}>")


@app.command("borrowers")
@reports_errors
def cli_borrowers():
    """List borrowers with their current status."""
    borrowers = LibraryManager.get_instance().list_borrowers(utcnow())
    print_rows("Borrowers", BORROWER_COLUMNS, [b.to_dict() for b in borrowers], "No borrowers.")


@app.command("borrow")
@reports_errors
def cli_borrow(book_id: int, borrower_id: int):
    """Lend one copy of a book to a borrower."""
    transaction = LibraryManager.get_instance().borrow(book_id, borrower_id, utcnow())
    print(f"Transaction {transaction.id}: book {book_id} borrowed by {borrower_id}, "
          f"due {transaction.due_date.date().isoformat()}")


@app.command("return")
@reports_errors
def cli_return(
    transaction_id: int,
    as_borrower: Optional[int] = typer.Option(None, "--as", help="Borrower performing the return"),
    admin: bool = typer.Option(False, "--admin", help="Return on behalf of the borrower"),
):
    """Return a borrowed copy."""
    transaction = LibraryManager.get_instance().return_loan(transaction_id, as_borrower, admin, utcnow())
    print(f"Transaction {transaction.id} returned at {transaction.returned_at.isoformat()}")


@app.command("loans")
@reports_errors
def cli_loans(
    borrower_id: Optional[int] = typer.Option(None, "--borrower", "-b"),
    status: Optional[str] = typer.Option(None, "--status", help="borrowed | returned | overdue"),
):
    """List transactions, newest first."""
    now = utcnow()
    loans = LibraryManager.get_instance().list_transactions(LoanQuery(borrower_id=borrower_id, status=status), now)
    print_rows("Loans", LOAN_COLUMNS, [t.to_dict(now) for t in loans], "No loans.")


@app.command("overdue")
@reports_errors
def cli_overdue():
    """List loans past their due date."""
    now = utcnow()
    loans = LibraryManager.get_instance().overdue_report(now)
    print_rows("Overdue loans", LOAN_COLUMNS, [t.to_dict(now) for t in loans], "No overdue loans.")


@app.command("stats")
@reports_errors
def cli_stats():
    """Show lending statistics."""
    print_stats_result(LibraryManager.get_instance().get_statistics(utcnow()))


@app.command("audit")
@reports_errors
def cli_audit():
    """Check every book's available copies against its open loans."""
    drift = LibraryManager.get_instance().audit_inventory()
    if not drift:
        print("Inventory consistent.")
        return
    print_rows("Inventory drift", ("book_id", "total_copies", "available_copies", "open_loans", "expected_available"),
               [d.to_dict() for d in drift], "")
    raise typer.Exit(code=1)


@app.command("serve")
def cli_serve(reload: bool = typer.Option(False, "--reload", help="Restart on code changes")):
    """Start the HTTP API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    print(f"Starting lending API on http://{host}:{port}/")
    args = [sys.executable, "-m", "uvicorn", "lending.api:app", "--host", host, "--port", str(port)]
    if reload:
        args.append("--reload")
    try:
        subprocess.run(args, check=False)
    except FileNotFoundError:
        console.print("[bold red]Error:[/] could not start uvicorn. Make sure it is installed.")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
