import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from lending import errors
from lending.config import settings
from lending.database import get_db_connection, utcnow
from lending.library import BookQuery, Library, LoanQuery
from lending.logging_setup import configure_logging

logger = logging.getLogger(__name__)

library = Library()


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    logger.info(f"{settings.app_name} {settings.app_version} using {library.db_file}")
    yield


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Errors ---
_STATUS_BY_ERROR = (
    (errors.NotFound, 404),
    (errors.Conflict, 409),
    (errors.Unauthorized, 403),
    (errors.ValidationError, 422),
    (errors.TransientStorageError, 503),
)


@app.exception_handler(errors.LendingError)
async def lending_error_handler(request: Request, exc: errors.LendingError) -> JSONResponse:
    status_code = next((code for cls, code in _STATUS_BY_ERROR if isinstance(exc, cls)), 500)
    body: Dict[str, Any] = {"detail": exc.message, "code": exc.code}
    headers = {}
    if isinstance(exc, errors.AlreadyReturned) and exc.returned_at:
        body["returned_at"] = exc.returned_at.isoformat()
    if isinstance(exc, errors.TransientStorageError):
        headers["Retry-After"] = "1"
    return JSONResponse(status_code=status_code, content=body, headers=headers)


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


@dataclass
class Actor:
    borrower_id: Optional[int]
    is_admin: bool


def get_actor(api_key: Optional[str] = Security(api_key_header),
              x_borrower_id: Optional[int] = Header(default=None)) -> Actor:
    """Admin via X-API-Key, borrower via X-Borrower-Id."""
    if api_key is not None and api_key != settings.api_key:
        raise HTTPException(status_code=403, detail="Could not validate credentials")
    actor = Actor(borrower_id=x_borrower_id, is_admin=api_key is not None)
    if not actor.is_admin and actor.borrower_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return actor


def require_admin(actor: Actor = Depends(get_actor)) -> Actor:
    if not actor.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return actor


def get_now() -> datetime:
    """Current time; tests override this dependency to move the clock."""
    return utcnow()


# --- Models ---
class BookCreateModel(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    author: str = Field(min_length=1, max_length=255)
    total_copies: int = Field(default=1, ge=1)
    isbn: Optional[str] = None
    genre: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = None
    publisher: Optional[str] = Field(default=None, max_length=255)
    publication_year: Optional[int] = Field(default=None, ge=1800)
    language: Optional[str] = Field(default=None, max_length=50)
    is_active: bool = True


class BookUpdateModel(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    author: Optional[str] = Field(default=None, min_length=1, max_length=255)
    total_copies: Optional[int] = Field(default=None, ge=1)
    isbn: Optional[str] = None
    genre: Optional[str] = None
    description: Optional[str] = None
    publisher: Optional[str] = None
    publication_year: Optional[int] = Field(default=None, ge=1800)
    language: Optional[str] = None
    is_active: Optional[bool] = None


class BookModel(BaseModel):
    id: int
    title: str
    author: str
    isbn: Optional[str] = None
    genre: Optional[str] = None
    description: Optional[str] = None
    publisher: Optional[str] = None
    publication_year: Optional[int] = None
    language: Optional[str] = None
    total_copies: int
    available_copies: int
    is_active: bool
    availability_percentage: float
    created_at: Optional[str] = None


class BookDetailModel(BookModel):
    borrowed_copies: int
    overdue_copies: int


class BorrowRequest(BaseModel):
    borrower_id: Optional[int] = Field(default=None, description="Admins may borrow on behalf of a borrower")


class TransactionModel(BaseModel):
    id: int
    book_id: int
    borrower_id: int
    borrowed_at: str
    due_date: str
    returned_at: Optional[str] = None
    status: str
    overdue: bool


class BorrowerCreateModel(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=3, max_length=255)
    borrowed_book_id: Optional[int] = None


class BorrowerUpdateModel(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    email: Optional[str] = Field(default=None, min_length=3, max_length=255)


class BorrowerModel(BaseModel):
    id: int
    name: str
    email: str
    borrowed_books: int
    status: str
    created_at: Optional[str] = None


class BorrowerCreatedModel(BaseModel):
    borrower: BorrowerModel
    transaction: Optional[TransactionModel] = None
    warning: Optional[str] = None


class StatsModel(BaseModel):
    total_books: int
    total_copies: int
    available_copies: int
    borrowed_copies: int
    overdue_loans: int
    total_borrowers: int
    overdue_borrowers: int


class DriftModel(BaseModel):
    book_id: int
    total_copies: int
    available_copies: int
    open_loans: int
    expected_available: int


# --- Health ---
@app.get("/health")
def health():
    """Lightweight health endpoint with a quick database round trip."""
    db_ok = True
    try:
        conn = get_db_connection(library.db_file)
        try:
            conn.execute("SELECT 1")
        finally:
            conn.close()
    except Exception as e:
        logger.error(f"Health check database error: {e}")
        db_ok = False
    return {"status": "healthy" if db_ok else "degraded", "timestamp": utcnow().isoformat(), "db": db_ok}


# --- Books ---
@app.get("/books", response_model=List[BookModel])
def get_books(
    search: Optional[str] = Query(None),
    genre: Optional[str] = Query(None),
    available: bool = Query(False),
    active_only: bool = Query(True),
    sort_by: str = Query("created_at"),
    sort_order: str = Query("desc"),
):
    query = BookQuery(search=search, genre=genre, available=available, active_only=active_only,
                      sort_by=sort_by, sort_order=sort_order)
    return [BookModel(**b.to_dict()) for b in library.list_books(query)]


@app.get("/books/{book_id}", response_model=BookDetailModel)
def get_book(book_id: int, now: datetime = Depends(get_now)):
    return BookDetailModel(**library.book_summary(book_id, now))


@app.post("/books", response_model=BookModel, status_code=201, dependencies=[Depends(require_admin)])
def add_book(payload: BookCreateModel):
    data = payload.model_dump()
    book = library.add_book(data.pop("title"), data.pop("author"), data.pop("total_copies"),
                            is_active=data.pop("is_active"), **data)
    return BookModel(**book.to_dict())


@app.put("/books/{book_id}", response_model=BookModel, dependencies=[Depends(require_admin)])
def update_book(book_id: int, update: BookUpdateModel):
    fields = update.model_dump(exclude_unset=True)
    if not fields:
        raise HTTPException(status_code=400, detail="Provide at least one field to update.")
    return BookModel(**library.update_book(book_id, **fields).to_dict())


@app.delete("/books/{book_id}", dependencies=[Depends(require_admin)])
def delete_book(book_id: int):
    if not library.remove_book(book_id):
        raise HTTPException(status_code=404, detail="Book not found.")
    return {"message": "Book deleted."}


@app.post("/books/{book_id}/restore", response_model=BookModel, dependencies=[Depends(require_admin)])
def restore_book(book_id: int):
    return BookModel(**library.restore_book(book_id).to_dict())


@app.post("/books/{book_id}/borrow", response_model=TransactionModel, status_code=201)
def borrow_book(book_id: int, request: Optional[BorrowRequest] = None,
                actor: Actor = Depends(get_actor), now: datetime = Depends(get_now)):
    borrower_id = actor.borrower_id
    if request is not None and request.borrower_id is not None:
        if not actor.is_admin and request.borrower_id != actor.borrower_id:
            raise errors.Unauthorized("Only admins can borrow on behalf of another borrower.")
        borrower_id = request.borrower_id
    if borrower_id is None:
        raise HTTPException(status_code=400, detail="borrower_id is required.")
    transaction = library.borrow(book_id, borrower_id, now)
    return TransactionModel(**transaction.to_dict(now))


# --- Transactions ---
@app.get("/transactions", response_model=List[TransactionModel])
def get_transactions(
    status: Optional[str] = Query(None),
    book_id: Optional[int] = Query(None),
    borrower_id: Optional[int] = Query(None),
    actor: Actor = Depends(get_actor),
    now: datetime = Depends(get_now),
):
    """Admins see every transaction; borrowers only their own."""
    if not actor.is_admin:
        borrower_id = actor.borrower_id
    query = LoanQuery(borrower_id=borrower_id, book_id=book_id, status=status)
    return [TransactionModel(**t.to_dict(now)) for t in library.list_transactions(query, now)]


@app.get("/transactions/overdue", response_model=List[TransactionModel], dependencies=[Depends(require_admin)])
def get_overdue_transactions(now: datetime = Depends(get_now)):
    return [TransactionModel(**t.to_dict(now)) for t in library.overdue_report(now)]


@app.get("/transactions/{transaction_id}", response_model=TransactionModel)
def get_transaction(transaction_id: int, actor: Actor = Depends(get_actor), now: datetime = Depends(get_now)):
    transaction = library.find_transaction(transaction_id)
    if transaction is None:
        raise errors.TransactionNotFound(transaction_id)
    if not actor.is_admin and transaction.borrower_id != actor.borrower_id:
        raise errors.Unauthorized(f"Not allowed to view transaction {transaction_id}.")
    return TransactionModel(**transaction.to_dict(now))


@app.post("/transactions/{transaction_id}/return", response_model=TransactionModel)
def return_transaction(transaction_id: int, actor: Actor = Depends(get_actor), now: datetime = Depends(get_now)):
    transaction = library.return_loan(transaction_id, actor.borrower_id, actor.is_admin, now)
    return TransactionModel(**transaction.to_dict(now))


# --- Borrowers ---
@app.get("/borrowers", response_model=List[BorrowerModel], dependencies=[Depends(require_admin)])
def get_borrowers(now: datetime = Depends(get_now)):
    return [BorrowerModel(**b.to_dict()) for b in library.list_borrowers(now)]


@app.post("/borrowers", response_model=BorrowerCreatedModel, status_code=201, dependencies=[Depends(require_admin)])
def add_borrower(payload: BorrowerCreateModel, now: datetime = Depends(get_now)):
    """Create a borrower, then optionally lend them a book in a separate step.

    A failed borrow does not undo the new borrower; it is reported in ``warning``.
    """
    borrower = library.add_borrower(payload.name, payload.email, now)
    result = BorrowerCreatedModel(borrower=BorrowerModel(**borrower.to_dict()))
    if payload.borrowed_book_id is not None:
        try:
            transaction = library.borrow(payload.borrowed_book_id, borrower.id, now)
        except (errors.NotFound, errors.Conflict) as e:
            logger.warning(f"Borrower {borrower.id} created but borrow failed: {e.message}")
            result.warning = f"Borrower created but failed to process book borrowing: {e.message}"
        else:
            result.transaction = TransactionModel(**transaction.to_dict(now))
            result.borrower = BorrowerModel(**library.find_borrower(borrower.id, now).to_dict())
    return result


@app.get("/borrowers/{borrower_id}", response_model=BorrowerModel)
def get_borrower(borrower_id: int, actor: Actor = Depends(get_actor), now: datetime = Depends(get_now)):
    if not actor.is_admin and borrower_id != actor.borrower_id:
        raise errors.Unauthorized(f"Not allowed to view borrower {borrower_id}.")
    borrower = library.find_borrower(borrower_id, now)
    if borrower is None:
        raise errors.BorrowerNotFound(borrower_id)
    return BorrowerModel(**borrower.to_dict())


@app.get("/borrowers/{borrower_id}/loans", response_model=List[TransactionModel])
def get_borrower_loans(borrower_id: int, status: Optional[str] = Query(None),
                       actor: Actor = Depends(get_actor), now: datetime = Depends(get_now)):
    if not actor.is_admin and borrower_id != actor.borrower_id:
        raise errors.Unauthorized(f"Not allowed to view loans of borrower {borrower_id}.")
    query = LoanQuery(borrower_id=borrower_id, status=status)
    return [TransactionModel(**t.to_dict(now)) for t in library.list_transactions(query, now)]


@app.put("/borrowers/{borrower_id}", response_model=BorrowerModel, dependencies=[Depends(require_admin)])
def update_borrower(borrower_id: int, update: BorrowerUpdateModel, now: datetime = Depends(get_now)):
    borrower = library.update_borrower(borrower_id, name=update.name, email=update.email, now=now)
    return BorrowerModel(**borrower.to_dict())


@app.delete("/borrowers/{borrower_id}", dependencies=[Depends(require_admin)])
def delete_borrower(borrower_id: int):
    if not library.remove_borrower(borrower_id):
        raise HTTPException(status_code=404, detail="Borrower not found.")
    return {"message": "Borrower deleted."}


# --- Reports ---
@app.get("/stats", response_model=StatsModel)
def get_stats(now: datetime = Depends(get_now)):
    return StatsModel(**library.get_statistics(now))


@app.get("/admin/audit", response_model=List[DriftModel], dependencies=[Depends(require_admin)])
def audit_inventory():
    return [DriftModel(**d.to_dict()) for d in library.audit_inventory()]
