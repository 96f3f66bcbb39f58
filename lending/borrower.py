from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional

from lending.database import from_db_timestamp


class BorrowerStatus(str, Enum):
    ACTIVE = "active"
    OVERDUE = "overdue"


@dataclass
class Borrower:
    """A member who borrows books.

    ``status`` and ``borrowed_books`` are maintained by the borrower
    aggregate from the member's open loans; callers never set them.
    """

    id: int
    name: str
    email: str
    borrowed_books: int = 0
    status: BorrowerStatus = BorrowerStatus.ACTIVE
    created_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "borrowed_books": self.borrowed_books,
            "status": self.status.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Borrower":
        data = dict(row)
        return Borrower(
            id=data["id"],
            name=data["name"],
            email=data["email"],
            borrowed_books=data["borrowed_books"],
            status=BorrowerStatus(data["status"]),
            created_at=from_db_timestamp(data.get("created_at")),
            deleted_at=from_db_timestamp(data.get("deleted_at")),
        )
