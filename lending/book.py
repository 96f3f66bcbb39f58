from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping

from lending.database import from_db_timestamp


class Book:
    """A title in the catalog and its copy counts."""

    def __init__(self, id: int | None, title: str, author: str, total_copies: int = 1,
                 available_copies: int | None = None, is_active: bool = True,
                 isbn: str | None = None, genre: str | None = None, description: str | None = None,
                 publisher: str | None = None, publication_year: int | None = None,
                 language: str | None = None, created_at: datetime | None = None,
                 deleted_at: datetime | None = None) -> None:
        self.id = id
        self.title = title.strip()
        self.author = author.strip()
        self.total_copies = total_copies
        # A new title starts with every copy on the shelf
        self.available_copies = total_copies if available_copies is None else available_copies
        self.is_active = is_active
        self.isbn = isbn
        self.genre = genre
        self.description = description
        self.publisher = publisher
        self.publication_year = publication_year
        self.language = language or "English"
        self.created_at = created_at
        self.deleted_at = deleted_at

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} ({self.available_copies}/{self.total_copies} available)"

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def is_available(self) -> bool:
        return self.is_active and not self.is_deleted and self.available_copies > 0

    @property
    def availability_percentage(self) -> float:
        if self.total_copies <= 0:
            return 0.0
        return round(self.available_copies / self.total_copies * 100, 2)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "genre": self.genre,
            "description": self.description,
            "publisher": self.publisher,
            "publication_year": self.publication_year,
            "language": self.language,
            "total_copies": self.total_copies,
            "available_copies": self.available_copies,
            "is_active": self.is_active,
            "availability_percentage": self.availability_percentage,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
        }

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Book":
        data = dict(row)
        return Book(
            id=data["id"],
            title=data["title"],
            author=data["author"],
            total_copies=data["total_copies"],
            available_copies=data["available_copies"],
            is_active=bool(data["is_active"]),
            isbn=data.get("isbn"),
            genre=data.get("genre"),
            description=data.get("description"),
            publisher=data.get("publisher"),
            publication_year=data.get("publication_year"),
            language=data.get("language"),
            created_at=from_db_timestamp(data.get("created_at")),
            deleted_at=from_db_timestamp(data.get("deleted_at")),
        )
