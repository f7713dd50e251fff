from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

# Largest value an SQLite INTEGER column can hold
MAX_BOOK_ID = 2**63 - 1


class Availability(Enum):
    """Availability flag of a catalog book."""
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"


class LoanStatus(Enum):
    """Lifecycle states of a ledger entry."""
    BORROWED = "borrowed"
    RETURNED = "returned"


def _parse_ts(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _format_ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass
class Book:
    """A catalog book with its primary author.

    ``authors`` lists every author in display order; the first one is the
    primary author copied into loan snapshots.
    """
    id: int
    title: str
    author_first_name: str = "Unknown"
    author_last_name: str = "Unknown"
    availability: Availability = Availability.AVAILABLE
    authors: List[str] = field(default_factory=list)
    genres: List[str] = field(default_factory=list)

    @property
    def is_available(self) -> bool:
        return self.availability is Availability.AVAILABLE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "author": f"{self.author_first_name} {self.author_last_name}",
            "authors": list(self.authors),
            "genres": list(self.genres),
            "availability_status": self.availability.value,
        }

    @staticmethod
    def from_row(row: Dict[str, Any], authors: Optional[List[str]] = None,
                 genres: Optional[List[str]] = None) -> "Book":
        # Books without a linked author come back with NULL name columns
        return Book(
            id=row["id"],
            title=row["title"],
            author_first_name=row.get("author_first_name") or "Unknown",
            author_last_name=row.get("author_last_name") or "Unknown",
            availability=Availability(row["availability_status"]),
            authors=list(authors or []),
            genres=list(genres or []),
        )


@dataclass
class User:
    id: str
    name: str
    surname: str
    email: Optional[str] = None
    avatar_url: Optional[str] = None
    is_admin: bool = False
    current_borrowed: int = 0
    numbers_of_books_checked_out: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "surname": self.surname,
            "email": self.email,
            "avatar_url": self.avatar_url,
            "is_admin": self.is_admin,
            "current_borrowed": self.current_borrowed,
            "numbers_of_books_checked_out": self.numbers_of_books_checked_out,
        }

    @staticmethod
    def from_row(row: Dict[str, Any]) -> "User":
        return User(
            id=row["id"],
            name=row["name"],
            surname=row["surname"],
            email=row.get("email"),
            avatar_url=row.get("avatar_url"),
            is_admin=bool(row.get("is_admin")),
            current_borrowed=row["current_borrowed"],
            numbers_of_books_checked_out=row["numbers_of_books_checked_out"],
        )


@dataclass(frozen=True)
class LoanSnapshot:
    """Display fields copied from the book and user when a loan is created.

    Loans keep these values even after the source rows are edited or deleted.
    """
    book_title: str
    author_first_name: str
    author_last_name: str
    user_first_name: str
    user_last_name: str

    @staticmethod
    def capture(book: Book, user: User) -> "LoanSnapshot":
        return LoanSnapshot(
            book_title=book.title,
            author_first_name=book.author_first_name,
            author_last_name=book.author_last_name,
            user_first_name=user.name,
            user_last_name=user.surname,
        )


@dataclass
class Loan:
    """One row of the loan ledger."""
    id: str
    book_id: Optional[int]
    user_id: Optional[str]
    snapshot: LoanSnapshot
    borrowed_at: datetime
    due_date: datetime
    status: LoanStatus = LoanStatus.BORROWED
    returned_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status is LoanStatus.BORROWED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "title": self.snapshot.book_title,
            "author": f"{self.snapshot.author_first_name} {self.snapshot.author_last_name}",
            "status": self.status.value,
            "borrowed_at": _format_ts(self.borrowed_at),
            "due_date": _format_ts(self.due_date),
            "returned_at": _format_ts(self.returned_at),
        }

    @staticmethod
    def from_row(row: Dict[str, Any]) -> "Loan":
        return Loan(
            id=row["id"],
            book_id=row["book_id"],
            user_id=row["user_id"],
            snapshot=LoanSnapshot(
                book_title=row["book_title"],
                author_first_name=row["author_first_name"],
                author_last_name=row["author_last_name"],
                user_first_name=row["user_first_name"],
                user_last_name=row["user_last_name"],
            ),
            borrowed_at=_parse_ts(row["borrowed_at"]),
            due_date=_parse_ts(row["due_date"]),
            status=LoanStatus(row["status"]),
            returned_at=_parse_ts(row["returned_at"]),
        )


@dataclass
class UserPatch:
    """Explicit set of profile fields to change; ``None`` means unchanged."""
    email: Optional[str] = None
    name: Optional[str] = None
    surname: Optional[str] = None
    avatar_url: Optional[str] = None

    def changes(self) -> Dict[str, str]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}

    def is_empty(self) -> bool:
        return not self.changes()
