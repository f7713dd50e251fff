import logging
import sqlite3
from typing import List, Optional, Sequence, Tuple

from lending.database import connection, transaction
from lending.errors import NotFoundError, Unavailable, ValidationError
from lending.models import MAX_BOOK_ID, Availability, Book

logger = logging.getLogger(__name__)

# Primary author is the one with the lowest position
_BOOK_SELECT = """
    SELECT b.id, b.title, b.availability_status,
           a.first_name AS author_first_name,
           a.last_name  AS author_last_name
    FROM books b
    LEFT JOIN authors a ON a.id = (
        SELECT ba.author_id FROM book_authors ba
        WHERE ba.book_id = b.id
        ORDER BY ba.position
        LIMIT 1
    )
"""

MAX_PAGE_SIZE = 100


class Catalog:
    """Read access to books plus the availability flag the lending desk flips."""

    # ------------------------- Lending operations ------------------------- #
    def get_book(self, conn: sqlite3.Connection, book_id: int) -> Optional[Book]:
        """Fetch id, title, authors, genres and availability of a book."""
        row = conn.execute(f"{_BOOK_SELECT} WHERE b.id = ?", (book_id,)).fetchone()
        return self._to_book(conn, row) if row else None

    def set_availability(self, conn: sqlite3.Connection, book_id: int, status: Availability) -> None:
        """Write the availability flag. The caller owns the transaction."""
        conn.execute(
            "UPDATE books SET availability_status = ? WHERE id = ?",
            (status.value, book_id),
        )

    # ------------------------- Browsing ------------------------- #
    def list_books(self, page: int = 1, limit: int = 10) -> List[Book]:
        """One page of the catalog ordered by title."""
        if isinstance(page, bool) or not isinstance(page, int) or page < 1:
            raise ValidationError("'page' must be a positive integer.")
        if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"'limit' must be an integer between 1 and {MAX_PAGE_SIZE}.")
        if (page - 1) * limit > MAX_BOOK_ID:
            raise ValidationError("'page' is out of range.")

        with connection() as conn:
            rows = conn.execute(
                f"{_BOOK_SELECT} ORDER BY b.title, b.id LIMIT ? OFFSET ?",
                (limit, (page - 1) * limit),
            ).fetchall()
            return [self._to_book(conn, row) for row in rows]

    # ------------------------- Administration ------------------------- #
    def add_book(
        self,
        title: str,
        authors: Sequence[Tuple[str, str]] = (),
        genres: Sequence[str] = (),
    ) -> Book:
        """Add a book with its authors in order; the first one is the primary author."""
        title = (title or "").strip()
        if not title:
            raise ValidationError("Invalid or missing 'title'. It must be a non-empty string.")
        genre_names = [(name or "").strip() for name in genres]
        if any(not name for name in genre_names):
            raise ValidationError("Genre names must be non-empty strings.")

        with transaction() as conn:
            cursor = conn.execute("INSERT INTO books (title) VALUES (?)", (title,))
            book_id = cursor.lastrowid
            for position, (first_name, last_name) in enumerate(authors):
                author_id = self._get_or_create_author(conn, first_name.strip(), last_name.strip())
                conn.execute(
                    "INSERT OR IGNORE INTO book_authors (book_id, author_id, position) VALUES (?, ?, ?)",
                    (book_id, author_id, position),
                )
            for name in genre_names:
                conn.execute(
                    "INSERT OR IGNORE INTO book_genres (book_id, genre_id) VALUES (?, ?)",
                    (book_id, self._get_or_create_genre(conn, name)),
                )
            book = self.get_book(conn, book_id)
        logger.info(f"Book added: id={book_id}, title={title!r}")
        return book

    def delete_book(self, book_id: int) -> None:
        """Remove a book from the catalog. Books on loan cannot be removed.

        Ledger rows keep their snapshot and lose only the book reference.
        """
        with transaction() as conn:
            book = self.get_book(conn, book_id)
            if book is None:
                raise NotFoundError("book", book_id)
            if not book.is_available:
                raise Unavailable("Book is currently borrowed and cannot be deleted.")
            conn.execute("UPDATE borrowed_books SET book_id = NULL WHERE book_id = ?", (book_id,))
            conn.execute("DELETE FROM book_authors WHERE book_id = ?", (book_id,))
            conn.execute("DELETE FROM book_genres WHERE book_id = ?", (book_id,))
            conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
        logger.info(f"Book deleted: id={book_id}")

    # ------------------------- Utilities ------------------------- #
    @staticmethod
    def _to_book(conn: sqlite3.Connection, row: sqlite3.Row) -> Book:
        return Book.from_row(
            dict(row),
            authors=list_authors(conn, row["id"]),
            genres=list_genres(conn, row["id"]),
        )

    @staticmethod
    def _get_or_create_author(conn: sqlite3.Connection, first_name: str, last_name: str) -> int:
        row = conn.execute(
            "SELECT id FROM authors WHERE first_name = ? AND last_name = ?",
            (first_name, last_name),
        ).fetchone()
        if row:
            return row["id"]
        cursor = conn.execute(
            "INSERT INTO authors (first_name, last_name) VALUES (?, ?)",
            (first_name, last_name),
        )
        return cursor.lastrowid

    @staticmethod
    def _get_or_create_genre(conn: sqlite3.Connection, name: str) -> int:
        row = conn.execute("SELECT id FROM genres WHERE name = ?", (name,)).fetchone()
        if row:
            return row["id"]
        return conn.execute("INSERT INTO genres (name) VALUES (?)", (name,)).lastrowid


def list_authors(conn: sqlite3.Connection, book_id: int) -> List[str]:
    """All author names of a book in display order."""
    rows = conn.execute(
        """
        SELECT a.first_name, a.last_name FROM book_authors ba
        JOIN authors a ON a.id = ba.author_id
        WHERE ba.book_id = ?
        ORDER BY ba.position
        """,
        (book_id,),
    ).fetchall()
    return [f"{r['first_name']} {r['last_name']}" for r in rows]


def list_genres(conn: sqlite3.Connection, book_id: int) -> List[str]:
    rows = conn.execute(
        """
        SELECT g.name FROM book_genres bg
        JOIN genres g ON g.id = bg.genre_id
        WHERE bg.book_id = ?
        ORDER BY g.name
        """,
        (book_id,),
    ).fetchall()
    return [r["name"] for r in rows]
