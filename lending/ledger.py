"""Loan ledger: the append-only record of every borrow.

Rows are inserted by a borrow and updated exactly once by a return; they are
never deleted. All methods run on a connection supplied by the caller so the
orchestrator can group them with catalog and user updates in one transaction.
"""

import logging
import sqlite3
from datetime import datetime
from typing import List, Optional

from lending.errors import ConflictError, NotFoundError
from lending.models import Loan, LoanStatus

logger = logging.getLogger(__name__)

_LOAN_COLUMNS = """
    id, book_id, book_title, author_first_name, author_last_name,
    user_id, user_first_name, user_last_name, status,
    borrowed_at, due_date, returned_at
"""


class LoanLedger:

    def find_active_loan(self, conn: sqlite3.Connection, book_id: int, user_id: str) -> Optional[Loan]:
        row = conn.execute(
            f"SELECT {_LOAN_COLUMNS} FROM borrowed_books "
            "WHERE book_id = ? AND user_id = ? AND status = ?",
            (book_id, user_id, LoanStatus.BORROWED.value),
        ).fetchone()
        return Loan.from_row(dict(row)) if row else None

    def create_loan(self, conn: sqlite3.Connection, loan: Loan) -> Loan:
        """Insert a new active loan.

        Raises ConflictError when the book already has an active loan, whether
        seen by the explicit check or by the partial unique index.
        """
        existing = conn.execute(
            "SELECT id FROM borrowed_books WHERE book_id = ? AND status = ?",
            (loan.book_id, LoanStatus.BORROWED.value),
        ).fetchone()
        if existing:
            logger.warning(f"Active loan {existing['id']} already exists for book {loan.book_id}")
            raise ConflictError()

        snap = loan.snapshot
        try:
            conn.execute(
                f"INSERT INTO borrowed_books ({_LOAN_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    loan.id, loan.book_id, snap.book_title, snap.author_first_name, snap.author_last_name,
                    loan.user_id, snap.user_first_name, snap.user_last_name, LoanStatus.BORROWED.value,
                    loan.borrowed_at.isoformat(), loan.due_date.isoformat(), None,
                ),
            )
        except sqlite3.IntegrityError as e:
            logger.warning(f"Unique active-loan index rejected loan {loan.id} for book {loan.book_id}")
            raise ConflictError() from e
        loan.status = LoanStatus.BORROWED
        loan.returned_at = None
        return loan

    def settle_loan(self, conn: sqlite3.Connection, book_id: int, user_id: str, returned_at: datetime) -> Loan:
        """Mark the active loan for (book, user) as returned."""
        loan = self.find_active_loan(conn, book_id, user_id)
        if loan is None:
            raise NotFoundError("loan", (book_id, user_id))
        conn.execute(
            "UPDATE borrowed_books SET status = ?, returned_at = ? WHERE id = ? AND status = ?",
            (LoanStatus.RETURNED.value, returned_at.isoformat(), loan.id, LoanStatus.BORROWED.value),
        )
        loan.status = LoanStatus.RETURNED
        loan.returned_at = returned_at
        return loan

    def list_active(self, conn: sqlite3.Connection, user_id: str) -> List[Loan]:
        rows = conn.execute(
            f"SELECT {_LOAN_COLUMNS} FROM borrowed_books "
            "WHERE user_id = ? AND status = ? ORDER BY borrowed_at, rowid",
            (user_id, LoanStatus.BORROWED.value),
        ).fetchall()
        return [Loan.from_row(dict(r)) for r in rows]

    def list_history(self, conn: sqlite3.Connection, user_id: str) -> List[Loan]:
        """Every loan of the user, most recent first."""
        rows = conn.execute(
            f"SELECT {_LOAN_COLUMNS} FROM borrowed_books "
            "WHERE user_id = ? ORDER BY borrowed_at DESC, rowid DESC",
            (user_id,),
        ).fetchall()
        return [Loan.from_row(dict(r)) for r in rows]

    def count_active(self, conn: sqlite3.Connection, user_id: str) -> int:
        row = conn.execute(
            "SELECT COUNT(*) FROM borrowed_books WHERE user_id = ? AND status = ?",
            (user_id, LoanStatus.BORROWED.value),
        ).fetchone()
        return row[0]
