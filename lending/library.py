import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from lending import database
from lending.accounts import fetch_user
from lending.catalog import Catalog
from lending.config import settings
from lending.database import connection, transaction
from lending.errors import (
    LendingError,
    LimitExceeded,
    NoActiveLoan,
    NotFoundError,
    StoreError,
    Unavailable,
    ValidationError,
)
from lending.ledger import LoanLedger
from lending.models import MAX_BOOK_ID, Availability, Book, Loan, LoanSnapshot
from lending.policy import BorrowLimitPolicy

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Library:
    """Borrowing state machine over the catalog, the loan ledger and user counters.

    Every borrow and return runs as one write transaction on its own pooled
    connection: the loan row, the book's availability flag and the user's
    counters either all change or none do.
    """

    def __init__(
        self,
        db_file: Optional[str] = None,
        policy: Optional[BorrowLimitPolicy] = None,
        loan_period_days: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        database.init_pool(db_file)
        self.catalog = Catalog()
        self.ledger = LoanLedger()
        self.policy = policy or BorrowLimitPolicy()
        days = settings.loan_period_days if loan_period_days is None else loan_period_days
        self.loan_period = timedelta(days=days)
        self._clock = clock or _utcnow

    # ------------------------- State transitions ------------------------- #
    def borrow(self, user_id: str, book_id: int) -> Loan:
        """Lend ``book_id`` to ``user_id``.

        Checks, in order: user exists, user is under the borrow limit, book
        exists, book is available.
        """
        user_id = self._validate_user_id(user_id)
        book_id = self._validate_book_id(book_id)
        try:
            with transaction() as conn:
                user = fetch_user(conn, user_id)
                if user is None:
                    raise NotFoundError("user", user_id)
                if not self.policy(user.current_borrowed):
                    raise LimitExceeded(self.policy.limit)

                book = self.catalog.get_book(conn, book_id)
                if book is None:
                    raise NotFoundError("book", book_id)
                if not book.is_available:
                    raise Unavailable()

                now = self._clock()
                loan = Loan(
                    id=str(uuid.uuid4()),
                    book_id=book.id,
                    user_id=user.id,
                    snapshot=LoanSnapshot.capture(book, user),
                    borrowed_at=now,
                    due_date=now + self.loan_period,
                )
                self.ledger.create_loan(conn, loan)
                self.catalog.set_availability(conn, book.id, Availability.UNAVAILABLE)
                cursor = conn.execute(
                    "UPDATE users SET current_borrowed = current_borrowed + 1 "
                    "WHERE id = ? AND current_borrowed < ?",
                    (user.id, self.policy.limit),
                )
                if cursor.rowcount != 1:
                    raise LimitExceeded(self.policy.limit)
        except LendingError as e:
            self._log_rejection("Borrow", user_id, book_id, e)
            raise

        logger.info(f"Book borrowed: loan={loan.id}, user={user_id}, book={book_id}, due={loan.due_date.isoformat()}")
        return loan

    def return_book(self, user_id: str, book_id: int) -> Loan:
        """Settle the active loan of ``book_id`` held by ``user_id``."""
        user_id = self._validate_user_id(user_id)
        book_id = self._validate_book_id(book_id)
        try:
            with transaction() as conn:
                if fetch_user(conn, user_id) is None:
                    raise NotFoundError("user", user_id)
                if self.ledger.find_active_loan(conn, book_id, user_id) is None:
                    raise NoActiveLoan()

                loan = self.ledger.settle_loan(conn, book_id, user_id, self._clock())
                self.catalog.set_availability(conn, book_id, Availability.AVAILABLE)
                cursor = conn.execute(
                    "UPDATE users SET current_borrowed = current_borrowed - 1, "
                    "numbers_of_books_checked_out = numbers_of_books_checked_out + 1 "
                    "WHERE id = ? AND current_borrowed > 0",
                    (user_id,),
                )
                if cursor.rowcount != 1:
                    logger.error(f"Borrow counter out of sync for user {user_id} while returning book {book_id}")
                    raise StoreError()
        except LendingError as e:
            self._log_rejection("Return", user_id, book_id, e)
            raise

        logger.info(f"Book returned: loan={loan.id}, user={user_id}, book={book_id}")
        return loan

    # ------------------------- Queries ------------------------- #
    def list_active(self, user_id: str) -> List[Loan]:
        with connection() as conn:
            return self.ledger.list_active(conn, user_id)

    def list_history(self, user_id: str) -> List[Loan]:
        with connection() as conn:
            return self.ledger.list_history(conn, user_id)

    def has_active_loans(self, user_id: str) -> bool:
        """Used by account deletion to refuse while books are still out."""
        with connection() as conn:
            return self.ledger.count_active(conn, user_id) > 0

    def get_book(self, book_id: int) -> Optional[Book]:
        with connection() as conn:
            return self.catalog.get_book(conn, self._validate_book_id(book_id))

    def close(self) -> None:
        database.close_pool()

    # ------------------------- Utilities ------------------------- #
    @staticmethod
    def _validate_book_id(book_id: object) -> int:
        if isinstance(book_id, bool) or not isinstance(book_id, int) or not 0 < book_id <= MAX_BOOK_ID:
            raise ValidationError("Book ID is required and must be a positive integer.")
        return book_id

    @staticmethod
    def _validate_user_id(user_id: object) -> str:
        if not isinstance(user_id, str) or not user_id.strip():
            raise ValidationError("User ID is required.")
        return user_id

    @staticmethod
    def _log_rejection(operation: str, user_id: str, book_id: int, error: LendingError) -> None:
        # Store failures are already logged with a traceback by the database layer
        if isinstance(error, StoreError):
            return
        logger.info(f"{operation} rejected: user={user_id}, book={book_id}, reason={error.reason}")
