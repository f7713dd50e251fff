import logging
import sqlite3
import uuid
from typing import TYPE_CHECKING, Dict, Optional

from lending.database import connection, transaction
from lending.errors import ActiveLoansOutstanding, Forbidden, NotFoundError, ValidationError
from lending.models import User, UserPatch

if TYPE_CHECKING:
    from lending.library import Library

logger = logging.getLogger(__name__)

# Columns a profile patch may touch
_PATCHABLE_COLUMNS = ("email", "name", "surname", "avatar_url")
# Patchable columns that may not be blanked
_REQUIRED_COLUMNS = ("email", "name", "surname")


def fetch_user(conn: sqlite3.Connection, user_id: str) -> Optional[User]:
    row = conn.execute(
        """
        SELECT id, name, surname, email, avatar_url, is_admin,
               current_borrowed, numbers_of_books_checked_out
        FROM users WHERE id = ?
        """,
        (user_id,),
    ).fetchone()
    return User.from_row(dict(row)) if row else None


class Accounts:
    """User account management around the lending desk.

    Deletion asks the lending desk whether the user still holds books.
    """

    def __init__(self, library: "Library") -> None:
        self.library = library

    def create_user(self, name: str, surname: str, email: Optional[str] = None, is_admin: bool = False) -> User:
        if not (name or "").strip() or not (surname or "").strip():
            raise ValidationError("Name and surname are required.")
        email = (email or "").strip() or None
        user_id = str(uuid.uuid4())
        with transaction() as conn:
            try:
                conn.execute(
                    "INSERT INTO users (id, name, surname, email, is_admin) VALUES (?, ?, ?, ?, ?)",
                    (user_id, name.strip(), surname.strip(), email, int(is_admin)),
                )
            except sqlite3.IntegrityError as e:
                raise ValidationError(f"User with email {email} already exists.") from e
            user = fetch_user(conn, user_id)
        logger.info(f"User created: id={user_id}")
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with connection() as conn:
            return fetch_user(conn, user_id)

    def update_profile(self, requester_id: str, user_id: str, patch: UserPatch) -> User:
        """Apply ``patch`` to the requester's own profile."""
        if requester_id != user_id:
            raise Forbidden("Forbidden: You can only update your own data")

        changes = self._clean_changes(patch)
        with transaction() as conn:
            if fetch_user(conn, user_id) is None:
                raise NotFoundError("user", user_id)
            if changes:
                assignments = ", ".join(f"{column} = ?" for column in changes)
                try:
                    conn.execute(
                        f"UPDATE users SET {assignments} WHERE id = ?",
                        (*changes.values(), user_id),
                    )
                except sqlite3.IntegrityError as e:
                    raise ValidationError("Email is already in use.") from e
            user = fetch_user(conn, user_id)
        if changes:
            logger.info(f"User {user_id} updated fields: {', '.join(changes)}")
        return user

    @staticmethod
    def _clean_changes(patch: UserPatch) -> Dict[str, Optional[str]]:
        """Trim patched values; an empty avatar URL clears it."""
        changes = {}
        for column, value in patch.changes().items():
            if column not in _PATCHABLE_COLUMNS:
                continue
            value = value.strip() if isinstance(value, str) else value
            if not value and column in _REQUIRED_COLUMNS:
                raise ValidationError(f"'{column}' cannot be blank.")
            changes[column] = value or None
        return changes

    def delete_account(self, requester_id: str, user_id: str) -> None:
        """Delete ``user_id`` on behalf of ``requester_id`` (self or admin).

        Refused while the account still has borrowed books; the ledger keeps
        its rows with the user reference cleared.
        """
        if not requester_id:
            raise ValidationError("Requester ID is required.")
        if not user_id:
            raise ValidationError("User ID is required.")

        requester = self.get_user(requester_id)
        if requester is None:
            raise NotFoundError("user", requester_id, "Requester not found.")
        target = self.get_user(user_id)
        if target is None:
            raise NotFoundError("user", user_id, "User to be deleted not found.")
        if user_id != requester_id and not requester.is_admin:
            raise Forbidden("Forbidden: You can only delete your own account or have admin privileges")
        if self.library.has_active_loans(user_id):
            raise ActiveLoansOutstanding()

        with transaction() as conn:
            # Re-check under the write lock: a borrow may have landed in between
            active = conn.execute(
                "SELECT COUNT(*) FROM borrowed_books WHERE user_id = ? AND status = 'borrowed'",
                (user_id,),
            ).fetchone()[0]
            if active:
                raise ActiveLoansOutstanding()
            conn.execute("UPDATE borrowed_books SET user_id = NULL WHERE user_id = ?", (user_id,))
            conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
        logger.info(f"User deleted: id={user_id}, by={requester_id}")
