from typing import Optional

from lending.config import settings


def can_borrow(current_borrowed: int, limit: Optional[int] = None) -> bool:
    """True iff a user holding ``current_borrowed`` books may take one more."""
    if limit is None:
        limit = settings.borrow_limit
    return current_borrowed < limit


class BorrowLimitPolicy:
    """Borrow cap injected into the lending desk."""

    def __init__(self, limit: Optional[int] = None) -> None:
        self.limit = settings.borrow_limit if limit is None else limit

    def __call__(self, current_borrowed: int) -> bool:
        return can_borrow(current_borrowed, self.limit)
