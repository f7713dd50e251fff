"""Error taxonomy for the lending core.

Every rejection carries a stable ``reason`` code so clients can tell a
permanent refusal from one that may resolve later (``retryable``).
"""

from __future__ import annotations


class LendingError(Exception):
    """Base class for all expected lending outcomes."""

    reason = "lending_error"
    status_code = 400
    retryable = False

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message())

    def default_message(self) -> str:
        return "Request could not be completed."

    @property
    def message(self) -> str:
        return str(self.args[0]) if self.args else self.default_message()

    def to_dict(self) -> dict:
        return {"error": self.reason, "message": self.message, "retryable": self.retryable}


class ValidationError(LendingError):
    reason = "validation_error"

    def default_message(self) -> str:
        return "Invalid input."


class NotFoundError(LendingError):
    reason = "not_found"
    status_code = 404

    def __init__(self, resource: str, identifier: object = None, message: str | None = None) -> None:
        self.resource = resource
        self.identifier = identifier
        super().__init__(message)

    def default_message(self) -> str:
        return f"{self.resource.capitalize()} not found."

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["resource"] = self.resource
        return payload


class LimitExceeded(LendingError):
    reason = "limit_exceeded"
    status_code = 403
    retryable = True

    def __init__(self, limit: int, message: str | None = None) -> None:
        self.limit = limit
        super().__init__(message)

    def default_message(self) -> str:
        return f"User has reached the maximum borrowing limit of {self.limit}."


class Unavailable(LendingError):
    reason = "unavailable"
    retryable = True

    def default_message(self) -> str:
        return "Book is not available for borrowing."


class NoActiveLoan(LendingError):
    reason = "no_active_loan"

    def default_message(self) -> str:
        return "This book is not currently borrowed by this user."


class ConflictError(LendingError):
    reason = "conflict"
    status_code = 409
    retryable = True

    def default_message(self) -> str:
        return "Book already has an active loan."


class Unauthenticated(LendingError):
    """No caller identity reached the API."""

    reason = "unauthenticated"
    status_code = 401

    def default_message(self) -> str:
        return "Unauthorized: User not found in token."


class Forbidden(LendingError):
    reason = "forbidden"
    status_code = 403

    def default_message(self) -> str:
        return "Forbidden."


class InvalidApiKey(Forbidden):
    reason = "invalid_api_key"

    def default_message(self) -> str:
        return "Could not validate credentials."


class ActiveLoansOutstanding(LendingError):
    reason = "active_loans"
    status_code = 403
    retryable = True

    def default_message(self) -> str:
        return "Account cannot be deleted while books are still borrowed."


class StoreError(LendingError):
    """Transport or transaction failure; details stay in the logs."""

    reason = "store_error"
    status_code = 500

    def default_message(self) -> str:
        return "An unexpected error occurred while processing the request."

    def to_dict(self) -> dict:
        return {"error": self.reason, "message": self.default_message(), "retryable": self.retryable}
