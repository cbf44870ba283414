"""Tagged error taxonomy for lending operations.

Every error raised by the engine carries an ``ErrorKind`` so callers (the
HTTP layer, the orchestrators) branch on the kind, never on message text.
"""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Error categories"""
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    POST_COMMIT_FAILURE = "post_commit_failure"
    COMPENSATION_FAILURE = "compensation_failure"
    INJECTED_FAULT = "injected_fault"


class LendingError(Exception):
    """Base exception for all lending errors."""

    kind = ErrorKind.VALIDATION
    http_status = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {"error": self.kind.value, "detail": self.message}


class ValidationError(LendingError):
    """Raised when input or entity state does not allow the operation."""
    kind = ErrorKind.VALIDATION
    http_status = 400


class NotFoundError(LendingError):
    """Raised when a referenced entity does not exist."""
    kind = ErrorKind.NOT_FOUND
    http_status = 404


class ConflictError(LendingError):
    """Raised when the operation collides with existing state (duplicates, repeats)."""
    kind = ErrorKind.CONFLICT
    http_status = 409


class InsufficientFundsError(LendingError):
    """Raised when a source account or the platform cannot cover an amount."""
    kind = ErrorKind.INSUFFICIENT_FUNDS
    http_status = 400


class InjectedFault(LendingError):
    """Raised at a configured fault injection point."""
    kind = ErrorKind.INJECTED_FAULT
    http_status = 500

    def __init__(self, point: str):
        super().__init__(f"Injected fault at {point}")
        self.point = point


class PostCommitFailure(LendingError):
    """Raised when a step after commit failed and the operation was compensated."""
    kind = ErrorKind.POST_COMMIT_FAILURE
    http_status = 500

    def __init__(self, message: str, original_error: Optional[BaseException] = None):
        super().__init__(message)
        self.original_error = original_error
        self.compensated = True


class CompensationFailure(LendingError):
    """Raised when automatic compensation of a post-commit failure itself failed."""
    kind = ErrorKind.COMPENSATION_FAILURE
    http_status = 500

    def __init__(self, message: str, original_error: Optional[BaseException] = None,
                 compensation_error: Optional[BaseException] = None):
        super().__init__(message)
        self.original_error = original_error
        self.compensation_error = compensation_error
        self.compensated = False
