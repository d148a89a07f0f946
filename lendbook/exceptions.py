"""
Error taxonomy for lending operations.

Every core operation fails fast with one of these kinds. The HTTP layer maps
them onto status codes (see ``lendbook.api.errors``).
"""

from typing import Optional


class LendingError(Exception):
    """Base exception for all lending errors"""

    error_code = "lending_error"

    def __init__(self, message: str, error_code: Optional[str] = None):
        self.message = message
        if error_code:
            self.error_code = error_code
        super().__init__(self.message)


class NotFoundError(LendingError):
    """Referenced loan, payment, customer or invoice does not exist"""

    error_code = "not_found"


class InvalidInputError(LendingError, ValueError):
    """Malformed numeric ranges or unknown enum values"""

    error_code = "invalid_input"


class InvalidStateError(LendingError):
    """Operation forbidden by the current loan or payment state"""

    error_code = "invalid_state"


class ConcurrencyConflictError(InvalidStateError):
    """Loan was modified by another writer since it was read"""

    error_code = "concurrency_conflict"


class InvalidOperationError(LendingError):
    """State-compatible but business-forbidden action"""

    error_code = "invalid_operation"


class NotAllowedError(LendingError):
    """Time-boxed mutation window has expired"""

    error_code = "not_allowed"


class AlreadySettledError(LendingError):
    """Payment attempted on a loan with nothing left to pay"""

    error_code = "already_settled"
