"""Exception hierarchy for the lease & ledger engine."""

from typing import Any, Callable, Dict, Optional, TypeVar

T = TypeVar("T")


class LeaseLedgerError(Exception):
    """Base exception for all engine errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(LeaseLedgerError):
    """Raised when caller input violates a precondition. No side effects."""


class InvalidStateError(LeaseLedgerError):
    """Raised when an entity is not in a state that permits the operation."""


class NotFoundError(LeaseLedgerError):
    """Raised when a referenced entity does not exist in the caller's company."""


class ConcurrencyConflictError(LeaseLedgerError):
    """Raised when another operation mutated the same entity first."""


class DuplicateKeyError(ConcurrencyConflictError):
    """Raised when a uniqueness key has already been claimed."""


class LedgerInvariantError(LeaseLedgerError):
    """Raised on detected ledger corruption. Never retried or corrected."""


class ConfigurationError(LeaseLedgerError):
    """Raised when configuration is invalid or missing."""


def retry_on_conflict(fn: Callable[[], T], attempts: int = 3) -> T:
    """Call ``fn``, re-invoking it on ConcurrencyConflictError up to ``attempts`` times."""
    if attempts < 1:
        raise ValueError("attempts must be at least 1")
    attempt = 1
    while True:
        try:
            return fn()
        except DuplicateKeyError:
            # A claimed uniqueness key will not free itself on retry
            raise
        except ConcurrencyConflictError:
            if attempt >= attempts:
                raise
            attempt += 1
