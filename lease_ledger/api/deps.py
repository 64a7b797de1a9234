"""
Request dependencies and error mapping
"""

from enum import Enum
from typing import Optional, Type, TypeVar

from fastapi import Header, HTTPException

from ..exceptions import (
    LeaseLedgerError, ValidationError, InvalidStateError, NotFoundError,
    ConcurrencyConflictError, LedgerInvariantError
)
from ..logging_config import get_logger


logger = get_logger("lease_ledger.api")

E = TypeVar("E", bound=Enum)

_STATUS_CODES = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (InvalidStateError, 409),
    (ConcurrencyConflictError, 409),
)


def get_company_id(x_company_id: str = Header(..., description="Company the request acts for")) -> str:
    """Company id from the X-Company-Id header"""
    if not x_company_id.strip():
        raise HTTPException(status_code=400, detail="X-Company-Id header is empty")
    return x_company_id.strip()


def http_error(error: LeaseLedgerError) -> HTTPException:
    """Map an engine error to the HTTP status of its kind"""
    for error_type, status_code in _STATUS_CODES:
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=error.message)
    if isinstance(error, LedgerInvariantError):
        logger.error(f"Ledger invariant violated: {error.message}", extra={"extra": error.details})
    return HTTPException(status_code=500, detail=error.message)


def parse_enum(enum_type: Type[E], value: Optional[str]) -> Optional[E]:
    """Enum member for a query/body value; unknown values are a 400"""
    if value is None:
        return None
    try:
        return enum_type(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {enum_type.__name__} value: {value}")
