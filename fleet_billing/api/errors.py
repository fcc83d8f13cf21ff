"""
Mapping of ledger exceptions to HTTP errors
"""

from fastapi import HTTPException

from ..exceptions import ConcurrencyConflictError, FinancingNotFoundError, QuotaNotFoundError


def to_http_error(error: Exception) -> HTTPException:
    if isinstance(error, (FinancingNotFoundError, QuotaNotFoundError)):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, ConcurrencyConflictError):
        return HTTPException(status_code=409, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))
