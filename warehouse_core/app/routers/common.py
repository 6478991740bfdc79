"""Shared helpers for the API routers."""

import logging
from typing import Optional

from fastapi import HTTPException, Request, status

from ..services.ledger import (
    LedgerError, NotFoundError, InvalidOperationError, LedgerConflictError, AccessDeniedError,
)

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidOperationError: status.HTTP_400_BAD_REQUEST,
    LedgerConflictError: status.HTTP_409_CONFLICT,
    AccessDeniedError: status.HTTP_403_FORBIDDEN,
}

INTEGRITY_DETAIL = "Concurrent update detected; the record was changed by another request"


def http_error(exc: LedgerError) -> HTTPException:
    """Map a service-layer error onto the matching HTTP status."""
    for error_type, code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return HTTPException(status_code=code, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def conflict_error(exc: Exception) -> HTTPException:
    logger.warning("Integrity error: %s", exc)
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=INTEGRITY_DETAIL)


def client_ip(request: Optional[Request]) -> Optional[str]:
    if request is None or request.client is None:
        return None
    return request.client.host
