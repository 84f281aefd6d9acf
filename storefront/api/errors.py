"""
Mapping of domain errors to HTTP responses.

Every router catches ``CommerceError`` and re-raises the result of
``to_http_exception`` so that clients always receive
``{"message", "code", "context"}`` details with a stable status code.
"""

from fastapi import HTTPException, status

from storefront.core.errors import (
    CommerceError,
    ConflictError,
    ExternalGatewayError,
    InsufficientInventoryError,
    NotFoundError,
    SecurityError,
    StateError,
    StorageError,
    ValidationError,
)
from storefront.core.logging import get_logger

logger = get_logger(__name__)

STATUS_BY_ERROR: tuple[tuple[type[CommerceError], int], ...] = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (SecurityError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (InsufficientInventoryError, status.HTTP_409_CONFLICT),
    (StateError, status.HTTP_409_CONFLICT),
    (ExternalGatewayError, status.HTTP_502_BAD_GATEWAY),
    (StorageError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def status_for(error: CommerceError) -> int:
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def to_http_exception(error: CommerceError, **extra: object) -> HTTPException:
    """
    Build the HTTPException for a domain error.

    Args:
        error: Domain error raised by a service
        **extra: Additional detail fields, e.g. the existing refund for a
            duplicate refund conflict
    """
    status_code = status_for(error)
    log = logger.warning if status_code < 500 else logger.error
    log(
        "Request rejected",
        code=error.code,
        status_code=status_code,
        error=error.message,
    )
    detail = error.to_detail()
    detail.update(extra)
    return HTTPException(status_code=status_code, detail=detail)
