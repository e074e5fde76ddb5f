from typing import NoReturn

from fastapi import HTTPException

from carelink.errors import (
    CareLinkError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    SignatureMismatchError,
    UpstreamError,
    ValidationError,
)

# First match wins; subclasses come before their bases.
STATUS_BY_ERROR = (
    (NotFoundError, 404),
    (SignatureMismatchError, 403),
    (ForbiddenError, 403),
    (InvalidStateError, 409),
    (UpstreamError, 503),
    (ValidationError, 400),
)


def status_for_error(exc: CareLinkError) -> int:
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 400


def raise_service_http_error(exc: CareLinkError) -> NoReturn:
    raise HTTPException(
        status_code=status_for_error(exc),
        detail=exc.message,
        headers={"X-Error-Code": exc.code},
    ) from exc
