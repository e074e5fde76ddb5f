from typing import Any, Dict, Optional


class CareLinkError(Exception):
    """Base class for user-visible CareLink errors."""

    code = "CARELINK_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(CareLinkError):
    code = "VALIDATION_ERROR"


class NotFoundError(CareLinkError):
    code = "NOT_FOUND"


class ForbiddenError(CareLinkError):
    code = "FORBIDDEN"


class InvalidStateError(CareLinkError):
    """A transition was requested from a state that does not allow it."""

    code = "INVALID_STATE"


class EscrowNotReleasableError(InvalidStateError):
    code = "ESCROW_NOT_RELEASABLE"


class UpstreamError(CareLinkError):
    """A collaborator (spatial index, gateway, messaging) failed or timed out.

    The request itself was valid; callers may retry.
    """

    code = "UPSTREAM_FAILURE"


class GeospatialQueryError(UpstreamError):
    code = "GEOSPATIAL_QUERY_ERROR"


class SignatureMismatchError(CareLinkError):
    code = "SIGNATURE_MISMATCH"
