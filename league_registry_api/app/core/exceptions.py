"""
Exception types raised by the service layer.

Services raise plain ``ValueError`` for invalid input and business
rules, and the subclasses below when the endpoint needs to answer with
a more specific status code.  ``http_error`` performs that mapping so
every router translates errors the same way.
"""

from typing import Optional

from fastapi import HTTPException, status


class NotFoundError(LookupError):
    """A referenced row does not exist (404)."""


class ConflictError(ValueError):
    """The request collides with an existing row or hold (409)."""


class CapacityError(ValueError):
    """A registration category is full (400 with a waitlist hint)."""

    def __init__(self, message: str = "This category is at capacity", should_show_waitlist: bool = True):
        super().__init__(message)
        self.should_show_waitlist = should_show_waitlist


class PaymentProviderError(RuntimeError):
    """The payment processor rejected or failed a synchronous call (502)."""


class StagingRecordMissingError(RuntimeError):
    """A paid charge has no accounting staging record to attach to."""

    def __init__(self, message: str, staging_id: Optional[int] = None):
        super().__init__(message)
        self.staging_id = staging_id


def http_error(exc: Exception) -> HTTPException:
    """Translate a service exception into an ``HTTPException``."""
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, CapacityError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": str(exc), "shouldShowWaitlist": exc.should_show_waitlist},
        )
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, PaymentProviderError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


# Exceptions routers translate with ``http_error``.
SERVICE_ERRORS = (ValueError, LookupError, PaymentProviderError)
