import logging

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

MISSING_CONTACT_INFO = "Email or phone number is required."
INTERNAL_ERROR = "Internal server error."
INVALID_BODY = "Invalid request body."


class ReconciliationError(Exception):
    """Base class for identity reconciliation failures."""


class ContactValidationError(ReconciliationError):
    """Neither an email nor a phone number was submitted."""

    def __init__(self, message: str = MISSING_CONTACT_INFO):
        super().__init__(message)
        self.message = message


class InconsistentDataError(ReconciliationError):
    """A secondary contact points at a primary that cannot be found."""


class StorageError(ReconciliationError):
    """The contact store failed to read or write."""


class StaleResolutionError(ReconciliationError):
    """A primary the plan relied on was demoted before the write started."""


def _error_payload(message: str) -> dict:
    return {"error": message}


def register_error_handlers(app) -> None:
    @app.exception_handler(ContactValidationError)
    async def contact_validation_handler(request: Request, exc: ContactValidationError):
        return JSONResponse(status_code=400, content=_error_payload(exc.message))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        logger.info("Rejected body on %s %s: %s", request.method, request.url.path, exc.errors())
        return JSONResponse(status_code=422, content=_error_payload(INVALID_BODY))

    @app.exception_handler(ReconciliationError)
    async def reconciliation_error_handler(request: Request, exc: ReconciliationError):
        logger.error(
            "Reconciliation failed on %s %s: %s",
            request.method,
            request.url.path,
            exc,
        )
        return JSONResponse(status_code=500, content=_error_payload(INTERNAL_ERROR))

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content=_error_payload(INTERNAL_ERROR))
