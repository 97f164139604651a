import logging
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

logger = logging.getLogger("fee-ledger")


class FinanceError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field


class ValidationError(FinanceError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_ERROR"


class StateConflictError(FinanceError):
    """Action attempted in a lifecycle state that does not allow it."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "STATE_CONFLICT"


class NotFoundError(FinanceError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"


class AuthenticationError(FinanceError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "UNAUTHENTICATED"


class PermissionDeniedError(FinanceError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "FORBIDDEN"


class ConcurrencyError(FinanceError):
    """Lock wait expired or a concurrent writer won; safe to retry."""

    status_code = status.HTTP_409_CONFLICT
    code = "CONCURRENCY_CONFLICT"


def _envelope(code: str, message: str, field: Optional[str] = None) -> dict:
    body = {"success": False, "error": code, "message": message}
    if field:
        body["field"] = field
    return body


_HTTP_CODES = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHENTICATED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONCURRENCY_CONFLICT",
    503: "SERVICE_UNAVAILABLE",
}


def register_exception_handlers(app: FastAPI, debug: bool = False):
    @app.exception_handler(FinanceError)
    def finance_error_handler(request: Request, exc: FinanceError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=_envelope(exc.code, exc.message, exc.field))

    @app.exception_handler(RequestValidationError)
    def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        loc = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path")]
        field = ".".join(loc) or None
        message = first.get("msg", "Invalid request")
        if field:
            message = f"{field}: {message}"
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=_envelope("VALIDATION_ERROR", message, field))

    @app.exception_handler(HTTPException)
    def http_error_handler(request: Request, exc: HTTPException):
        code = _HTTP_CODES.get(exc.status_code, "HTTP_ERROR")
        return JSONResponse(status_code=exc.status_code, content=_envelope(code, str(exc.detail)))

    @app.exception_handler(Exception)
    def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        message = str(exc) if debug else "Internal server error"
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=_envelope("INTERNAL_ERROR", message))
