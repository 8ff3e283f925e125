import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base for errors that map onto a client-facing response."""

    kind = "error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(AppError):
    kind = "validation_error"
    status_code = status.HTTP_400_BAD_REQUEST


class AuthError(AppError):
    kind = "auth_error"
    status_code = status.HTTP_401_UNAUTHORIZED


class NotFoundError(AppError):
    kind = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class NotConfiguredError(AppError):
    kind = "not_configured"
    status_code = status.HTTP_501_NOT_IMPLEMENTED


class StorageError(AppError):
    """Disk read or write failure. The message may hold paths; never sent to clients."""

    kind = "storage_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


def error_body(kind: str, message: str) -> dict:
    return {"error": kind, "message": message}


async def _app_error_handler(request: Request, exc: AppError):
    if isinstance(exc, StorageError):
        logger.error(f"Storage failure on {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.kind, "Internal storage error"),
        )
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.kind, exc.message))


async def _request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_body(ValidationError.kind, message),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, _app_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
