"""
Application exceptions and their HTTP rendering
"""
import logging
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppException(Exception):
    """Base application exception"""
    def __init__(self, message: str, status_code: int = 500, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class BadRequestException(AppException):
    def __init__(self, message: str = "Bad request", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=400, details=details)


class NotFoundException(AppException):
    """Resource not found exception"""
    def __init__(self, message: str = "Resource not found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=404, details=details)


class ConflictException(AppException):
    """Resource conflict exception"""
    def __init__(self, message: str = "Resource conflict", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=409, details=details)


class PayloadTooLargeException(AppException):
    def __init__(self, message: str = "Uploaded file is too large", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=413, details=details)


class ValidationException(AppException):
    """Validation error exception"""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=422, details=details)


# Input/shape errors: raised before anything touches the database

class TabularParseError(BadRequestException):
    pass


class UnsupportedFileError(TabularParseError):
    pass


class InvalidReferenceMonthError(BadRequestException):
    def __init__(self, value: Any):
        super().__init__(
            "Reference month must be in YYYY-MM format",
            details={"value": value},
        )


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}", exc_info=exc)
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.message}")

    content = {"detail": exc.message}
    content.update(exc.details)
    return JSONResponse(status_code=exc.status_code, content=content)
