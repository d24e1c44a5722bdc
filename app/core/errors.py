import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base class for errors that map onto an HTTP response"""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "INTERNAL_ERROR"
    title = "Internal Server Error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.title, "message": self.message, "code": self.code}


class ValidationError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_ERROR"
    title = "Validation Error"

    def __init__(self, message: str, details: Optional[List[Dict[str, str]]] = None):
        super().__init__(message)
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.details:
            body["details"] = self.details
        return body


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"
    title = "Not Found"

    def __init__(self, resource: str, resource_id: Optional[str] = None):
        suffix = f" with id {resource_id}" if resource_id else ""
        super().__init__(f"{resource}{suffix} not found")
        self.resource_id = resource_id


class ProcessingError(AppError):
    """Fetch or render failure: network, content type, size, decoding"""

    code = "PROCESSING_ERROR"
    title = "Processing Error"


class StorageError(AppError):
    """Filesystem or database failure while reading/writing artifacts or records"""

    code = "STORAGE_ERROR"
    title = "Storage Error"


def _field_path(loc) -> str:
    # Drop the leading "body"/"path" segment FastAPI adds
    parts = [str(p) for p in loc[1:]] if len(loc) > 1 else [str(p) for p in loc]
    return ".".join(parts)


def register_exception_handlers(app: FastAPI, debug: bool = False) -> None:
    """Install JSON error handlers for the app's error taxonomy"""

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
        else:
            logger.info(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        error = ValidationError(
            "Invalid request data",
            details=[
                {"field": _field_path(err.get("loc", ())), "message": err.get("msg", "")}
                for err in exc.errors()
            ],
        )
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        message = str(exc) if debug else "Internal Server Error"
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal Server Error", "message": message},
        )
