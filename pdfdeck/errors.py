"""Error taxonomy and the top-level HTTP error handler."""

from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = structlog.get_logger()


class ApiError(Exception):
    """Exception raised on the request path and rendered as an error body."""

    def __init__(
        self,
        status: int,
        code: str,
        message: str,
        details: Any = None,
    ) -> None:
        self.status = status
        self.code = code
        self.message = message
        self.details = details
        super().__init__(message)


class BadRequestError(ApiError):
    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(400, "BAD_REQUEST", message, details)


class PdfTooLargeError(ApiError):
    def __init__(self, max_bytes: int) -> None:
        super().__init__(
            400,
            "PDF_TOO_LARGE",
            "File exceeds max size",
            {"maxBytes": max_bytes},
        )


class AuthError(ApiError):
    """Authentication failure. The message never says which check failed."""

    def __init__(self) -> None:
        super().__init__(401, "AUTH_FAILED", "Authentication failed")


class NotFoundError(ApiError):
    def __init__(self, message: str = "Job not found") -> None:
        super().__init__(404, "NOT_FOUND", message)


class ConfigError(ApiError):
    """Required configuration is missing."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = missing
        super().__init__(
            500,
            "CONFIG",
            f"Missing required configuration: {', '.join(missing)}",
        )


class UpstreamError(ApiError):
    """A storage, job store or queue call failed."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(500, code, message)


class NonceUnavailableError(ApiError):
    def __init__(self) -> None:
        super().__init__(503, "NONCE_UNAVAILABLE", "Anti-replay unavailable")


class WorkerError(Exception):
    """Exception raised inside the worker; recorded into the job record."""

    def __init__(self, code: str, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(message)


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def error_body(
    code: str,
    message: str,
    request_id: str | None,
    details: Any = None,
) -> dict:
    error: dict[str, Any] = {"code": code, "message": message}
    if details is not None:
        error["details"] = details
    return {"error": error, "requestId": request_id}


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    logger.warning(
        "Request failed",
        status=exc.status,
        error_code=exc.code,
        error_message=exc.message,
    )
    return JSONResponse(
        status_code=exc.status,
        content=error_body(exc.code, exc.message, _request_id(request), exc.details),
    )


async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    details = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    logger.warning("Request validation failed", errors=details)
    return JSONResponse(
        status_code=400,
        content=error_body(
            "BAD_REQUEST", "Invalid request body", _request_id(request), details
        ),
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error")
    return JSONResponse(
        status_code=500,
        content=error_body("INTERNAL", "Internal server error", _request_id(request)),
    )


def register_error_handlers(app: FastAPI) -> None:
    """Install the single top-level error rendering path."""
    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
