"""Typed failures raised by the repositories and the attachment store.

The HTTP layer maps each one to a fixed status code and the response body
``{"detail": <message>, "code": <code>, ...context}``.
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .logging_config import log_event


class AppError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context: Dict[str, Any] = context
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        body = {"detail": self.message, "code": self.code}
        body.update(self.context)
        return body


class NotFound(AppError):
    status_code = 404
    code = "not_found"


class StorageDrift(AppError):
    """Attachment metadata exists but the backing file is gone."""

    status_code = 404
    code = "file_missing"

    def __init__(self, message: str = "File not found on server", **context: Any):
        super().__init__(message, **context)


class Conflict(AppError):
    status_code = 409
    code = "conflict"


class DeletionBlocked(AppError):
    status_code = 409
    code = "deletion_blocked"


class ValidationFailed(AppError):
    status_code = 400
    code = "validation_error"

    def __init__(self, message: str, errors: Optional[List[Dict[str, str]]] = None, **context: Any):
        super().__init__(message, errors=errors or [], **context)


class AuthFailed(AppError):
    status_code = 401
    code = "unauthorized"


class ConfigurationError(AppError):
    status_code = 503
    code = "not_configured"


class IOFailure(AppError):
    status_code = 500
    code = "io_error"


def _field_errors(exc: RequestValidationError) -> List[Dict[str, str]]:
    out = []
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
        out.append({"field": ".".join(loc) or "body", "message": err.get("msg", "invalid value")})
    return out


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        if exc.status_code >= 500:
            log_event(
                "request_failed",
                logging.ERROR,
                request_id=getattr(request.state, "request_id", None),
                path=request.url.path,
                error_type=type(exc).__name__,
                error=exc.message,
            )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        err = ValidationFailed("Validation failed", errors=_field_errors(exc))
        return JSONResponse(status_code=err.status_code, content=err.to_dict())

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        msg = exc.detail if isinstance(exc.detail, str) else "Request failed"
        code = {401: "unauthorized", 403: "forbidden", 404: "not_found", 413: "payload_too_large", 429: "rate_limited"}
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": msg, "code": code.get(exc.status_code, "http_error")},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        log_event(
            "unhandled_error",
            logging.ERROR,
            request_id=getattr(request.state, "request_id", None),
            path=request.url.path,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return JSONResponse(status_code=500, content={"detail": "Internal server error", "code": "internal_error"})
