"""Error taxonomy and FastAPI handlers."""

import logging
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from writerdesk.core.logging import get_request_id

logger = logging.getLogger("writerdesk")


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class ConfigurationError(AppError):
    """Required external configuration is missing. Not retryable."""
    code = "configuration_error"
    status_code = 500


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class AuthenticationError(AppError):
    """Webhook signature mismatch; the whole delivery is rejected."""
    code = "authentication_error"
    status_code = 400


class UpstreamError(AppError):
    """Billing provider call failed or timed out."""
    code = "upstream_error"
    status_code = 502


def _extract_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or uuid4().hex


def _json_error(status_code: int, code: str, message: str, request_id: str) -> JSONResponse:
    response = JSONResponse(
        status_code=status_code,
        content={
            "error": {"code": code, "message": message, "request_id": request_id},
            "detail": message,
        },
    )
    response.headers["x-request-id"] = request_id
    return response


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    logger.log(
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    return _json_error(exc.status_code, exc.code, exc.message, rid)


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    return _json_error(exc.status_code, code, str(exc.detail or "HTTP error"), rid)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Report the first invalid field as a 400 validation_error."""
    rid = _extract_request_id(request)
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{field}: {first.get('msg')}" if field else "Invalid request body"
    logger.warning("request.invalid", extra={"request_id": rid, "error_code": ValidationError.code, "status": 400})
    return _json_error(400, ValidationError.code, message, rid)


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger.error("unhandled.exception", exc_info=exc, extra={"request_id": rid, "error_code": "internal_error"})
    return _json_error(500, "internal_error", "Unexpected error", rid)
