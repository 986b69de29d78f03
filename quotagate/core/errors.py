"""Error normalization and handlers."""

import logging
import builtins
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from quotagate.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id
        self.context = dict(context or {})


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class UnauthorizedError(AppError):
    code = "unauthorized"
    status_code = 401


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class RateLimitError(AppError):
    code = "RATE_LIMITED"
    status_code = 429


class EntitlementDeniedError(AppError):
    """A decision-function denial surfaced over HTTP.

    `code` is the stable reason code (AI_DISABLED, QUOTA_EXCEEDED, ...).
    """
    status_code = 403

    def __init__(self, reason: str, message: str, *, tier: str, remaining: int, request_id: Optional[str] = None):
        super().__init__(
            message,
            code=reason,
            status_code=429 if reason == "QUOTA_EXCEEDED" else 403,
            request_id=request_id,
            context={"plan": tier, "remaining": remaining},
        )
        self.reason = reason
        self.tier = tier
        self.remaining = remaining


class StoreUnavailableError(AppError):
    """Store or transport failure; the caller may retry. Never an implicit allow."""
    code = "STORE_UNAVAILABLE"
    status_code = 503
    retryable = True


class AdminAuditWriteError(AppError):
    code = "admin_audit_failed"
    status_code = 500


class AIServiceUnavailableError(AppError):
    code = "ai_unconfigured"
    status_code = 503


class AIUpstreamError(AppError):
    code = "ai_upstream_error"
    status_code = 502
    retryable = True


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str, context: Optional[Dict[str, Any]] = None, retryable: bool = False) -> dict:
    error: Dict[str, Any] = {"code": code, "message": message, "request_id": request_id}
    if retryable:
        error["retryable"] = True
    if context:
        error.update(context)
    return {
        "error": error,
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid, exc.context, exc.retryable)
    logger = logging.getLogger("quotagate")
    if isinstance(exc, EntitlementDeniedError):
        log_level = logging.INFO
    else:
        log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    if exc.retryable and exc.status_code == 503:
        response.headers["Retry-After"] = "1"
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("quotagate")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def request_validation_handler(request: Request, exc: RequestValidationError):
    rid = _extract_request_id(request)
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{field}: {first.get('msg', 'invalid value')}" if field else first.get("msg", "Invalid request")
    payload = _error_payload("validation_error", message, rid)
    logging.getLogger("quotagate").warning(
        "request.invalid", extra={"request_id": rid, "error_code": "validation_error", "status": 400}
    )
    response = JSONResponse(status_code=400, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("quotagate")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
