from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from themedraft.apps.api.response import error_response, is_versioned_request
from themedraft.core.errors import (
    AdmissionDeniedError,
    InvalidSubmissionError,
    JobDispatchError,
    JobNotFoundError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def _error_json(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": message}, status_code=status_code, headers=headers)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Covers both FastAPI and Starlette HTTPException.
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Malformed submissions are a client error (400), not an entity error.
    return _error_json(
        request,
        status_code=400,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )


async def invalid_submission_handler(request: Request, exc: InvalidSubmissionError) -> JSONResponse:
    return _error_json(request, status_code=400, code="INVALID_SUBMISSION", message=str(exc))


async def admission_denied_handler(request: Request, exc: AdmissionDeniedError) -> JSONResponse:
    # Denials never create a job; clients get the reason and a wait hint.
    details: dict[str, Any] | None = None
    headers: dict[str, str] | None = None
    if exc.retry_after is not None:
        details = {"retry_after": exc.retry_after}
        headers = {"Retry-After": str(exc.retry_after)}
    return _error_json(
        request,
        status_code=429,
        code=exc.code,
        message=str(exc),
        details=details,
        headers=headers,
    )


async def job_not_found_handler(request: Request, exc: JobNotFoundError) -> JSONResponse:
    return _error_json(request, status_code=404, code="NOT_FOUND", message=str(exc) or "Job not found")


async def job_dispatch_handler(request: Request, exc: JobDispatchError) -> JSONResponse:
    return _error_json(
        request,
        status_code=503,
        code="SERVICE_UNAVAILABLE",
        message=str(exc),
        details={"job_id": exc.job_id},
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.error("unhandled_exception path=%s", request.url.path, exc_info=exc)
    return _error_json(request, status_code=500, code="INTERNAL_ERROR", message="Internal server error")
