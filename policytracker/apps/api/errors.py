from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from policytracker.apps.api.response import error_response, is_versioned_request
from policytracker.core.errors import (
    DatabaseError,
    PaymentConfigError,
    PaymentGatewayError,
    UnknownPlanError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    402: "QUOTA_EXCEEDED",
    404: "NOT_FOUND",
    413: "PAYLOAD_TOO_LARGE",
    415: "UNSUPPORTED_MEDIA_TYPE",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from FastAPI HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def _render(
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


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    # Normalize HTTPExceptions into the shared error envelope for v1 routes.
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Starlette raises its own HTTPException for routing errors (404/405).
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    # Validator errors can carry exception objects in ctx; encode before rendering.
    errors = jsonable_encoder(exc.errors())
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": errors}, status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": errors},
    )
    return JSONResponse(content=payload, status_code=422)


async def unknown_plan_exception_handler(request: Request, exc: UnknownPlanError) -> JSONResponse:
    return _render(request, status_code=400, code="INVALID_PLAN", message=str(exc))


async def payment_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Gateway and configuration failures share a 500 without exposing provider detail.
    if isinstance(exc, PaymentConfigError):
        logger.error("payment_gateway_not_configured path=%s", request.url.path)
        return _render(request, status_code=500, code="PAYMENT_GATEWAY_ERROR", message=str(exc))
    status_code = getattr(exc, "status_code", None)
    details = {"gateway_status": status_code} if isinstance(exc, PaymentGatewayError) and status_code else None
    return _render(request, status_code=500, code="PAYMENT_GATEWAY_ERROR", message=str(exc), details=details)


async def database_exception_handler(request: Request, exc: DatabaseError) -> JSONResponse:
    return _render(request, status_code=500, code="INTERNAL_ERROR", message=str(exc) or "Database error")


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.error("unhandled_exception path=%s", request.url.path, exc_info=exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)
