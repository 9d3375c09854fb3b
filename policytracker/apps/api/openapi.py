from __future__ import annotations

from typing import Any

from policytracker.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response("Bad request", "BAD_REQUEST", "Bad request"),
    401: _response("Unauthorized", "AUTH_UNAUTHORIZED", "Missing or invalid bearer token"),
    404: _response("Not found", "NOT_FOUND", "Resource not found"),
    422: _response("Validation error", "REQUEST_VALIDATION_ERROR", "Validation error"),
    500: _response("Internal server error", "INTERNAL_ERROR", "Internal server error"),
}

QUOTA_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    402: _response(
        "Plan limit reached",
        "QUOTA_EXCEEDED",
        "Policy limit reached for the free plan",
        details={"metric": "policies", "limit": 200, "used": 200, "tier": "free"},
    ),
}

PAYMENT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response("Unknown plan", "INVALID_PLAN", "Unknown plan type: Enterprise"),
    429: _response(
        "Rate limited",
        "RATE_LIMITED",
        "Rate limit exceeded. Please try again later.",
        details={"function": "create-razorpay-payment", "limit": 10, "retry_after_ms": 1200000},
    ),
    500: _response("Payment gateway failure", "PAYMENT_GATEWAY_ERROR", "Failed to create payment order"),
    503: _response("Rate limiting unavailable", "SERVICE_UNAVAILABLE", "Rate limiting unavailable"),
}
