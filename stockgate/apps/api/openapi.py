from __future__ import annotations

from typing import Any

from stockgate.apps.api.response import API_VERSION, ErrorEnvelope


def _error_example(*, code: str, message: str, details: Any = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    return {
        "success": False,
        "message": message,
        "error": {"code": code, "details": details},
        "meta": {"requestId": "req_example", "apiVersion": API_VERSION},
    }


def _response(description: str, *, code: str, message: str, details: Any = None) -> dict[str, Any]:
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
    401: _response(
        "Unauthorized",
        code="AUTH_TOKEN_MISSING",
        message="Access token required",
        details="Authorization header is required",
    ),
    404: _response("Not found", code="ENDPOINT_NOT_FOUND", message="API endpoint not found"),
    422: _response("Validation error", code="VALIDATION_ERROR", message="Validation error"),
    429: _response(
        "Rate limited",
        code="RATE_LIMIT_EXCEEDED",
        message="Too many requests",
        details={"tier": "sustained", "limit": 100, "windowSeconds": 3600, "retryAfter": 1800},
    ),
    500: _response("Internal error", code="INTERNAL_ERROR", message="Internal server error"),
    503: _response(
        "Dependency unavailable",
        code="SERVICE_UNAVAILABLE",
        message="Authentication service unavailable",
    ),
    504: _response(
        "Dependency timeout",
        code="SERVICE_TIMEOUT",
        message="Authentication service timeout",
    ),
}
