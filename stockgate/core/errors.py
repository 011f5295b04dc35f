from __future__ import annotations

from typing import Any


class StockgateError(Exception):
    """Base error for stockgate."""


class GatewayError(StockgateError):
    """Error that maps onto an HTTP status and a stable client-facing code."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    message: str = "Internal server error"

    def __init__(
        self,
        message: str | None = None,
        *,
        details: Any = None,
        headers: dict[str, str] | None = None,
        status_code: int | None = None,
        code: str | None = None,
    ) -> None:
        self.message = message or type(self).message
        self.details = details
        self.headers = headers or {}
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        super().__init__(self.message)


class AuthTokenMissing(GatewayError):
    """Authorization header or bearer token absent."""

    status_code = 401
    code = "AUTH_TOKEN_MISSING"
    message = "Authorization header missing"


class AuthTokenInvalid(GatewayError):
    """Malformed credential or one the authority did not accept."""

    status_code = 401
    code = "AUTH_TOKEN_INVALID"
    message = "Invalid authorization token"


class AuthTokenExpired(AuthTokenInvalid):
    code = "AUTH_TOKEN_EXPIRED"
    message = "Access token has expired"


class AuthTokenRevoked(AuthTokenInvalid):
    code = "AUTH_TOKEN_REVOKED"
    message = "Access token has been revoked"


class AuthorityRejected(GatewayError):
    """Authority 4xx relayed with its own status, code and message."""

    status_code = 401
    code = "AUTH_TOKEN_INVALID"
    message = "Access token validation failed"


class AuthServiceUnavailable(GatewayError):
    status_code = 503
    code = "SERVICE_UNAVAILABLE"
    message = "Authentication service unavailable"


class AuthServiceTimeout(GatewayError):
    status_code = 504
    code = "SERVICE_TIMEOUT"
    message = "Authentication service timeout"


class AuthServiceError(GatewayError):
    status_code = 500
    code = "AUTH_SERVICE_ERROR"
    message = "Authentication service error"


class RateLimitExceeded(GatewayError):
    status_code = 429
    code = "RATE_LIMIT_EXCEEDED"
    message = "Too many requests"


class RateLimitUnavailable(GatewayError):
    """Counter store unreachable while rate limiting fails closed."""

    status_code = 503
    code = "RATE_LIMIT_UNAVAILABLE"
    message = "Rate limiting unavailable"


class TenantConnectionFailed(GatewayError):
    """Tenant database could not be reached; the next request retries from scratch."""

    status_code = 503
    code = "TENANT_CONNECTION_FAILED"
    message = "Tenant database unavailable"


class InternalError(GatewayError):
    status_code = 500
    code = "INTERNAL_ERROR"
    message = "Internal server error"


class ModelSchemaConflict(InternalError):
    """A model name was requested with a schema other than the one already registered."""
