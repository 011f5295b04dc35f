from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

import httpx
from pydantic import ValidationError

from stockgate.core.config import get_settings
from stockgate.core.errors import (
    AuthorityRejected,
    AuthServiceError,
    AuthServiceTimeout,
    AuthServiceUnavailable,
    AuthTokenExpired,
    AuthTokenInvalid,
    AuthTokenRevoked,
    GatewayError,
)
from stockgate.domain.tenancy import AccessTokenMeta, TenantIdentity


logger = logging.getLogger(__name__)

# Authority codes that map onto dedicated gateway error types.
_RELAYED_ERRORS: dict[str, type[GatewayError]] = {
    AuthTokenInvalid.code: AuthTokenInvalid,
    AuthTokenExpired.code: AuthTokenExpired,
    AuthTokenRevoked.code: AuthTokenRevoked,
}

_FALLBACK_CODES: dict[int, str] = {
    400: "VALIDATION_ERROR",
    401: "AUTH_TOKEN_INVALID",
    403: "AUTH_TOKEN_INVALID",
}


@dataclass(frozen=True)
class AuthorityValidation:
    tenant: TenantIdentity
    token_meta: AccessTokenMeta


def _json_or_none(response: httpx.Response) -> dict[str, Any] | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


def _rejection(status_code: int, payload: dict[str, Any] | None) -> GatewayError:
    # Relay the authority's own classification; only fill in what it left out.
    payload = payload or {}
    error = payload.get("error") if isinstance(payload.get("error"), dict) else {}
    code = str(error.get("code") or _FALLBACK_CODES.get(status_code, "AUTH_TOKEN_INVALID"))
    message = payload.get("message") or "Access token validation failed"
    details = error.get("details")
    error_cls = _RELAYED_ERRORS.get(code, AuthorityRejected)
    return error_cls(str(message), details=details, status_code=status_code, code=code)


class TenantAuthorityClient:
    """HTTP client for the Tenant Authority's token validation endpoint."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        validate_path: str | None = None,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self._validate_path = validate_path or settings.authority_validate_path
        timeout = timeout_s if timeout_s is not None else settings.authority_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.authority_base_url,
            timeout=httpx.Timeout(timeout),
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    async def validate(self, token: str) -> AuthorityValidation:
        try:
            response = await self._client.post(self._validate_path, json={"token": token})
        except httpx.TimeoutException as exc:
            logger.warning("authority_timeout error=%s", type(exc).__name__)
            raise AuthServiceTimeout(
                details="Authentication service took too long to respond"
            ) from exc
        except httpx.NetworkError as exc:
            logger.warning("authority_unreachable error=%s", type(exc).__name__)
            raise AuthServiceUnavailable(details="Unable to connect to authentication service") from exc
        except httpx.HTTPError as exc:
            logger.warning("authority_transport_error error=%s", type(exc).__name__)
            raise AuthServiceError(details="Unable to validate access token") from exc

        payload = _json_or_none(response)
        if 400 <= response.status_code < 500:
            raise _rejection(response.status_code, payload)
        if response.status_code >= 300 or payload is None:
            logger.warning("authority_bad_response status=%s", response.status_code)
            raise AuthServiceError(details="Unable to validate access token")
        if not payload.get("success", False):
            # A 2xx that still reports failure is treated as a credential rejection.
            raise _rejection(401, payload)

        data = payload.get("data")
        if not isinstance(data, dict):
            raise AuthServiceError(details="Unable to validate access token")
        try:
            tenant = TenantIdentity.model_validate(data.get("tenant") or data.get("client") or {})
            token_meta = AccessTokenMeta.model_validate(
                data.get("tokenMeta") or data.get("patToken") or {}
            )
        except ValidationError as exc:
            logger.warning("authority_payload_invalid errors=%s", len(exc.errors()))
            raise AuthServiceError(details="Unable to validate access token") from exc
        return AuthorityValidation(tenant=tenant, token_meta=token_meta)

    async def aclose(self) -> None:
        await self._client.aclose()
