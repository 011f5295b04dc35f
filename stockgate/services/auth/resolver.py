from __future__ import annotations

from dataclasses import dataclass
import hashlib
import logging

from stockgate.core.errors import AuthServiceError, AuthTokenInvalid, AuthTokenMissing, GatewayError
from stockgate.domain.tenancy import AccessTokenMeta, TenantIdentity
from stockgate.services.auth.authority import TenantAuthorityClient


logger = logging.getLogger(__name__)

_BEARER_PREFIX = "Bearer "


@dataclass(frozen=True)
class ResolvedTenant:
    identity: TenantIdentity
    token_meta: AccessTokenMeta


def token_fingerprint(token: str) -> str:
    # Short, non-reversible handle for logs and counter keys.
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:16]


def parse_bearer_token(header_value: str | None) -> str:
    # Purely syntactic; nothing here touches the network.
    if not header_value:
        raise AuthTokenMissing(details="Authorization header is required")
    if not header_value.startswith(_BEARER_PREFIX):
        raise AuthTokenInvalid(
            "Invalid authorization format",
            details='Authorization header must start with "Bearer "',
        )
    token = header_value[len(_BEARER_PREFIX):].strip()
    if not token:
        raise AuthTokenMissing("Access token missing", details="Access token is required")
    return token


class TenantResolver:
    """Turns a bearer credential into a verified tenant identity.

    Every call is revalidated against the Tenant Authority. Nothing is cached,
    so a revoked token stops working on its very next request.
    """

    def __init__(self, authority: TenantAuthorityClient) -> None:
        self._authority = authority

    async def resolve(self, header_value: str | None) -> ResolvedTenant:
        token = parse_bearer_token(header_value)
        try:
            validation = await self._authority.validate(token)
        except GatewayError as exc:
            logger.info(
                "tenant_resolution_failed code=%s token=%s", exc.code, token_fingerprint(token)
            )
            raise
        except Exception as exc:  # noqa: BLE001 - never leak unexpected failures to clients
            logger.exception("tenant_resolution_error token=%s", token_fingerprint(token))
            raise AuthServiceError(details="Unable to validate access token") from exc
        return ResolvedTenant(identity=validation.tenant, token_meta=validation.token_meta)

    async def aclose(self) -> None:
        await self._authority.aclose()
