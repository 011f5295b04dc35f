from __future__ import annotations

from contextlib import AsyncExitStack
import logging

from fastapi import Request, Response

from stockgate.apps.api.rate_limit import (
    LimitTier,
    RateLimiter,
    burst_subject,
    burst_tier,
    client_ip,
    ip_burst_tier,
    ip_sustained_tier,
    rate_limit_headers,
    sustained_tier,
    throttle_error,
)
from stockgate.core.config import Settings, get_settings
from stockgate.core.errors import RateLimitUnavailable
from stockgate.domain.tenancy import AccessTokenMeta, TenantIdentity
from stockgate.persistence.models import ModelSchema, TenantModel
from stockgate.persistence.registry import ConnectionEntry, ConnectionRegistry
from stockgate.services.auth.authority import TenantAuthorityClient
from stockgate.services.auth.resolver import TenantResolver
from stockgate.services.counters import build_counter_store


logger = logging.getLogger(__name__)

AUTH_HEADER = "Authorization"


class TenantContext:
    """Request-scoped view of the caller's tenant.

    The first model acquisition takes a lease on the tenant's registry entry
    and keeps it until the request finishes, so the idle sweeper cannot close
    a connection that a handler is still using.
    """

    def __init__(
        self,
        *,
        identity: TenantIdentity,
        token_meta: AccessTokenMeta,
        registry: ConnectionRegistry,
    ) -> None:
        self.identity = identity
        self.token_meta = token_meta
        self._registry = registry
        self._stack = AsyncExitStack()
        self._entry: ConnectionEntry | None = None

    @property
    def tenant_id(self) -> str:
        return self.identity.tenant_id

    @property
    def database_name(self) -> str:
        return self.identity.database_name

    async def acquire_model(self, model_name: str, schema: ModelSchema) -> TenantModel:
        if self._entry is None:
            self._entry = await self._stack.enter_async_context(self._registry.lease(self.database_name))
        return self._registry.model_for(self._entry, model_name, schema)

    async def aclose(self) -> None:
        self._entry = None
        await self._stack.aclose()


class RequestPipeline:
    """Burst limit, per-IP limits, tenant resolution, plan limit, in that order.

    Each stage raises to short-circuit; nothing after a rejected stage runs.
    """

    def __init__(
        self,
        *,
        resolver: TenantResolver,
        limiter: RateLimiter,
        registry: ConnectionRegistry,
        settings: Settings | None = None,
    ) -> None:
        self.resolver = resolver
        self.limiter = limiter
        self.registry = registry
        self._settings = settings or get_settings()

    async def _enforce(
        self,
        tier: LimitTier,
        subject: str,
        response: Response,
        *,
        headers: dict[str, str] | None = None,
    ) -> None:
        if not self._settings.rate_limit_enabled:
            return
        try:
            decision = await self.limiter.hit(tier, subject)
        except Exception as exc:  # noqa: BLE001 - guard against counter store connectivity failures
            if self._settings.rl_fail_mode.lower() == "closed":
                raise RateLimitUnavailable() from exc
            response.headers["X-RateLimit-Status"] = "degraded"
            logger.warning("rate_limit_degraded tier=%s error=%s", tier.name, type(exc).__name__)
            return
        if not decision.allowed:
            logger.warning(
                "rate_limited tier=%s count=%s limit=%s",
                decision.tier,
                decision.count,
                decision.limit,
                extra={"tier": decision.tier},
            )
            raise throttle_error(decision, headers=headers)

    async def admit(self, request: Request, response: Response) -> TenantContext:
        settings = self._settings
        await self._enforce(burst_tier(settings), burst_subject(request, AUTH_HEADER), response)
        ip_subject = f"ip:{client_ip(request)}"
        for ip_tier in (ip_burst_tier(settings), ip_sustained_tier(settings)):
            if ip_tier is not None:
                await self._enforce(ip_tier, ip_subject, response)

        resolved = await self.resolver.resolve(request.headers.get(AUTH_HEADER))
        identity = resolved.identity
        request.state.tenant = identity
        request.state.tenant_id = identity.tenant_id
        logger.debug(
            "tenant_admitted tenant=%s plan=%s",
            identity.tenant_id,
            identity.plan.value,
            extra={
                "tenant_id": identity.tenant_id,
                "request_id": getattr(request.state, "request_id", None),
                "path": request.url.path,
            },
        )

        headers = rate_limit_headers(identity.plan, settings)
        await self._enforce(
            sustained_tier(identity.plan, settings),
            f"tenant:{identity.tenant_id}",
            response,
            headers=headers,
        )
        response.headers.update(headers)
        return TenantContext(identity=identity, token_meta=resolved.token_meta, registry=self.registry)

    def start(self) -> None:
        self.registry.start()

    async def aclose(self) -> None:
        await self.registry.aclose()
        await self.resolver.aclose()
        await self.limiter.aclose()


def build_pipeline(settings: Settings | None = None) -> RequestPipeline:
    # Wire production collaborators from settings; tests construct their own.
    settings = settings or get_settings()
    return RequestPipeline(
        resolver=TenantResolver(TenantAuthorityClient()),
        limiter=RateLimiter(build_counter_store(), prefix=settings.rl_redis_prefix),
        registry=ConnectionRegistry(),
        settings=settings,
    )
