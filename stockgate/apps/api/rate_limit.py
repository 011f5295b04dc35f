from __future__ import annotations

from dataclasses import dataclass
import logging
import math
import time
from typing import Callable

from fastapi import Request

from stockgate.core.config import Settings, get_settings
from stockgate.core.errors import RateLimitExceeded
from stockgate.domain.tenancy import SubscriptionPlan, normalize_plan
from stockgate.services.auth.resolver import token_fingerprint
from stockgate.services.counters import CounterStore
from stockgate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

TIER_BURST = "burst"
TIER_SUSTAINED = "sustained"
TIER_IP_SUSTAINED = "ip_sustained"
TIER_IP_BURST = "ip_burst"

# Keep finished windows readable a little past their boundary; the key itself rolls at the boundary.
_WINDOW_GRACE_MS = 1000


@dataclass(frozen=True)
class LimitTier:
    name: str
    limit: int
    window_s: int


@dataclass(frozen=True)
class RateLimitDecision:
    # Outcome of one counted request against one tier.
    allowed: bool
    tier: str
    limit: int
    window_s: int
    count: int
    window_start: int
    retry_after_s: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


def plan_limit(plan: SubscriptionPlan | str | None, settings: Settings | None = None) -> int:
    settings = settings or get_settings()
    limits = {
        SubscriptionPlan.FREE: settings.rl_plan_free_limit,
        SubscriptionPlan.STARTER: settings.rl_plan_starter_limit,
        SubscriptionPlan.PROFESSIONAL: settings.rl_plan_professional_limit,
        SubscriptionPlan.ENTERPRISE: settings.rl_plan_enterprise_limit,
    }
    resolved = plan if isinstance(plan, SubscriptionPlan) else normalize_plan(plan)
    return limits[resolved]


def burst_tier(settings: Settings | None = None) -> LimitTier:
    settings = settings or get_settings()
    return LimitTier(name=TIER_BURST, limit=settings.rl_burst_limit, window_s=settings.rl_burst_window_s)


def sustained_tier(plan: SubscriptionPlan | str | None, settings: Settings | None = None) -> LimitTier:
    settings = settings or get_settings()
    return LimitTier(
        name=TIER_SUSTAINED,
        limit=plan_limit(plan, settings),
        window_s=settings.rl_sustained_window_s,
    )


def ip_sustained_tier(settings: Settings | None = None) -> LimitTier | None:
    settings = settings or get_settings()
    if settings.rl_ip_sustained_limit <= 0:
        return None
    return LimitTier(
        name=TIER_IP_SUSTAINED,
        limit=settings.rl_ip_sustained_limit,
        window_s=settings.rl_sustained_window_s,
    )


def ip_burst_tier(settings: Settings | None = None) -> LimitTier | None:
    # Caps one address however many distinct tokens it rotates through.
    settings = settings or get_settings()
    if settings.rl_ip_burst_limit <= 0:
        return None
    return LimitTier(name=TIER_IP_BURST, limit=settings.rl_ip_burst_limit, window_s=settings.rl_burst_window_s)


def client_ip(request: Request) -> str:
    # The socket peer. Behind a reverse proxy run uvicorn with --proxy-headers and
    # --forwarded-allow-ips, otherwise every caller shares the proxy's buckets.
    return request.client.host if request.client else "unknown"


def burst_subject(request: Request, auth_header: str = "Authorization") -> str:
    # Runs before identity is known, so key on the credential when one is present and the IP otherwise.
    header_value = request.headers.get(auth_header) or ""
    if header_value.startswith("Bearer "):
        token = header_value[len("Bearer "):].strip()
        if token:
            return f"tok:{token_fingerprint(token)}"
    return f"ip:{client_ip(request)}"


def rate_limit_headers(plan: SubscriptionPlan | str | None, settings: Settings | None = None) -> dict[str, str]:
    # Informational quota headers derived from the plan, not from this request's counter.
    settings = settings or get_settings()
    resolved = plan if isinstance(plan, SubscriptionPlan) else normalize_plan(plan)
    return {
        "X-RateLimit-Limit": str(plan_limit(resolved, settings)),
        "X-RateLimit-Window": str(settings.rl_sustained_window_s),
        "X-RateLimit-Plan": resolved.value,
    }


class RateLimiter:
    """Fixed-window counters in a shared store, one key per tier, subject and window."""

    def __init__(
        self,
        store: CounterStore,
        *,
        prefix: str | None = None,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        # Allow injecting time for deterministic tests.
        self._store = store
        self._prefix = prefix or get_settings().rl_redis_prefix
        self._time_provider = time_provider or time.time

    def bucket_key(self, tier: LimitTier, subject: str, window_start: int) -> str:
        return f"{self._prefix}:{tier.name}:{subject}:{window_start}"

    async def hit(self, tier: LimitTier, subject: str) -> RateLimitDecision:
        now = self._time_provider()
        window_start = int(now // tier.window_s) * tier.window_s
        window_end = window_start + tier.window_s
        ttl_ms = int(math.ceil((window_end - now) * 1000)) + _WINDOW_GRACE_MS
        counter = await self._store.incr_with_ttl(self.bucket_key(tier, subject, window_start), ttl_ms)
        allowed = counter.count <= tier.limit
        retry_after_s = 0 if allowed else max(1, int(math.ceil(window_end - now)))
        return RateLimitDecision(
            allowed=allowed,
            tier=tier.name,
            limit=tier.limit,
            window_s=tier.window_s,
            count=counter.count,
            window_start=window_start,
            retry_after_s=retry_after_s,
        )

    async def aclose(self) -> None:
        await self._store.aclose()


def throttle_error(decision: RateLimitDecision, *, headers: dict[str, str] | None = None) -> RateLimitExceeded:
    # Stable 429 with a retry hint; burst rejections tell the caller to slow down.
    increment_counter(f"rate_limited_{decision.tier}_total")
    message = "Too many requests in burst" if decision.tier in (TIER_BURST, TIER_IP_BURST) else "Too many requests"
    details = {
        "tier": decision.tier,
        "limit": decision.limit,
        "windowSeconds": decision.window_s,
        "retryAfter": decision.retry_after_s,
    }
    return RateLimitExceeded(
        message,
        details=details,
        headers={**(headers or {}), "Retry-After": str(decision.retry_after_s)},
    )
