from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from stockgate.apps.api.deps import get_pipeline
from stockgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from stockgate.apps.api.pipeline import RequestPipeline
from stockgate.apps.api.rate_limit import plan_limit
from stockgate.apps.api.response import SuccessEnvelope, success_response
from stockgate.core.config import get_settings
from stockgate.domain.tenancy import SubscriptionPlan
from stockgate.services.telemetry import error_rate

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)

SERVICE_VERSION = "1.0.0"


class ConnectionCounts(BaseModel):
    total: int
    ready: int
    connecting: int


class HealthResponse(BaseModel):
    status: str
    version: str
    timestamp: str
    connections: ConnectionCounts
    error_rate: float | None = None


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request, pipeline: RequestPipeline = Depends(get_pipeline)) -> dict:
    # Liveness only; counts come from memory and never touch tenant databases.
    stats = pipeline.registry.stats()
    payload = HealthResponse(
        status="ok",
        version=SERVICE_VERSION,
        timestamp=datetime.now(timezone.utc).isoformat(),
        connections=ConnectionCounts(
            total=stats["total"],
            ready=stats["ready"],
            connecting=stats["connecting"],
        ),
        error_rate=error_rate(300),
    )
    return success_response(request=request, data=payload.model_dump())


@router.get("/info")
async def info(request: Request) -> dict:
    settings = get_settings()
    data = {
        "name": "Inventory Management REST API",
        "version": SERVICE_VERSION,
        "description": "REST API for upstream systems to interact with inventory data",
        "authentication": {
            "type": "Bearer Token",
            "description": "All tenant endpoints require a valid access token in the Authorization header",
        },
        "rateLimit": {
            "burst": {"requests": settings.rl_burst_limit, "windowSeconds": settings.rl_burst_window_s},
            "sustained": {
                "windowSeconds": settings.rl_sustained_window_s,
                "plans": {plan.value: plan_limit(plan, settings) for plan in SubscriptionPlan},
            },
        },
    }
    return success_response(request=request, data=data)
