from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from stockgate.apps.api.deps import get_tenant_context
from stockgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from stockgate.apps.api.pipeline import TenantContext
from stockgate.apps.api.rate_limit import plan_limit
from stockgate.apps.api.response import SuccessEnvelope, success_response
from stockgate.core.config import get_settings

router = APIRouter(prefix="/tenant", tags=["tenant"], responses=DEFAULT_ERROR_RESPONSES)


class QuotaInfo(BaseModel):
    plan: str
    limit: int
    window_seconds: int
    burst_limit: int
    burst_window_seconds: int


class TenantResponse(BaseModel):
    tenant_id: str
    database_name: str
    owner_email: str | None
    industry: str | None
    subscription_status: str | None
    token_expires_at: datetime | None
    quota: QuotaInfo


@router.get("", response_model=SuccessEnvelope[TenantResponse])
async def current_tenant(
    request: Request,
    ctx: TenantContext = Depends(get_tenant_context),
) -> dict:
    # Echo the authority's view of the caller so clients can check their plan and quota.
    settings = get_settings()
    identity = ctx.identity
    payload = TenantResponse(
        tenant_id=identity.tenant_id,
        database_name=identity.database_name,
        owner_email=identity.owner_email,
        industry=identity.industry,
        subscription_status=identity.subscription_status,
        token_expires_at=ctx.token_meta.expiry_date,
        quota=QuotaInfo(
            plan=identity.plan.value,
            limit=plan_limit(identity.plan, settings),
            window_seconds=settings.rl_sustained_window_s,
            burst_limit=settings.rl_burst_limit,
            burst_window_seconds=settings.rl_burst_window_s,
        ),
    )
    return success_response(request=request, data=payload.model_dump(mode="json"))
