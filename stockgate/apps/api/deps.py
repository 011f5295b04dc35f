from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, Request, Response

from stockgate.apps.api.pipeline import RequestPipeline, TenantContext
from stockgate.core.errors import InternalError


def get_pipeline(request: Request) -> RequestPipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        # Lifespan never ran; refuse rather than build collaborators per request.
        raise InternalError()
    return pipeline


async def get_tenant_context(
    request: Request,
    response: Response,
    pipeline: RequestPipeline = Depends(get_pipeline),
) -> AsyncGenerator[TenantContext, None]:
    # Admission runs before the handler; the tenant lease is released after it returns.
    ctx = await pipeline.admit(request, response)
    try:
        yield ctx
    finally:
        await ctx.aclose()
