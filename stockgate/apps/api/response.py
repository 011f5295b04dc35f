from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, ConfigDict, Field


API_VERSION = "v1"
API_PREFIX = f"/api/{API_VERSION}"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    # Include request/version metadata for consistent client tracing.
    model_config = ConfigDict(populate_by_name=True)

    request_id: str = Field(alias="requestId")
    api_version: str = Field(default=API_VERSION, alias="apiVersion")


class ErrorDetail(BaseModel):
    code: str
    details: Any = None


class SuccessEnvelope(BaseModel, Generic[T]):
    success: bool = True
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    success: bool = False
    message: str
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    # Use existing request IDs when provided to preserve traceability.
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    header_request_id = request.headers.get("X-Request-Id")
    if header_request_id:
        request.state.request_id = header_request_id
        return header_request_id
    generated = str(uuid4())
    request.state.request_id = generated
    return generated


def _meta(request: Request) -> dict[str, Any]:
    return ResponseMeta(request_id=get_request_id(request)).model_dump(by_alias=True)


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    return {"success": True, "data": data, "meta": _meta(request)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: Any = None,
) -> dict[str, Any]:
    # Uniform failure body; callers are responsible for keeping details free of internals.
    error = ErrorDetail(code=code, details=details)
    return {
        "success": False,
        "message": message,
        "error": error.model_dump(),
        "meta": _meta(request),
    }
