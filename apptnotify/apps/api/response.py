from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field


API_VERSION = "v1"
CORRELATION_HEADER = "X-Correlation-Id"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    # Include correlation/version metadata for consistent client tracing.
    correlation_id: str
    api_version: str = Field(default=API_VERSION)


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_correlation_id(request: Request) -> str:
    # Reuse the caller's correlation id when provided to preserve traceability.
    correlation_id = getattr(request.state, "correlation_id", None)
    if correlation_id:
        return correlation_id
    header_value = request.headers.get(CORRELATION_HEADER)
    resolved = header_value.strip() if header_value and header_value.strip() else str(uuid4())
    request.state.correlation_id = resolved
    return resolved


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    meta = ResponseMeta(correlation_id=get_correlation_id(request))
    return {"data": data, "meta": meta.model_dump()}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    meta = ResponseMeta(correlation_id=get_correlation_id(request))
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": meta.model_dump()}
