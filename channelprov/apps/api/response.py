from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


API_VERSION = "v1"
REQUEST_ID_HEADER = "X-Request-Id"

T = TypeVar("T")


def get_request_id(request: Request) -> str:
    # Caller-supplied ids are kept so a provider incident can be traced across services.
    request_id = getattr(request.state, "request_id", None) or request.headers.get(REQUEST_ID_HEADER)
    if not request_id:
        request_id = str(uuid4())
    request.state.request_id = request_id
    return request_id


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(f"/{API_VERSION}/")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION

    @classmethod
    def for_request(cls, request: Request) -> "ResponseMeta":
        return cls(request_id=get_request_id(request))


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


def success_response(*, request: Request, data: Any) -> Any:
    # Unversioned paths return the bare payload.
    if not is_versioned_request(request):
        return data
    return {"data": data, "meta": ResponseMeta.for_request(request).model_dump()}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    envelope = ErrorEnvelope(
        error=ErrorDetail(code=code, message=message, details=details),
        meta=ResponseMeta.for_request(request),
    )
    return envelope.model_dump(exclude_none=True)
