from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field, SerializerFunctionWrapHandler, model_serializer

from stacksearch.core.logging import mask_key


API_VERSION = "v1"
STACK_KEY_HEADER = "X-Stack-Api-Key"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = Field(default=API_VERSION)
    # Masked tenant key so clients can correlate responses without echoing the secret.
    stack: str | None = None
    degraded: list[str] | None = None

    @model_serializer(mode="wrap")
    def _omit_unset(self, handler: SerializerFunctionWrapHandler):
        # Optional keys are omitted rather than sent as null, including after response_model validation.
        return {key: value for key, value in handler(self).items() if value is not None}


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


def get_request_id(request: Request) -> str:
    existing = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    request.state.request_id = existing or uuid4().hex
    return request.state.request_id


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(f"/{API_VERSION}/") or request.url.path == f"/{API_VERSION}"


def _meta(request: Request, degraded: list[str] | None = None) -> dict[str, Any]:
    stack_api_key = request.headers.get(STACK_KEY_HEADER)
    meta = ResponseMeta(
        request_id=get_request_id(request),
        stack=mask_key(stack_api_key) if stack_api_key else None,
        degraded=degraded or None,
    )
    return meta.model_dump(exclude_none=True)


def success_response(*, request: Request, data: Any, degraded: list[str] | None = None) -> Any:
    # Unversioned aliases return the bare payload.
    if not is_versioned_request(request):
        return data
    return {"data": data, "meta": _meta(request, degraded)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": _meta(request)}
