from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from stacksearch.apps.api.deps import AdminGuard, get_container, get_stack_api_key
from stacksearch.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from stacksearch.apps.api.response import SuccessEnvelope, success_response
from stacksearch.services.container import ServiceContainer


router = APIRouter(prefix="/indexes", tags=["indexes"], responses=DEFAULT_ERROR_RESPONSES)


class IndexResponse(BaseModel):
    index_name: str
    dimension: int
    ready: bool
    metric: str = "cosine"


class IndexResetResponse(BaseModel):
    index_name: str
    deleted: bool


@router.get("/current", response_model=SuccessEnvelope[IndexResponse] | IndexResponse)
async def describe_index(
    request: Request,
    stack_api_key: str = Depends(get_stack_api_key),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    description = await container.router.describe(stack_api_key)
    payload = IndexResponse(
        index_name=description.name,
        dimension=description.dimension,
        ready=description.ready,
        metric=description.metric,
    )
    return success_response(request=request, data=payload)


@router.get("/current/stats")
async def index_stats(
    request: Request,
    stack_api_key: str = Depends(get_stack_api_key),
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    return success_response(request=request, data=await container.router.stats(stack_api_key))


@router.post("/current", response_model=SuccessEnvelope[IndexResponse] | IndexResponse)
async def ensure_index(
    request: Request,
    stack_api_key: str = Depends(get_stack_api_key),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    # Index access requires a live credential, same as indexing and search.
    await container.credentials.get_valid_access_token(stack_api_key)
    handle = await container.router.ensure_index(stack_api_key)
    payload = IndexResponse(index_name=handle.index_name, dimension=handle.dimension, ready=handle.ready)
    return success_response(request=request, data=payload)


@router.delete(
    "/current",
    response_model=SuccessEnvelope[IndexResetResponse] | IndexResetResponse,
    dependencies=[AdminGuard],
)
async def reset_index(
    request: Request,
    stack_api_key: str = Depends(get_stack_api_key),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    deleted = await container.router.reset_index(stack_api_key)
    payload = IndexResetResponse(index_name=container.router.index_name_for(stack_api_key), deleted=deleted)
    return success_response(request=request, data=payload)


@router.get("", dependencies=[AdminGuard])
async def list_indexes(request: Request, container: ServiceContainer = Depends(get_container)) -> dict[str, Any]:
    return success_response(request=request, data={"items": await container.router.list_indexes()})
