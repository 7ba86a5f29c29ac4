from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from stacksearch.apps.api.deps import get_container, get_stack_api_key
from stacksearch.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from stacksearch.apps.api.response import SuccessEnvelope, success_response
from stacksearch.core.errors import EntryNotFoundError
from stacksearch.services.container import ServiceContainer


router = APIRouter(prefix="/indexing", tags=["indexing"], responses=DEFAULT_ERROR_RESPONSES)


class IndexAllRequest(BaseModel):
    environment: str | None = None
    content_type: str | None = None
    locale: str | None = None
    include_images: bool = False

    model_config = {"extra": "forbid"}


class IndexEntryRequest(BaseModel):
    content_type: str = Field(min_length=1)
    entry_uid: str = Field(min_length=1)
    environment: str | None = None
    locale: str | None = None
    include_images: bool = False

    model_config = {"extra": "forbid"}


class IndexingError(BaseModel):
    entry_id: str | None
    content_type: str | None
    error: str


class IndexingSummaryResponse(BaseModel):
    indexed: int
    skipped: int
    failed: int
    images_indexed: int
    total_processed: int
    partial: bool
    errors_list: list[IndexingError]


class EntryResultResponse(BaseModel):
    entry_uid: str
    indexed: bool
    images_indexed: int = 0


@router.post("/all", response_model=SuccessEnvelope[IndexingSummaryResponse] | IndexingSummaryResponse)
async def index_all(
    request: Request,
    body: IndexAllRequest | None = None,
    stack_api_key: str = Depends(get_stack_api_key),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    body = body or IndexAllRequest()
    summary = await container.indexing.index_all(
        stack_api_key,
        body.environment,
        content_type=body.content_type,
        locale=body.locale,
        include_images=body.include_images,
    )
    return success_response(request=request, data=summary.as_dict())


@router.post("/entries", response_model=SuccessEnvelope[EntryResultResponse] | EntryResultResponse)
async def index_entry(
    request: Request,
    body: IndexEntryRequest,
    stack_api_key: str = Depends(get_stack_api_key),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    entry: dict[str, Any] | None = await container.cms.fetch_entry(
        stack_api_key,
        body.content_type,
        body.entry_uid,
        environment=body.environment,
        locale=body.locale,
    )
    if entry is None:
        raise EntryNotFoundError(f"entry {body.entry_uid} not found")
    indexed = await container.indexing.update_entry(entry, body.content_type, stack_api_key)
    images = 0
    if body.include_images:
        images = await container.indexing.index_entry_images(entry, body.content_type, stack_api_key)
    payload = EntryResultResponse(entry_uid=body.entry_uid, indexed=indexed, images_indexed=images)
    return success_response(request=request, data=payload)


@router.delete("/entries/{entry_uid}")
async def remove_entry(
    request: Request,
    entry_uid: str,
    stack_api_key: str = Depends(get_stack_api_key),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    removed = await container.indexing.remove_entry(entry_uid, stack_api_key)
    return success_response(request=request, data={"entry_uid": entry_uid, "removed": removed})
