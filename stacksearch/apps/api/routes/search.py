from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from pydantic import BaseModel, Field

from stacksearch.apps.api.deps import client_context, get_container, get_stack_api_key
from stacksearch.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from stacksearch.apps.api.response import SuccessEnvelope, success_response
from stacksearch.core.errors import InputValidationError
from stacksearch.domain.types import SearchRequest
from stacksearch.providers.embeddings.images import MAX_IMAGE_BYTES, bytes_to_data_uri
from stacksearch.services.container import ServiceContainer


router = APIRouter(prefix="/search", tags=["search"], responses=DEFAULT_ERROR_RESPONSES)


class SearchBody(BaseModel):
    # Range checks on top_k and query length live in the orchestrator so every caller shares them.
    query: str | None = None
    image: str | None = None
    top_k: int | None = None
    filters: dict[str, Any] = Field(default_factory=dict)
    environment: str | None = None
    locale: str | None = None
    rerank: bool = True
    enrich: bool = True

    model_config = {
        "extra": "forbid",
        "json_schema_extra": {
            "examples": [
                {
                    "query": "waterproof hiking boots",
                    "top_k": 5,
                    "filters": {"content_type": ["product"], "locale": "en-us"},
                }
            ]
        },
    }


class SearchHitResponse(BaseModel):
    id: str
    content_type: str | None
    similarity: float
    rerank_score: float | None = None
    modality: str
    entry: dict[str, Any] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class SearchResultResponse(BaseModel):
    query: str | None
    results: list[SearchHitResponse]
    total: int
    search_type: str
    reranked: bool
    degraded_stages: list[str]
    latency_ms: float


def _to_request(request: Request, body: SearchBody, stack_api_key: str, container: ServiceContainer) -> SearchRequest:
    context = client_context(request)
    return SearchRequest(
        stack_api_key=stack_api_key,
        query=body.query,
        image=body.image,
        top_k=body.top_k if body.top_k is not None else container.settings.search_default_top_k,
        filters=dict(body.filters),
        environment=body.environment,
        locale=body.locale,
        rerank=body.rerank,
        enrich=body.enrich,
        user_agent=context["user_agent"],
        ip_address=context["ip_address"],
    )


@router.post("", response_model=SuccessEnvelope[SearchResultResponse] | SearchResultResponse)
async def semantic_search(
    request: Request,
    body: SearchBody,
    stack_api_key: str = Depends(get_stack_api_key),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    response = await container.retrieval.search(_to_request(request, body, stack_api_key, container))
    return success_response(request=request, data=response.as_dict(), degraded=response.degraded_stages)


@router.post("/image", response_model=SuccessEnvelope[SearchResultResponse] | SearchResultResponse)
async def image_search(
    request: Request,
    body: SearchBody,
    stack_api_key: str = Depends(get_stack_api_key),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    response = await container.retrieval.search_by_image(_to_request(request, body, stack_api_key, container))
    return success_response(request=request, data=response.as_dict(), degraded=response.degraded_stages)


@router.post("/hybrid", response_model=SuccessEnvelope[SearchResultResponse] | SearchResultResponse)
async def hybrid_search(
    request: Request,
    body: SearchBody,
    stack_api_key: str = Depends(get_stack_api_key),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    response = await container.retrieval.search_hybrid(_to_request(request, body, stack_api_key, container))
    return success_response(request=request, data=response.as_dict(), degraded=response.degraded_stages)


def _form_filters(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        filters = json.loads(raw)
    except ValueError:
        raise InputValidationError("filters must be a JSON object") from None
    if not isinstance(filters, dict):
        raise InputValidationError("filters must be a JSON object")
    return filters


@router.post("/image/upload", response_model=SuccessEnvelope[SearchResultResponse] | SearchResultResponse)
async def image_upload_search(
    request: Request,
    file: UploadFile = File(...),
    top_k: int | None = Form(default=None),
    filters: str | None = Form(default=None),
    environment: str | None = Form(default=None),
    locale: str | None = Form(default=None),
    enrich: bool = Form(default=True),
    stack_api_key: str = Depends(get_stack_api_key),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    # One byte past the limit is enough to detect an oversized upload.
    content = await file.read(MAX_IMAGE_BYTES + 1)
    body = SearchBody(
        image=bytes_to_data_uri(content, file.content_type),
        top_k=top_k,
        filters=_form_filters(filters),
        environment=environment,
        locale=locale,
        rerank=False,
        enrich=enrich,
    )
    response = await container.retrieval.search_by_image(_to_request(request, body, stack_api_key, container))
    return success_response(request=request, data=response.as_dict(), degraded=response.degraded_stages)
